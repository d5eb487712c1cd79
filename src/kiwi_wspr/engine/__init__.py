"""Recording engine: per-band jobs and the fleet coordinator."""

from .job_runner import WsprJob, JobStatus, RecordingState
from .coordinator_manager import CoordinatorManager

__all__ = ['WsprJob', 'JobStatus', 'RecordingState', 'CoordinatorManager']
