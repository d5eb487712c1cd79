"""KiwiSDR recording adapter."""

from .kiwi_recorder import KiwiRecorder, RecordingHandle, RecordingRequest, RecorderError, build_command

__all__ = ['KiwiRecorder', 'RecordingHandle', 'RecordingRequest', 'RecorderError', 'build_command']
