"""
kiwi-wspr: Multi-Receiver WSPR Spot Ingestion Daemon

This package records the 2-minute WSPR cycle from a fleet of KiwiSDR
receivers on any number of bands, decodes each cycle with wsprd,
enriches the spots with CTY.DAT country data and publishes them to MQTT.

Architecture:
    KiwiSDR (kiwirecorder) → WsprJob → wsprd → CTY → MQTT
                                 ▲
                     CoordinatorManager ◀── StatusServer (HTTP)

Each (receiver, band) job has its own work directory, so any number of
bands can share a receiver without stepping on each other's files.
Configuration changes are applied live: only bands whose frequency or
receiver changed are restarted.

Version: 1.0.0
"""

__version__ = "1.0.0"

from .interfaces.spot import (
    Spot,
    CallsignInfo,
    EnrichedSpot,
    SpotMessage,
)

__all__ = [
    "Spot",
    "CallsignInfo",
    "EnrichedSpot",
    "SpotMessage",
    "__version__",
]
