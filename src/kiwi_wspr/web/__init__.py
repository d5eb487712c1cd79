"""
Status and configuration HTTP surface for kiwi-wspr.

Provides the band/publisher status view, configuration endpoints that
drive live reloads, and a cache of KiwiSDR receiver health.
"""

from .status_server import StatusServer, ReceiverStatusPoller, parse_receiver_status

__all__ = ['StatusServer', 'ReceiverStatusPoller', 'parse_receiver_status']
