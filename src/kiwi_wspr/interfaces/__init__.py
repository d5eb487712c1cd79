"""Data contracts shared by the decode pipeline and its consumers."""

from .spot import Spot, CallsignInfo, EnrichedSpot, SpotMessage, NO_CALLSIGN_INFO, topic_for

__all__ = ['Spot', 'CallsignInfo', 'EnrichedSpot', 'SpotMessage', 'NO_CALLSIGN_INFO', 'topic_for']
