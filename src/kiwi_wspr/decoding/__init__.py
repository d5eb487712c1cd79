"""
Decode-side helpers: wsprd output parsing, CTY enrichment and audio
resampling.
"""

from .spot_parser import parse_spot_file, parse_spot_line, SpotParseError, SPOTS_FILENAME
from .cty import CtyDatabase, enrich
from .resampler import resample_wav, WSPRD_SAMPLE_RATE

__all__ = [
    'parse_spot_file',
    'parse_spot_line',
    'SpotParseError',
    'SPOTS_FILENAME',
    'CtyDatabase',
    'enrich',
    'resample_wav',
    'WSPRD_SAMPLE_RATE',
]
