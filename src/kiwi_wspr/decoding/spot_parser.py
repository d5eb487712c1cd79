"""
wsprd Spot File Parser

wsprd writes one line per decode to wspr_spots.txt in its working
directory:

    YYMMDD HHMM Seq SNR  DT   Freq(MHz)  Callsign [Locator] Power [...]
    251227 1000  1  -15  0.5  14.097100  W1ABC    FN42      30

Status markers (<DecodeFinished>) and unresolved hashed callsigns (<...>)
are skipped. The locator column is optional; extra trailing columns are
ignored.

Usage:
    spots = parse_spot_file(work_dir / "wspr_spots.txt")
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..interfaces.spot import Spot

logger = logging.getLogger(__name__)

SPOTS_FILENAME = "wspr_spots.txt"

# date, time, (seq), snr, dt, freq, callsign, rest
SPOT_LINE_RE = re.compile(
    r'^(\d{6})\s+(\d{4})\s+\d+\s+(-?\d+)\s+([-\d.]+)\s+([\d.]+)\s+(\S+)\s+(.+)$'
)

SKIP_MARKERS = ('<DecodeFinished>', '<...>')


class SpotParseError(ValueError):
    """A single spot line could not be parsed."""


def _looks_like_locator(token: str) -> bool:
    return len(token) >= 2 and 'A' <= token[0] <= 'R'


def parse_spot_line(line: str) -> Optional[Spot]:
    """
    Parse one line of wsprd output.

    Returns:
        Spot, or None for blank lines and status markers

    Raises:
        SpotParseError: if the line is not a valid spot
    """
    line = line.strip()
    if not line:
        return None
    if any(marker in line for marker in SKIP_MARKERS):
        return None

    match = SPOT_LINE_RE.match(line)
    if not match:
        raise SpotParseError(f"Unrecognized spot line: {line!r}")

    date_str, time_str, snr_str, dt_str, freq_str, callsign, rest = match.groups()

    try:
        timestamp = datetime(
            2000 + int(date_str[0:2]),
            int(date_str[2:4]),
            int(date_str[4:6]),
            int(time_str[0:2]),
            int(time_str[2:4]),
            tzinfo=timezone.utc,
        )
        snr = int(snr_str)
        dt = float(dt_str)
        freq_mhz = float(freq_str)
    except ValueError as e:
        raise SpotParseError(f"Bad numeric field in {line!r}: {e}") from e

    if timestamp.minute % 2 != 0:
        raise SpotParseError(f"Spot time {time_str} is not on an even minute")

    fields = rest.split()
    locator = ""
    if len(fields) >= 2 and _looks_like_locator(fields[0]):
        locator = fields[0]
        power_str = fields[1]
    else:
        power_str = fields[0]

    try:
        power = int(power_str)
    except ValueError as e:
        raise SpotParseError(f"Bad power field {power_str!r} in {line!r}") from e

    return Spot(
        cycle_timestamp_utc=timestamp,
        snr_db=snr,
        time_offset_s=dt,
        decoded_frequency_mhz=freq_mhz,
        callsign=callsign.strip('<>'),
        grid_locator=locator,
        reported_power_dbm=power,
    )


def parse_spot_lines(lines: Iterable[str]) -> List[Spot]:
    """Parse many lines, logging and skipping malformed ones."""
    spots: List[Spot] = []
    for line_no, line in enumerate(lines, start=1):
        try:
            spot = parse_spot_line(line)
        except SpotParseError as e:
            logger.warning(f"Skipping line {line_no}: {e}")
            continue
        if spot is not None:
            spots.append(spot)
    return spots


def parse_spot_file(path: Union[str, Path]) -> List[Spot]:
    """
    Parse a wspr_spots.txt file.

    A missing file yields no spots (wsprd only writes it when it ran).
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"No spot file at {path}")
        return []
    with open(path, 'r', errors='replace') as f:
        return parse_spot_lines(f)
