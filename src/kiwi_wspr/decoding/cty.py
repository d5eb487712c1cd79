"""
CTY.DAT Callsign Database

Loads the standard CTY.DAT country file and maps callsigns to their DXCC
entity (country, CQ/ITU zones, continent, UTC offset).

File format:
    Entity line (colon separated):
        Name: CQ: ITU: Cont: Lat: Lon: UTC offset: [*]Primary prefix:
    Followed by one or more comma-separated prefix lines ending in ';'.
    Each prefix may carry overrides:
        =CALL     exact callsign match
        (n)       CQ zone
        [n]       ITU zone
        <lat/lon> coordinates
        {cc}      continent
        ~n~       UTC offset

Lookup tries the exact "=CALL" binding first, then progressively shorter
prefixes of the callsign. CTY.DAT stores west longitude as positive; the
values are kept as found in the file.

The database is immutable once loaded and is shared by every job.

Usage:
    cty = CtyDatabase.load("cty/cty.dat")
    info = cty.lookup("W1ABC")
    print(info.country, info.cq_zone)
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ..interfaces.spot import CallsignInfo, EnrichedSpot, NO_CALLSIGN_INFO, Spot

logger = logging.getLogger(__name__)

DEFAULT_CTY_PATH = "cty/cty.dat"

_CQ_RE = re.compile(r'\((\d+)\)')
_ITU_RE = re.compile(r'\[(\d+)\]')
_LATLON_RE = re.compile(r'<([-\d.]+)/([-\d.]+)>')
_CONTINENT_RE = re.compile(r'\{([A-Za-z]+)\}')
_OFFSET_RE = re.compile(r'~([-\d.]+)~')


@dataclass(frozen=True)
class CtyEntity:
    """A DXCC entity definition line."""
    name: str
    cq_zone: int
    itu_zone: int
    continent: str
    latitude: float
    longitude: float
    time_offset: float
    primary_prefix: str
    is_waedc: bool = False               # '*' marked (WAE/DARC-only entity)


@dataclass(frozen=True)
class CtyPrefix:
    """A prefix (or exact callsign) alias with its optional overrides."""
    prefix: str
    is_exact: bool = False
    cq_zone: int = 0
    itu_zone: int = 0
    continent: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    time_offset: Optional[float] = None

    def apply(self, entity: CtyEntity) -> CallsignInfo:
        """Compose this prefix's overrides onto its entity."""
        has_latlon = self.latitude is not None and self.longitude is not None
        return CallsignInfo(
            country=entity.name,
            cq_zone=self.cq_zone or entity.cq_zone,
            itu_zone=self.itu_zone or entity.itu_zone,
            continent=self.continent or entity.continent,
            time_offset_hours=self.time_offset if self.time_offset is not None else entity.time_offset,
            latitude=self.latitude if has_latlon else entity.latitude,
            longitude=self.longitude if has_latlon else entity.longitude,
        )


def _to_int(value: str, default: int = 0) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return default


def _to_float(value: str, default: float = 0.0) -> float:
    try:
        return float(value.strip())
    except ValueError:
        return default


def parse_entity_line(line: str) -> Optional[CtyEntity]:
    """Parse a colon-separated entity line, or None if it has too few fields."""
    parts = line.split(':')
    if len(parts) < 8:
        return None

    primary = parts[7].strip()
    is_waedc = primary.startswith('*')
    if is_waedc:
        primary = primary[1:]

    return CtyEntity(
        name=parts[0].strip(),
        cq_zone=_to_int(parts[1]),
        itu_zone=_to_int(parts[2]),
        continent=parts[3].strip(),
        latitude=_to_float(parts[4]),
        longitude=_to_float(parts[5]),
        time_offset=_to_float(parts[6]),
        primary_prefix=primary,
        is_waedc=is_waedc,
    )


def parse_prefix_token(token: str) -> Optional[CtyPrefix]:
    """Parse one prefix alias such as '=K1ABC(5)[8]' or 'VE2{NA}'."""
    token = token.strip()
    if not token:
        return None

    is_exact = token.startswith('=')
    if is_exact:
        token = token[1:]

    cq_zone = 0
    itu_zone = 0
    continent = ""
    latitude = longitude = time_offset = None

    m = _CQ_RE.search(token)
    if m:
        cq_zone = int(m.group(1))
    m = _ITU_RE.search(token)
    if m:
        itu_zone = int(m.group(1))
    m = _LATLON_RE.search(token)
    if m:
        try:
            latitude, longitude = float(m.group(1)), float(m.group(2))
        except ValueError:
            latitude = longitude = None
    m = _CONTINENT_RE.search(token)
    if m:
        continent = m.group(1)
    m = _OFFSET_RE.search(token)
    if m:
        try:
            time_offset = float(m.group(1))
        except ValueError:
            time_offset = None

    # Prefix is whatever precedes the first override marker
    prefix = re.split(r'[\(\[<\{~]', token, maxsplit=1)[0].strip().upper()
    if not prefix:
        return None

    return CtyPrefix(
        prefix=prefix,
        is_exact=is_exact,
        cq_zone=cq_zone,
        itu_zone=itu_zone,
        continent=continent,
        latitude=latitude,
        longitude=longitude,
        time_offset=time_offset,
    )


class CtyDatabase:
    """Immutable prefix -> entity table."""

    def __init__(self, entries: Dict[str, Tuple[CtyEntity, CtyPrefix]],
                 entities: Dict[str, CtyEntity]):
        self._entries = dict(entries)
        self._entities = dict(entities)

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    @property
    def prefix_count(self) -> int:
        return len(self._entries)

    @classmethod
    def parse(cls, lines: Iterable[str]) -> "CtyDatabase":
        """Build a database from CTY.DAT text lines."""
        entries: Dict[str, Tuple[CtyEntity, CtyPrefix]] = {}
        entities: Dict[str, CtyEntity] = {}
        current: Optional[CtyEntity] = None
        pending: List[str] = []

        for raw in lines:
            line = raw.rstrip('\r\n')
            stripped = line.strip()
            if not stripped:
                continue

            if ':' in line and not stripped.startswith('='):
                entity = parse_entity_line(line)
                if entity is None:
                    logger.warning(f"Skipping malformed CTY entity line: {stripped[:40]!r}")
                    current = None
                    pending = []
                    continue
                current = entity
                entities[entity.primary_prefix] = entity
                pending = []
                continue

            if current is None:
                continue

            pending.append(stripped)
            if stripped.endswith(';'):
                for token in ''.join(pending).rstrip('; \t').split(','):
                    pfx = parse_prefix_token(token)
                    if pfx is None:
                        continue
                    key = f"={pfx.prefix}" if pfx.is_exact else pfx.prefix
                    entries[key] = (current, pfx)
                current = None
                pending = []

        return cls(entries, entities)

    @classmethod
    def load(cls, path: Union[str, Path] = DEFAULT_CTY_PATH) -> "CtyDatabase":
        """
        Load CTY.DAT from disk.

        Raises:
            FileNotFoundError: if the file does not exist
        """
        path = Path(path)
        with open(path, 'r', encoding='latin-1') as f:
            db = cls.parse(f)
        logger.info(f"Loaded CTY database: {db.entity_count} entities, {db.prefix_count} prefixes")
        return db

    def lookup(self, callsign: str) -> CallsignInfo:
        """
        Resolve a callsign to its entity information.

        Unknown callsigns yield an empty CallsignInfo (no country, zero zones).
        """
        call = callsign.strip().upper()
        if not call:
            return NO_CALLSIGN_INFO

        entry = self._entries.get(f"={call}")
        if entry is None:
            for n in range(len(call), 0, -1):
                entry = self._entries.get(call[:n])
                if entry is not None:
                    break
        if entry is None:
            return NO_CALLSIGN_INFO

        entity, prefix = entry
        return prefix.apply(entity)

    def country(self, callsign: str) -> str:
        return self.lookup(callsign).country

    def enrich(self, spot: Spot) -> EnrichedSpot:
        return EnrichedSpot(spot=spot, info=self.lookup(spot.callsign))


def enrich(spot: Spot, cty: Optional[CtyDatabase]) -> EnrichedSpot:
    """Enrich a spot, tolerating an absent database."""
    if cty is None:
        return EnrichedSpot(spot=spot)
    return cty.enrich(spot)
