"""
WSPR Spot Data Models

These dataclasses define the contract between kiwi-wspr and its MQTT
consumers. A SpotMessage is serialized to JSON and published on
<prefix>/digital_modes/WSPR/<band>; the field names match the message
format used by the wider SDR application, so consumers can treat WSPR
spots like any other digital-mode decode.

Pipeline:
    wspr_spots.txt line -> Spot -> EnrichedSpot (+ CTY) -> SpotMessage -> JSON

Contract Version: 1.0.0
"""

from dataclasses import dataclass, asdict
from datetime import datetime
import json

from ..timing.cycle import format_rfc3339, parse_rfc3339


@dataclass(frozen=True)
class Spot:
    """One decoded WSPR transmission as reported by wsprd."""
    cycle_timestamp_utc: datetime        # Even-minute cycle boundary
    snr_db: int
    time_offset_s: float                 # DT column
    decoded_frequency_mhz: float         # Absolute transmitter frequency
    callsign: str                        # Angle brackets stripped
    grid_locator: str = ""               # 4-6 chars, empty if not sent
    reported_power_dbm: int = 0
    drift_hz_per_minute: int = 0         # Not emitted by wsprd spot file


@dataclass(frozen=True)
class CallsignInfo:
    """DXCC entity information for a callsign, after prefix overrides."""
    country: str = ""
    cq_zone: int = 0
    itu_zone: int = 0
    continent: str = ""
    time_offset_hours: float = 0.0
    latitude: float = 0.0
    longitude: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


NO_CALLSIGN_INFO = CallsignInfo()


@dataclass(frozen=True)
class EnrichedSpot:
    """A Spot joined to the DXCC entity of its callsign."""
    spot: Spot
    info: CallsignInfo = NO_CALLSIGN_INFO


@dataclass
class SpotMessage:
    """
    Wire format for a published WSPR spot.

    `frequency` is the receiver dial frequency in Hz; `tx_frequency` is the
    decoded transmitter frequency in Hz.
    """
    band: str
    callsign: str
    locator: str
    snr: int
    frequency: int
    timestamp: datetime
    dt: float
    dbm: int
    tx_frequency: int
    drift: int = 0
    country: str = ""
    cq_zone: int = 0
    itu_zone: int = 0
    continent: str = ""
    time_offset: float = 0.0
    mode: str = "WSPR"

    @property
    def message(self) -> str:
        return f"{self.callsign} {self.locator} {self.dbm}"

    @classmethod
    def from_enriched(cls, enriched: EnrichedSpot, band: str, dial_frequency_hz: int) -> "SpotMessage":
        spot = enriched.spot
        info = enriched.info
        return cls(
            band=band,
            callsign=spot.callsign,
            locator=spot.grid_locator,
            snr=spot.snr_db,
            frequency=int(dial_frequency_hz),
            timestamp=spot.cycle_timestamp_utc,
            dt=spot.time_offset_s,
            dbm=spot.reported_power_dbm,
            tx_frequency=int(round(spot.decoded_frequency_mhz * 1e6)),
            drift=spot.drift_hz_per_minute,
            country=info.country,
            cq_zone=info.cq_zone,
            itu_zone=info.itu_zone,
            continent=info.continent,
            time_offset=info.time_offset_hours,
        )

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "band": self.band,
            "callsign": self.callsign,
            "locator": self.locator,
            "country": self.country,
            "CQZone": self.cq_zone,
            "ITUZone": self.itu_zone,
            "Continent": self.continent,
            "TimeOffset": float(self.time_offset),
            "snr": self.snr,
            "frequency": self.frequency,
            "timestamp": format_rfc3339(self.timestamp),
            "message": self.message,
            "dt": float(self.dt),
            "drift": self.drift,
            "dbm": self.dbm,
            "tx_frequency": self.tx_frequency,
        }

    def to_json(self) -> str:
        """Serialize to the JSON payload published on MQTT."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "SpotMessage":
        """Deserialize from JSON."""
        data = json.loads(json_str)
        return cls(
            mode=data.get("mode", "WSPR"),
            band=data["band"],
            callsign=data["callsign"],
            locator=data.get("locator", ""),
            country=data.get("country", ""),
            cq_zone=data.get("CQZone", 0),
            itu_zone=data.get("ITUZone", 0),
            continent=data.get("Continent", ""),
            time_offset=data.get("TimeOffset", 0.0),
            snr=data["snr"],
            frequency=data["frequency"],
            timestamp=parse_rfc3339(data["timestamp"]),
            dt=data.get("dt", 0.0),
            drift=data.get("drift", 0),
            dbm=data["dbm"],
            tx_frequency=data["tx_frequency"],
        )

    def to_spot(self) -> Spot:
        """Recover the decoded Spot carried by this message."""
        return Spot(
            cycle_timestamp_utc=self.timestamp,
            snr_db=self.snr,
            time_offset_s=self.dt,
            decoded_frequency_mhz=self.tx_frequency / 1e6,
            callsign=self.callsign,
            grid_locator=self.locator,
            reported_power_dbm=self.dbm,
            drift_hz_per_minute=self.drift,
        )


def topic_for(prefix: str, band: str) -> str:
    """MQTT topic for a WSPR spot: {prefix}/digital_modes/WSPR/{band}"""
    return f"{prefix}/digital_modes/WSPR/{band}"
