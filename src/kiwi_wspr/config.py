"""
Fleet configuration for kiwi-wspr.

The configuration document has five sections:

    publisher: MQTT broker settings
    receivers: KiwiSDR instances
    bands:     WSPR recording targets, one per (receiver, frequency)
    decoder:   wsprd / kiwirecorder / CTY paths and audio handling
    logging:   level and quiet flag

Files ending in .toml are read with `toml`; everything else is YAML.
Older deployments used different key names (mqtt, kiwi_instances,
wspr_bands, instance, frequency, wsprd_path, keep_wav,
mqtt_topic_prefix); they are accepted on load and written back using the
current names.

A FleetConfig is immutable. Reloads build a new snapshot and hand it to
the CoordinatorManager.

Usage:
    config = load_config("config.yaml")
    for band in config.enabled_bands():
        receiver = config.get_receiver(band.receiver_name)
"""

import logging
import math
import os
from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import toml
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_RECEIVER_PORT = 8073
DEFAULT_RECEIVER_USER = "kiwi_wspr"
DEFAULT_PUBLISHER_PORT = 1883
DEFAULT_WORK_DIR = "wspr_work"
DEFAULT_RECORDER_PATH = "kiwirecorder.py"
DEFAULT_CTY_PATH = "cty/cty.dat"
DEFAULT_DECODER_TIMEOUT = 100.0

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

# Legacy section and key names -> current names
SECTION_ALIASES = {
    'mqtt': 'publisher',
    'kiwi_instances': 'receivers',
    'wspr_bands': 'bands',
}
RECEIVER_KEY_ALIASES = {'mqtt_topic_prefix': 'topic_prefix_override'}
BAND_KEY_ALIASES = {'instance': 'receiver_name', 'frequency': 'frequency_khz', 'frequency_kHz': 'frequency_khz'}
DECODER_KEY_ALIASES = {'wsprd_path': 'decoder_path', 'keep_wav': 'keep_audio'}


class ConfigError(ValueError):
    """Configuration is missing, unreadable or invalid."""


def work_dir_name(receiver_name: str, frequency_khz: float) -> str:
    """<receiver>_<floor(frequency_kHz)>: the job id and work directory of a band."""
    return f"{receiver_name}_{int(math.floor(frequency_khz))}"


def _apply_aliases(data: Dict[str, Any], aliases: Dict[str, str]) -> Dict[str, Any]:
    result = dict(data)
    for old, new in aliases.items():
        if old in result:
            value = result.pop(old)
            result.setdefault(new, value)
    return result


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _as_int(value: Any, name: str, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _as_float(value: Any, name: str, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class PublisherSettings:
    """MQTT broker parameters. Any change here swaps the publisher."""
    enabled: bool = False
    host: str = ""
    port: int = DEFAULT_PUBLISHER_PORT
    use_tls: bool = False
    username: str = ""
    password: str = ""
    topic_prefix: str = ""
    qos: int = 0
    retain: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PublisherSettings":
        data = data or {}
        return cls(
            enabled=_as_bool(data.get('enabled')),
            host=str(data.get('host') or ""),
            port=_as_int(data.get('port'), 'publisher.port', DEFAULT_PUBLISHER_PORT),
            use_tls=_as_bool(data.get('use_tls')),
            username=str(data.get('username') or ""),
            password=str(data.get('password') or ""),
            topic_prefix=str(data.get('topic_prefix') or ""),
            qos=_as_int(data.get('qos'), 'publisher.qos', 0),
            retain=_as_bool(data.get('retain')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        if not self.enabled:
            return
        if not self.host:
            raise ConfigError("publisher.host is required when the publisher is enabled")
        if self.port == 0:
            raise ConfigError("publisher.port is required when the publisher is enabled")
        if not self.topic_prefix:
            raise ConfigError("publisher.topic_prefix is required when the publisher is enabled")
        if self.qos not in (0, 1, 2):
            raise ConfigError(f"publisher.qos must be 0, 1 or 2, got {self.qos}")


@dataclass(frozen=True)
class ReceiverConfig:
    """A KiwiSDR instance."""
    name: str
    host: str
    port: int = DEFAULT_RECEIVER_PORT
    user: str = DEFAULT_RECEIVER_USER
    password: str = ""
    enabled: bool = True
    topic_prefix_override: str = ""      # Empty = use publisher.topic_prefix

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReceiverConfig":
        data = _apply_aliases(data, RECEIVER_KEY_ALIASES)
        name = str(data.get('name') or "")
        return cls(
            name=name,
            host=str(data.get('host') or ""),
            port=_as_int(data.get('port'), f"receivers[{name}].port", DEFAULT_RECEIVER_PORT),
            user=str(data.get('user') or DEFAULT_RECEIVER_USER),
            password=str(data.get('password') or ""),
            enabled=_as_bool(data.get('enabled'), default=True),
            topic_prefix_override=str(data.get('topic_prefix_override') or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BandConfig:
    """A WSPR recording target on one receiver."""
    name: str
    frequency_khz: float
    receiver_name: str
    enabled: bool = True

    @property
    def change_key(self) -> Tuple[float, str]:
        """A band whose change key differs must be restarted on reload."""
        return (self.frequency_khz, self.receiver_name)

    @property
    def work_dir_name(self) -> str:
        return work_dir_name(self.receiver_name, self.frequency_khz)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BandConfig":
        data = _apply_aliases(data, BAND_KEY_ALIASES)
        name = str(data.get('name') or "")
        return cls(
            name=name,
            frequency_khz=_as_float(data.get('frequency_khz'), f"bands[{name}].frequency_khz"),
            receiver_name=str(data.get('receiver_name') or ""),
            enabled=_as_bool(data.get('enabled'), default=True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DecoderSettings:
    """External tools and audio file handling."""
    decoder_path: str = ""
    work_dir: str = DEFAULT_WORK_DIR
    keep_audio: bool = False
    compression: bool = False
    recorder_path: str = DEFAULT_RECORDER_PATH
    cty_path: str = DEFAULT_CTY_PATH
    decoder_timeout: float = DEFAULT_DECODER_TIMEOUT

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DecoderSettings":
        data = _apply_aliases(data or {}, DECODER_KEY_ALIASES)
        return cls(
            decoder_path=str(data.get('decoder_path') or ""),
            work_dir=str(data.get('work_dir') or DEFAULT_WORK_DIR),
            keep_audio=_as_bool(data.get('keep_audio')),
            compression=_as_bool(data.get('compression')),
            recorder_path=str(data.get('recorder_path') or DEFAULT_RECORDER_PATH),
            cty_path=str(data.get('cty_path') or DEFAULT_CTY_PATH),
            decoder_timeout=_as_float(data.get('decoder_timeout'), 'decoder.decoder_timeout',
                                      DEFAULT_DECODER_TIMEOUT),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "info"
    quiet: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LoggingSettings":
        data = data or {}
        return cls(
            level=str(data.get('level') or "info").lower(),
            quiet=_as_bool(data.get('quiet')),
        )

    @property
    def log_level(self) -> int:
        return LOG_LEVELS.get(self.level, logging.INFO)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FleetConfig:
    """Immutable snapshot of the whole configuration document."""
    publisher: PublisherSettings = field(default_factory=PublisherSettings)
    receivers: Tuple[ReceiverConfig, ...] = ()
    bands: Tuple[BandConfig, ...] = ()
    decoder: DecoderSettings = field(default_factory=DecoderSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FleetConfig":
        """Build a snapshot from a parsed document, accepting legacy key names."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration document must be a mapping")
        data = _apply_aliases(data, SECTION_ALIASES)

        receivers = data.get('receivers') or []
        bands = data.get('bands') or []
        if not isinstance(receivers, list):
            raise ConfigError("receivers must be a list")
        if not isinstance(bands, list):
            raise ConfigError("bands must be a list")

        return cls(
            publisher=PublisherSettings.from_dict(data.get('publisher')),
            receivers=tuple(ReceiverConfig.from_dict(r) for r in receivers),
            bands=tuple(BandConfig.from_dict(b) for b in bands),
            decoder=DecoderSettings.from_dict(data.get('decoder')),
            logging=LoggingSettings.from_dict(data.get('logging')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'publisher': self.publisher.to_dict(),
            'receivers': [r.to_dict() for r in self.receivers],
            'bands': [b.to_dict() for b in self.bands],
            'decoder': self.decoder.to_dict(),
            'logging': self.logging.to_dict(),
        }

    def get_receiver(self, name: str) -> Optional[ReceiverConfig]:
        for receiver in self.receivers:
            if receiver.name == name:
                return receiver
        return None

    def get_band(self, name: str) -> Optional[BandConfig]:
        for band in self.bands:
            if band.name == name:
                return band
        return None

    def enabled_bands(self) -> List[BandConfig]:
        """Bands that should have a running job, in config order."""
        enabled = []
        for band in self.bands:
            if not band.enabled:
                continue
            receiver = self.get_receiver(band.receiver_name)
            if receiver is None or not receiver.enabled:
                continue
            enabled.append(band)
        return enabled

    def with_publisher(self, publisher: PublisherSettings) -> "FleetConfig":
        return replace(self, publisher=publisher)

    def validate(self, check_decoder: bool = True) -> None:
        """
        Check the snapshot.

        Raises:
            ConfigError: on the first problem found
        """
        self.publisher.validate()

        if not self.receivers:
            raise ConfigError("At least one receiver is required")

        names = set()
        for receiver in self.receivers:
            if not receiver.name:
                raise ConfigError("Every receiver needs a name")
            if receiver.name in names:
                raise ConfigError(f"Duplicate receiver name: {receiver.name}")
            names.add(receiver.name)
            if receiver.enabled and not receiver.host:
                raise ConfigError(f"Receiver {receiver.name} has no host")

        band_names = set()
        work_dirs: Dict[str, str] = {}
        for band in self.bands:
            if not band.name:
                raise ConfigError("Every band needs a name")
            if band.name in band_names:
                raise ConfigError(f"Duplicate band name: {band.name}")
            band_names.add(band.name)
            if band.enabled:
                if band.receiver_name not in names:
                    raise ConfigError(
                        f"Band {band.name} references unknown receiver {band.receiver_name}"
                    )
                if band.frequency_khz <= 0:
                    raise ConfigError(f"Band {band.name} needs a positive frequency_khz")
                other = work_dirs.get(band.work_dir_name)
                if other is not None:
                    raise ConfigError(
                        f"Bands {other} and {band.name} share work directory {band.work_dir_name}"
                    )
                work_dirs[band.work_dir_name] = band.name

        if not self.decoder.decoder_path:
            raise ConfigError("decoder.decoder_path is required")
        if check_decoder:
            path = Path(self.decoder.decoder_path)
            if not path.is_file():
                raise ConfigError(f"Decoder not found: {path}")
            if not os.access(path, os.X_OK):
                raise ConfigError(f"Decoder is not executable: {path}")

        if self.decoder.decoder_timeout <= 0:
            raise ConfigError("decoder.decoder_timeout must be positive")


def _is_toml(path: Union[str, Path]) -> bool:
    return Path(path).suffix.lower() == '.toml'


def parse_config_text(text: str, fmt: str = 'yaml') -> FleetConfig:
    """Parse a configuration document without validating it."""
    try:
        if fmt == 'toml':
            data = toml.loads(text)
        else:
            data = yaml.safe_load(text)
    except (yaml.YAMLError, toml.TomlDecodeError) as e:
        raise ConfigError(f"Failed to parse config: {e}") from e
    return FleetConfig.from_dict(data)


def load_config(config_path: Union[str, Path] = DEFAULT_CONFIG_PATH,
                validate: bool = True, check_decoder: bool = True) -> FleetConfig:
    """
    Load and validate the configuration file.

    Raises:
        ConfigError: if the file is missing, unparsable or invalid
    """
    path = Path(config_path)
    try:
        with open(path, 'r') as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e

    config = parse_config_text(text, 'toml' if _is_toml(path) else 'yaml')
    if validate:
        config.validate(check_decoder=check_decoder)
    return config


def save_config(config: FleetConfig, config_path: Union[str, Path]) -> None:
    """Write a configuration back to disk in the format implied by its suffix."""
    path = Path(config_path)
    data = config.to_dict()
    tmp_path = path.with_name(path.name + '.tmp')
    with open(tmp_path, 'w') as f:
        if _is_toml(path):
            toml.dump(data, f)
        else:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    os.replace(tmp_path, path)
    logger.info(f"Configuration saved to {path}")
