"""Configuration loading.

Values come from (lowest to highest precedence) the defaults below, a TOML
file, and ``LP_*`` environment variables.  The device token may also come
from the token file written by ``leafpipe --pair``.  Call
``dotenv.load_dotenv()`` before ``load_config`` to pick up a ``.env`` file.
"""

import json
import logging
import os
import tomllib
from dataclasses import dataclass, fields, replace

from leafpipe.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "LP_"
CONFIG_FILENAME = "config.toml"
TOKEN_FILENAME = "token.json"

AUDIO_BACKENDS = ("sounddevice", "pipe")
TRANSPORTS = ("udp", "http")
SHUTDOWN_STATES = ("off", "last")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def config_dir(environ=None):
    """Return the leafpipe directory under XDG_CONFIG_HOME."""
    environ = os.environ if environ is None else environ
    base = environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, "leafpipe")


@dataclass(frozen=True)
class Config:
    # -- Audio capture -------------------------------------------------------
    audio_backend: str = "sounddevice"
    audio_source: str = ""  # empty = auto-pick a monitor device
    pipe_path: str = "/tmp/leafpipe-pcm"
    sample_rate: int = 44100
    channels: int = 2
    block_size: int = 1024

    # -- Device --------------------------------------------------------------
    nanoleaf_host: str = ""  # empty = SSDP discovery
    nanoleaf_port: int = 16021
    nanoleaf_token: str = ""
    transport: str = "udp"
    request_timeout_s: float = 2.0
    discovery_timeout_s: float = 5.0

    # -- Analysis ------------------------------------------------------------
    window_size: int = 2048
    overlap: float = 0.5
    band_count: int = 3
    band_edges_hz: tuple = ()
    min_freq_hz: float = 100.0
    max_freq_hz: float = 15000.0

    # -- Features ------------------------------------------------------------
    smoothing_ms: float = 60.0
    normalize_decay_s: float = 8.0
    loudness_reference: float = 0.05
    band_reference: float = 0.05
    onset_ratio: float = 1.6
    onset_refractory_ms: float = 150.0
    onset_history_ms: float = 600.0
    onset_warmup_ms: float = 500.0
    silence_threshold: float = 0.002

    # -- Colors --------------------------------------------------------------
    palette: tuple = (0.0, 40.0, 120.0, 200.0, 250.0)  # hue stops, degrees
    saturation: float = 1.0
    brightness_floor: float = 0.05
    brightness_ceiling: float = 0.8
    spatial: bool = True
    flash_strength: float = 0.6
    flash_decay_ms: float = 120.0

    # -- Dispatch ------------------------------------------------------------
    update_interval_ms: float = 100.0
    color_epsilon: float = 0.01
    transition_ds: int = 1
    shutdown_state: str = "off"

    # -- Process -------------------------------------------------------------
    status_port: int = 0  # 0 = no status server
    log_level: str = "INFO"

    @property
    def hop_size(self):
        return max(1, int(round(self.window_size * (1.0 - self.overlap))))


_FIELD_TYPES = {f.name: f.type for f in fields(Config)}


def _coerce(name, value):
    """Convert a TOML or environment value to the field's type."""
    kind = _FIELD_TYPES[name]
    try:
        if kind is bool:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off"):
                    return False
                raise ValueError(f"not a boolean: {value!r}")
            return bool(value)
        if kind is int:
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(f"not an integer: {value!r}")
            return int(value)
        if kind is float:
            return float(value)
        if kind is tuple:
            if isinstance(value, str):
                value = [v for v in value.replace(",", " ").split() if v]
            return tuple(float(v) for v in value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for '{name}': {exc}") from exc


def _read_toml(path):
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Could not read {path}: {exc}") from exc


def _find_config_file(environ):
    candidates = [
        os.path.join(config_dir(environ), CONFIG_FILENAME),
        os.path.abspath(CONFIG_FILENAME),
    ]
    for candidate in candidates:
        if os.path.isfile(candidate):
            return candidate
    return None


def load_token(environ=None):
    """Return the token stored by ``save_token``, or an empty string."""
    path = os.path.join(config_dir(environ), TOKEN_FILENAME)
    try:
        with open(path) as f:
            return str(json.load(f).get("auth_token", ""))
    except (FileNotFoundError, json.JSONDecodeError, AttributeError):
        return ""


def save_token(token, environ=None):
    """Store a device token for later runs.  Returns the file path."""
    directory = config_dir(environ)
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, TOKEN_FILENAME)
    with open(path, "w") as f:
        json.dump({"auth_token": token}, f)
    return path


def load_config(path=None, environ=None, overrides=None):
    """Build a validated Config.

    Args:
        path: TOML file to read.  Must exist when given; when omitted the
            XDG config dir and the working directory are searched.
        environ: Mapping used for ``LP_*`` overrides (default os.environ).
        overrides: Final field overrides, e.g. from the command line.

    Raises:
        ConfigError: on unreadable files, unknown keys or invalid values.
    """
    environ = os.environ if environ is None else environ
    values = {}

    if path is not None:
        if not os.path.isfile(path):
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = _find_config_file(environ)

    if path is not None:
        logger.info("Loading config from %s", path)
        for key, value in _read_toml(path).items():
            if key not in _FIELD_TYPES:
                raise ConfigError(f"Unknown config key '{key}' in {path}")
            values[key] = _coerce(key, value)

    for name in _FIELD_TYPES:
        env_key = ENV_PREFIX + name.upper()
        if env_key in environ:
            values[name] = _coerce(name, environ[env_key])

    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = _coerce(name, value)

    config = Config(**values)
    if not config.nanoleaf_token:
        token = load_token(environ)
        if token:
            config = replace(config, nanoleaf_token=token)

    validate(config)
    return config


def validate(config):
    """Raise ConfigError if any value is out of range."""
    problems = []

    if config.audio_backend not in AUDIO_BACKENDS:
        problems.append(f"audio_backend must be one of {AUDIO_BACKENDS}")
    if config.transport not in TRANSPORTS:
        problems.append(f"transport must be one of {TRANSPORTS}")
    if config.shutdown_state not in SHUTDOWN_STATES:
        problems.append(f"shutdown_state must be one of {SHUTDOWN_STATES}")
    if config.sample_rate <= 0:
        problems.append("sample_rate must be positive")
    if config.channels < 1:
        problems.append("channels must be at least 1")
    if config.window_size < 64 or config.window_size & (config.window_size - 1):
        problems.append("window_size must be a power of two >= 64")
    if not 0.0 <= config.overlap < 1.0:
        problems.append("overlap must be in [0, 1)")

    nyquist = config.sample_rate / 2.0
    if config.band_edges_hz:
        edges = config.band_edges_hz
        if len(edges) < 2:
            problems.append("band_edges_hz needs at least two edges")
        elif any(b <= a for a, b in zip(edges, edges[1:])):
            problems.append("band_edges_hz must be strictly ascending")
        elif edges[0] < 0 or edges[-1] > nyquist:
            problems.append(f"band_edges_hz must lie within 0-{nyquist:g} Hz")
    else:
        if config.band_count < 1:
            problems.append("band_count must be at least 1")
        if not 0 < config.min_freq_hz < config.max_freq_hz <= nyquist:
            problems.append(f"need 0 < min_freq_hz < max_freq_hz <= {nyquist:g}")

    if not config.palette:
        problems.append("palette needs at least one hue stop")
    for name in ("saturation", "brightness_floor", "brightness_ceiling", "flash_strength"):
        if not 0.0 <= getattr(config, name) <= 1.0:
            problems.append(f"{name} must be in [0, 1]")
    if config.brightness_floor > config.brightness_ceiling:
        problems.append("brightness_floor must not exceed brightness_ceiling")
    if config.onset_ratio <= 1.0:
        problems.append("onset_ratio must be greater than 1")
    for name in ("smoothing_ms", "normalize_decay_s", "onset_history_ms",
                 "flash_decay_ms", "update_interval_ms", "request_timeout_s"):
        if getattr(config, name) <= 0:
            problems.append(f"{name} must be positive")
    for name in ("onset_refractory_ms", "onset_warmup_ms", "silence_threshold",
                 "color_epsilon", "loudness_reference", "band_reference"):
        if getattr(config, name) < 0:
            problems.append(f"{name} must not be negative")
    if not 0 <= config.transition_ds <= 0xFFFF:
        problems.append("transition_ds must fit in 16 bits")
    if not 0 <= config.status_port <= 65535:
        problems.append("status_port must be a valid port")
    if config.log_level.upper() not in LOG_LEVELS:
        problems.append(f"log_level must be one of {LOG_LEVELS}")

    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))
