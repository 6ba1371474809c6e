"""Configuration for printcast.

Settings live in ``~/.printcast/config.yaml`` (``PRINTCAST_CONFIG``
overrides the path)::

    printer:
      host: http://voron.local
      api_key: ""
      interval: 10
    stream:
      source_url: http://voron.local/webcam/?action=stream
    timelapse:
      folder: ~/.printcast/timelapses
      period: 60
    broadcast:
      enabled: true
      privacy: unlisted
    orchestrator:
      offline_grace_period: 600

Precedence (highest first):
    1. CLI flags (``--host``, ``--source``, ...)
    2. Environment variables (``PRINTCAST_PRINTER_HOST``, etc.)
    3. Config file
    4. Built-in defaults
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import os
import re
import stat
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from printcast.platforms.base import validate_privacy

logger = logging.getLogger(__name__)

# Valid top-level keys in the config file.  Used for schema validation.
_KNOWN_KEYS: set[str] = {
    "printer",
    "stream",
    "timelapse",
    "broadcast",
    "orchestrator",
    "logging",
}

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")

_REDACTED = "***"
_SECRET_FIELDS = {"api_key", "youtube_token"}


def get_config_path() -> Path:
    """Return the config file path (``PRINTCAST_CONFIG`` or ``~/.printcast/config.yaml``)."""
    env_path = os.environ.get("PRINTCAST_CONFIG", "").strip()
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".printcast" / "config.yaml"


def normalize_host(host: str) -> str:
    """Prepend ``http://`` when no scheme is given and drop trailing slashes."""
    host = (host or "").strip()
    if not host:
        return ""
    if not re.match(r"^https?://", host, re.IGNORECASE):
        host = "http://" + host
    return host.rstrip("/")


# ---------------------------------------------------------------------------
# File I/O
# ---------------------------------------------------------------------------


def _check_file_permissions(path: Path) -> None:
    """Warn if *path* is readable by group or others."""
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
            logger.warning(
                "Config file %s has overly permissive permissions (mode %04o). Recommended: chmod 600 %s",
                path,
                stat.S_IMODE(mode),
                path,
            )
    except OSError:
        pass


def _validate_config_schema(data: dict[str, Any], path: Path) -> None:
    """Log warnings for unknown top-level keys in the config file."""
    unknown = set(data.keys()) - _KNOWN_KEYS
    for key in sorted(unknown):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_KNOWN_KEYS)),
        )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` when it is absent.

    Raises:
        ValueError: The file exists but is not valid YAML or not a mapping.
    """
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ValueError(f"Config file {path} has invalid YAML: {exc}. Fix it or remove it to use defaults.") from exc
    except OSError as exc:
        raise ValueError(f"Could not read config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping of sections, got {type(data).__name__}")
    _validate_config_schema(data, path)
    return data


def _write_config_file(path: Path, data: dict[str, Any]) -> None:
    """Write *data* to the YAML config file with ``0600`` permissions."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=False)
    if sys.platform != "win32":
        with contextlib.suppress(OSError):
            path.chmod(0o600)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _coerce(value: Any, default: Any, where: str) -> Any:
    """Convert *value* to the type of *default*.

    Raises:
        ValueError: *value* cannot be converted.
    """
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ValueError(f"{where} must be true or false, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{where} must be an integer, got {value!r}") from None
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{where} must be a number, got {value!r}") from None
    return str(value)


def _from_section(cls: type, data: dict[str, Any] | None, section: str) -> Any:
    """Build dataclass *cls* from *data*, ignoring unknown keys.

    Unknown keys are ignored so forward-compatible config files don't
    break older code.  Known keys are coerced to each field's default type.
    """
    instance = cls()
    if not data:
        return instance
    if not isinstance(data, dict):
        raise ValueError(f"Config section {section!r} must be a mapping, got {type(data).__name__}")
    updates: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name in data:
            default = getattr(instance, f.name)
            if default is None:
                updates[f.name] = None if data[f.name] is None else str(data[f.name])
            else:
                updates[f.name] = _coerce(data[f.name], default, f"{section}.{f.name}")
    return dataclasses.replace(instance, **updates)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class PrinterConfig:
    """Moonraker connection settings (``printer`` section)."""

    host: str = ""
    api_key: Optional[str] = None
    retries: int = 2
    verify_ssl: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrinterConfig:
        cfg = _from_section(cls, data, "printer")
        cfg.host = normalize_host(cfg.host)
        return cfg


@dataclass
class PollerPolicy:
    """State poller timing (also read from the ``printer`` section).

    :param interval: Seconds between polls.
    :param fast_interval: Seconds between polls near the end of a print.
    :param timeout: Upper bound for one telemetry query.
    :param progress_noise: Progress deltas below this many percentage
        points do not count as a change.
    """

    interval: float = 10.0
    fast_interval: float = 2.0
    timeout: float = 5.0
    progress_noise: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PollerPolicy:
        return _from_section(cls, data, "printer")


@dataclass
class StreamConfig:
    """Camera and encoder settings (``stream`` section).

    Empty ``source_url`` / ``snapshot_url`` are discovered from the
    printer's webcam list at startup.
    """

    source_url: str = ""
    snapshot_url: str = ""
    ffmpeg_path: str = ""
    fps: int = 30
    bitrate_kbps: int = 800
    width: int = 640
    height: int = 480
    max_frame_size: int = 10 * 1024 * 1024

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamConfig:
        return _from_section(cls, data, "stream")


@dataclass
class TimelapsePolicy:
    """Timelapse capture and finalization policy (``timelapse`` section)."""

    enabled: bool = True
    folder: str = "~/.printcast/timelapses"
    period: float = 60.0
    fps: int = 30
    last_layer_offset: int = 1
    last_layer_remaining_seconds: float = 30.0
    last_layer_progress_percent: float = 98.5
    start_after_layer1: bool = True
    capture_timeout: float = 10.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimelapsePolicy:
        policy = _from_section(cls, data, "timelapse")
        if policy.period <= 0:
            raise ValueError(f"timelapse.period must be positive, got {policy.period}")
        if policy.fps <= 0:
            raise ValueError(f"timelapse.fps must be positive, got {policy.fps}")
        return policy


@dataclass
class BroadcastPolicy:
    """Live broadcast policy (``broadcast`` section).

    :param enabled: Start a broadcast automatically when a print starts.
    :param end_stream_after_print: Stop the broadcast when the job ends.
    :param youtube_token: Static OAuth access token; expires after about an hour.
    :param youtube_token_file: Authorized-user JSON with a refresh token;
        preferred over *youtube_token* when both are set.
    :param health_failure_threshold: Consecutive dead encoder probes
        before the encoder is relaunched.
    """

    enabled: bool = True
    end_stream_after_print: bool = True
    youtube_token: Optional[str] = None
    youtube_token_file: Optional[str] = None
    title: str = "3D print live"
    description: str = ""
    privacy: str = "unlisted"
    health_interval: float = 10.0
    health_failure_threshold: int = 3
    ingestion_timeout: float = 120.0
    ingestion_poll_interval: float = 5.0
    stop_timeout: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BroadcastPolicy:
        policy = _from_section(cls, data, "broadcast")
        policy.privacy = validate_privacy(policy.privacy)
        if policy.health_failure_threshold < 1:
            raise ValueError("broadcast.health_failure_threshold must be at least 1")
        return policy


@dataclass
class OrchestratorPolicy:
    """Grace periods used to decide that a job has ended."""

    offline_grace_period: float = 600.0
    idle_finalize_delay: float = 20.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestratorPolicy:
        return _from_section(cls, data, "orchestrator")


@dataclass
class LoggingConfig:
    """Log file location and level (``logging`` section)."""

    level: str = "INFO"
    dir: str = ""
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingConfig:
        return _from_section(cls, data, "logging")


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

# (env var, attribute on PrintcastConfig, field)
_ENV_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("PRINTCAST_PRINTER_HOST", "printer", "host"),
    ("PRINTCAST_PRINTER_API_KEY", "printer", "api_key"),
    ("PRINTCAST_POLL_INTERVAL", "poller", "interval"),
    ("PRINTCAST_STREAM_SOURCE", "stream", "source_url"),
    ("PRINTCAST_SNAPSHOT_URL", "stream", "snapshot_url"),
    ("PRINTCAST_FFMPEG", "stream", "ffmpeg_path"),
    ("PRINTCAST_TIMELAPSE_FOLDER", "timelapse", "folder"),
    ("PRINTCAST_TIMELAPSE_PERIOD", "timelapse", "period"),
    ("PRINTCAST_AUTO_TIMELAPSE", "timelapse", "enabled"),
    ("PRINTCAST_AUTO_BROADCAST", "broadcast", "enabled"),
    ("PRINTCAST_END_STREAM_AFTER_PRINT", "broadcast", "end_stream_after_print"),
    ("PRINTCAST_YOUTUBE_TOKEN", "broadcast", "youtube_token"),
    ("PRINTCAST_YOUTUBE_TOKEN_FILE", "broadcast", "youtube_token_file"),
    ("PRINTCAST_PRIVACY", "broadcast", "privacy"),
    ("PRINTCAST_OFFLINE_GRACE", "orchestrator", "offline_grace_period"),
    ("PRINTCAST_IDLE_DELAY", "orchestrator", "idle_finalize_delay"),
    ("PRINTCAST_LOG_LEVEL", "logging", "level"),
    ("PRINTCAST_LOG_DIR", "logging", "dir"),
)


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


@dataclass
class PrintcastConfig:
    """Effective configuration after file, environment and flag overrides."""

    printer: PrinterConfig = field(default_factory=PrinterConfig)
    poller: PollerPolicy = field(default_factory=PollerPolicy)
    stream: StreamConfig = field(default_factory=StreamConfig)
    timelapse: TimelapsePolicy = field(default_factory=TimelapsePolicy)
    broadcast: BroadcastPolicy = field(default_factory=BroadcastPolicy)
    orchestrator: OrchestratorPolicy = field(default_factory=OrchestratorPolicy)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrintcastConfig:
        return cls(
            printer=PrinterConfig.from_dict(data.get("printer") or {}),
            poller=PollerPolicy.from_dict(data.get("printer") or {}),
            stream=StreamConfig.from_dict(data.get("stream") or {}),
            timelapse=TimelapsePolicy.from_dict(data.get("timelapse") or {}),
            broadcast=BroadcastPolicy.from_dict(data.get("broadcast") or {}),
            orchestrator=OrchestratorPolicy.from_dict(data.get("orchestrator") or {}),
            logging=LoggingConfig.from_dict(data.get("logging") or {}),
        )

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        """Return the configuration as nested dicts; secrets are masked."""
        printer = {**self.printer.to_dict(), **self.poller.to_dict()}
        result = {
            "printer": printer,
            "stream": self.stream.to_dict(),
            "timelapse": self.timelapse.to_dict(),
            "broadcast": self.broadcast.to_dict(),
            "orchestrator": self.orchestrator.to_dict(),
            "logging": self.logging.to_dict(),
        }
        if redact:
            for section in result.values():
                for key in _SECRET_FIELDS & section.keys():
                    if section[key]:
                        section[key] = _REDACTED
        return result

    def apply_env(self, environ: dict[str, str] | None = None) -> PrintcastConfig:
        """Overlay ``PRINTCAST_*`` environment variables in place.

        Invalid values are logged and ignored.
        """
        environ = os.environ if environ is None else environ
        for env_name, attr, name in _ENV_OVERRIDES:
            raw = environ.get(env_name, "").strip()
            if not raw:
                continue
            section = getattr(self, attr)
            current = getattr(section, name)
            try:
                value = raw if current is None else _coerce(raw, current, env_name)
            except ValueError as exc:
                logger.warning("Ignoring invalid %s: %s", env_name, exc)
                continue
            setattr(section, name, value)

        self.printer.host = normalize_host(self.printer.host)
        try:
            self.broadcast.privacy = validate_privacy(self.broadcast.privacy)
        except ValueError as exc:
            logger.warning("Ignoring invalid PRINTCAST_PRIVACY: %s", exc)
            self.broadcast.privacy = BroadcastPolicy.privacy
        return self

    def override(self, section: str, **values: Any) -> PrintcastConfig:
        """Apply non-``None`` CLI flag values to *section* in place."""
        target = getattr(self, section)
        for name, value in values.items():
            if value is not None:
                setattr(target, name, value)
        if section == "printer":
            self.printer.host = normalize_host(self.printer.host)
        return self

    def validate(self) -> list[str]:
        """Return problems that prevent the service from running."""
        problems: list[str] = []
        if not self.printer.host:
            problems.append(
                "No printer host configured. Set printer.host in the config file, "
                "export PRINTCAST_PRINTER_HOST, or pass --host."
            )
        if self.broadcast.enabled and not (self.broadcast.youtube_token or self.broadcast.youtube_token_file):
            problems.append(
                "Auto-broadcast is enabled but no YouTube token is configured. "
                "Set broadcast.youtube_token_file (refreshable) or broadcast.youtube_token, "
                "or disable broadcast.enabled."
            )
        return problems


def load_config(path: Path | str | None = None, *, environ: dict[str, str] | None = None) -> PrintcastConfig:
    """Load the effective configuration.

    Precedence: env vars > config file > defaults.  CLI flags are applied
    afterwards by the caller through :meth:`PrintcastConfig.override`.

    Raises:
        ValueError: The config file is unreadable or holds invalid values.
    """
    config_path = Path(path).expanduser() if path else get_config_path()
    raw = _read_config_file(config_path)
    try:
        config = PrintcastConfig.from_dict(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid config file {config_path}: {exc}") from exc
    config.source_path = str(config_path) if config_path.is_file() else None
    return config.apply_env(environ)


def save_config(config: PrintcastConfig, path: Path | str | None = None) -> Path:
    """Write *config* (unredacted) to *path*; returns the path written."""
    config_path = Path(path).expanduser() if path else get_config_path()
    _write_config_file(config_path, config.to_dict(redact=False))
    return config_path
