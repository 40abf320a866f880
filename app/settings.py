"""Centralised settings for the horizon stats viewer."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from dotenv import load_dotenv

from horizon.core import DEFAULT_METRIC, DEFAULT_REFRESH_MS, DEFAULT_STEP_SECONDS, DEFAULT_WINDOW

BASE_DIR = Path(__file__).resolve().parents[1]
LOG_DIR = BASE_DIR / "logs"
LOG_FILE = LOG_DIR / "horizon.log"
CONFIG_FILE = BASE_DIR / "config" / "stats.yaml"
CONFIG_ENV_VAR = "HORIZON_CONFIG"

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z0-9_]+)\}")

DEFAULT_COLORS: List[str] = [
    "#08519c",
    "#3182bd",
    "#6baed6",
    "#bdd7e7",
    "#bae4b3",
    "#74c476",
    "#31a354",
    "#006d2c",
]


class ConfigurationError(RuntimeError):
    """Raised when the configuration file is invalid."""


@dataclass(slots=True)
class ViewerConfig:
    base_url: str = "http://localhost:8005"
    username: Optional[str] = None
    password: Optional[str] = None
    timeout_s: float = 10.0
    verify_tls: bool = True


@dataclass(slots=True)
class DisplayConfig:
    metric: str = DEFAULT_METRIC
    interval_s: int = DEFAULT_STEP_SECONDS
    refresh_ms: int = DEFAULT_REFRESH_MS
    window: int = DEFAULT_WINDOW
    colors: List[str] = field(default_factory=lambda: list(DEFAULT_COLORS))
    extent: Optional[float] = None


@dataclass(slots=True)
class EngineConfig:
    refetch_buckets: int = 1
    stall_after: Optional[int] = None


@dataclass(slots=True)
class UIConfig:
    host: str = "127.0.0.1"
    port: int = 8090
    start_visible: bool = True


@dataclass(slots=True)
class Settings:
    viewer: ViewerConfig = field(default_factory=ViewerConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    source: Optional[Path] = None


def _ensure_directories(paths: Iterable[Path]) -> None:
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def setup_logging(level: int = logging.INFO, log_file: Optional[Path] = None) -> None:
    """Configure a rotating file logger plus console echo."""
    target = log_file or LOG_FILE
    _ensure_directories((target.parent,))

    handler = RotatingFileHandler(
        target,
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    console_handler = logging.StreamHandler()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[handler, console_handler],
        force=True,
    )


def _expand_env_values(value: object, *, source: Optional[Path] = None) -> object:
    if isinstance(value, dict):
        return {key: _expand_env_values(val, source=source) for key, val in value.items()}
    if isinstance(value, list):
        return [_expand_env_values(item, source=source) for item in value]
    if isinstance(value, str):
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            if var_name not in os.environ:
                location = f" in config '{source}'" if source else ""
                raise ConfigurationError(f"Environment variable '{var_name}' referenced{location} is not set")
            return os.environ[var_name]

        return _ENV_VAR_PATTERN.sub(replacer, value)
    return value


def _section(raw: Dict[str, object], name: str) -> Dict[str, object]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"`{name}` must be a mapping")
    return dict(value)


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_NULL_VALUES = {"", "null", "none", "~"}


def _number(value: object, kind: type, name: str) -> int | float:
    if isinstance(value, bool):
        raise ConfigurationError(f"`{name}` must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"`{name}` must be a number, got {value!r}") from exc


def _optional_number(value: object, kind: type, name: str) -> int | float | None:
    if value is None or (isinstance(value, str) and value.strip().lower() in _NULL_VALUES):
        return None
    return _number(value, kind, name)


def _flag(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"`{name}` must be true or false, got {value!r}")


def _build_settings(raw: Dict[str, object], source: Optional[Path]) -> Settings:
    try:
        viewer = ViewerConfig(**_section(raw, "viewer"))
        display = DisplayConfig(**_section(raw, "display"))
        engine = EngineConfig(**_section(raw, "engine"))
        ui = UIConfig(**_section(raw, "ui"))
    except TypeError as exc:
        raise ConfigurationError(f"Unknown configuration key: {exc}") from exc

    # ${VAR} expansion leaves strings behind
    viewer.base_url = str(viewer.base_url).rstrip("/")
    viewer.timeout_s = _number(viewer.timeout_s, float, "viewer.timeout_s")
    viewer.verify_tls = _flag(viewer.verify_tls, "viewer.verify_tls")
    display.metric = str(display.metric)
    display.interval_s = _number(display.interval_s, int, "display.interval_s")
    display.refresh_ms = _number(display.refresh_ms, int, "display.refresh_ms")
    display.window = _number(display.window, int, "display.window")
    display.extent = _optional_number(display.extent, float, "display.extent")
    engine.refetch_buckets = _number(engine.refetch_buckets, int, "engine.refetch_buckets")
    engine.stall_after = _optional_number(engine.stall_after, int, "engine.stall_after")
    ui.host = str(ui.host)
    ui.port = _number(ui.port, int, "ui.port")
    ui.start_visible = _flag(ui.start_visible, "ui.start_visible")

    if not viewer.base_url:
        raise ConfigurationError("`viewer.base_url` is required")
    if viewer.timeout_s <= 0:
        raise ConfigurationError("`viewer.timeout_s` must be positive")
    if display.interval_s <= 0:
        raise ConfigurationError("`display.interval_s` must be positive")
    if display.refresh_ms <= 0:
        raise ConfigurationError("`display.refresh_ms` must be positive")
    if display.window <= 0:
        raise ConfigurationError("`display.window` must be positive")
    if not isinstance(display.colors, list) or len(display.colors) < 2 or len(display.colors) % 2:
        raise ConfigurationError("`display.colors` needs an even number of colours (negative + positive bands)")
    if display.extent is not None and display.extent <= 0:
        raise ConfigurationError("`display.extent` must be positive when set")
    if engine.refetch_buckets < 0:
        raise ConfigurationError("`engine.refetch_buckets` cannot be negative")
    if engine.stall_after is not None and engine.stall_after <= 0:
        raise ConfigurationError("`engine.stall_after` must be positive when set")
    if not 0 < ui.port < 65536:
        raise ConfigurationError("`ui.port` must be between 1 and 65535")
    return Settings(viewer=viewer, display=display, engine=engine, ui=ui, source=source)


def load_settings(path: Optional[Path | str] = None) -> Settings:
    """Load settings from YAML, falling back to defaults when no file exists."""
    env_candidates = [BASE_DIR / ".env", Path(".env")]
    for candidate in dict.fromkeys(env_candidates):
        if candidate.exists():
            load_dotenv(candidate, override=False)

    candidates: List[Path] = []
    if path:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigurationError(f"Configuration file {explicit} does not exist")
        candidates.append(explicit)
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(CONFIG_FILE)

    for candidate in candidates:
        if not candidate.exists():
            continue
        with candidate.open("r", encoding="utf-8") as handle:
            try:
                data = yaml.safe_load(handle) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid configuration format in {candidate}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root in {candidate} must be a mapping")
        expanded = _expand_env_values(data, source=candidate)
        return _build_settings(expanded, candidate)
    return _build_settings({}, None)
