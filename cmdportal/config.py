from __future__ import annotations

import json
import os
import warnings
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/cmdportal/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "db_path": "CMDPORTAL_DB",
    "api_base_url": "CMDPORTAL_API_BASE_URL",
    "request_timeout_s": "CMDPORTAL_REQUEST_TIMEOUT_S",
    "connectivity_probe_host": "CMDPORTAL_PROBE_HOST",
    "connectivity_probe_port": "CMDPORTAL_PROBE_PORT",
    "connectivity_poll_s": "CMDPORTAL_POLL_S",
    "connectivity_debounce_ms": "CMDPORTAL_DEBOUNCE_MS",
    "retry_backoff_ms": "CMDPORTAL_RETRY_BACKOFF_MS",
    "retry_backoff_max_ms": "CMDPORTAL_RETRY_BACKOFF_MAX_MS",
    "queue_warn_size": "CMDPORTAL_QUEUE_WARN_SIZE",
    "session_max_events": "CMDPORTAL_SESSION_MAX_EVENTS",
    "replay_min_delay_ms": "CMDPORTAL_REPLAY_MIN_DELAY_MS",
    "replay_max_delay_ms": "CMDPORTAL_REPLAY_MAX_DELAY_MS",
    "replay_default_speed": "CMDPORTAL_REPLAY_SPEED",
}

_INT_KEYS = {
    "connectivity_probe_port",
    "connectivity_debounce_ms",
    "retry_backoff_ms",
    "retry_backoff_max_ms",
    "queue_warn_size",
    "session_max_events",
}
_FLOAT_KEYS = {
    "request_timeout_s",
    "connectivity_poll_s",
    "replay_min_delay_ms",
    "replay_max_delay_ms",
    "replay_default_speed",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CMDPORTAL_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class CmdPortalConfig:
    db_path: str = "~/.cmdportal/cmdportal.sqlite"
    api_base_url: str = "http://127.0.0.1:3001"
    request_timeout_s: float = 5.0
    # Empty host disables probing; the online flag then only moves on explicit signals.
    connectivity_probe_host: str = ""
    connectivity_probe_port: int = 443
    connectivity_poll_s: float = 0.0
    connectivity_debounce_ms: int = 250
    # 0 keeps the plain "retry on the next drain" behavior.
    retry_backoff_ms: int = 0
    retry_backoff_max_ms: int = 300_000
    queue_warn_size: int = 500
    session_max_events: int = 10_000
    replay_min_delay_ms: float = 50.0
    replay_max_delay_ms: float = 2000.0
    replay_default_speed: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> CmdPortalConfig:
    cfg = CmdPortalConfig()
    try:
        data = read_config_file(path)
    except ValueError as exc:
        warnings.warn(
            f"Ignoring config file {get_config_path(path)}: {exc}", RuntimeWarning, stacklevel=2
        )
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    if cfg.replay_default_speed <= 0:
        warnings.warn(
            f"Invalid replay_default_speed: {cfg.replay_default_speed!r}",
            RuntimeWarning,
            stacklevel=2,
        )
        cfg.replay_default_speed = 1.0
    return cfg


def _apply_dict(cfg: CmdPortalConfig, data: dict[str, Any]) -> CmdPortalConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if value is None:
            continue
        setattr(cfg, key, str(value))
    return cfg
