from __future__ import annotations

import logging
import os
import platform
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from .errors import ConfigError


logger = logging.getLogger("fleetwatch.config")

DEFAULT_COLLECTOR_URL = "http://localhost:8090/api"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class AgentSettings:
    collector_url: str = DEFAULT_COLLECTOR_URL
    data_dir: Path = Path("./fleet_agent_data")
    device_id: str = ""

    queue_capacity: int = 2000
    batch_size: int = 50
    flush_interval_s: float = 30.0
    poll_interval_s: float = 30.0

    send_timeout_s: float = 8.0
    batch_timeout_s: float = 15.0
    poll_timeout_s: float = 10.0
    register_timeout_s: float = 15.0
    connectivity_timeout_s: float = 3.0

    max_accuracy_m: float = 150.0
    sample_interval_s: float = 15.0
    sample_distance_m: float = 0.0
    background_updates: bool = True

    sqlite_journal_mode: str = "WAL"
    sqlite_synchronous: str = "NORMAL"

    log_level: str = "INFO"
    log_format: str = "text"

    @property
    def queue_path(self) -> Path:
        return self.data_dir / "queue.sqlite"


def load_dotenv_files() -> None:
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")


def resolve_device_id(configured: str | None = None) -> str:
    """Configured id, else the host name, else `device_<unix-ts>`."""

    if configured and configured.strip():
        return configured.strip()
    node = platform.node().strip()
    if node:
        return node
    return f"device_{int(time.time() * 1000)}"


def load_yaml_defaults(path: str | Path) -> dict[str, Any]:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(f"FLEET_AGENT_CONFIG_PATH does not exist: {p}")
    try:
        loaded = yaml.safe_load(p.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to read agent config at {p}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"agent config at {p} must be a YAML object")
    return dict(loaded)


def load_settings(*, env: Mapping[str, str] | None = None, load_env_files: bool = True) -> AgentSettings:
    """Build settings from env vars over optional YAML defaults over built-ins."""

    if env is None:
        if load_env_files:
            load_dotenv_files()
        env = os.environ

    file_values: Mapping[str, Any] = {}
    config_path = env.get("FLEET_AGENT_CONFIG_PATH")
    if config_path and config_path.strip():
        file_values = load_yaml_defaults(config_path.strip())

    src = _Source(env=env, file_values=file_values)
    d = AgentSettings()

    log_format = src.string("FLEET_LOG_FORMAT", "log_format", d.log_format).lower()
    if log_format not in {"text", "json"}:
        logger.warning("invalid log_format=%r; using %s", log_format, d.log_format)
        log_format = d.log_format

    return AgentSettings(
        collector_url=src.string("FLEET_COLLECTOR_URL", "collector_url", d.collector_url).rstrip("/"),
        data_dir=Path(src.string("FLEET_AGENT_DATA_DIR", "data_dir", str(d.data_dir))).expanduser(),
        device_id=resolve_device_id(src.string("FLEET_DEVICE_ID", "device_id", "")),
        queue_capacity=src.positive_int("FLEET_QUEUE_CAPACITY", "queue_capacity", d.queue_capacity),
        batch_size=src.positive_int("FLEET_BATCH_SIZE", "batch_size", d.batch_size),
        flush_interval_s=src.positive_float("FLEET_FLUSH_INTERVAL_S", "flush_interval_s", d.flush_interval_s),
        poll_interval_s=src.positive_float("FLEET_POLL_INTERVAL_S", "poll_interval_s", d.poll_interval_s),
        send_timeout_s=src.positive_float("FLEET_SEND_TIMEOUT_S", "send_timeout_s", d.send_timeout_s),
        batch_timeout_s=src.positive_float("FLEET_BATCH_TIMEOUT_S", "batch_timeout_s", d.batch_timeout_s),
        poll_timeout_s=src.positive_float("FLEET_POLL_TIMEOUT_S", "poll_timeout_s", d.poll_timeout_s),
        register_timeout_s=src.positive_float(
            "FLEET_REGISTER_TIMEOUT_S", "register_timeout_s", d.register_timeout_s
        ),
        connectivity_timeout_s=src.positive_float(
            "FLEET_CONNECTIVITY_TIMEOUT_S", "connectivity_timeout_s", d.connectivity_timeout_s
        ),
        max_accuracy_m=src.positive_float("FLEET_MAX_ACCURACY_M", "max_accuracy_m", d.max_accuracy_m),
        sample_interval_s=src.positive_float("FLEET_SAMPLE_INTERVAL_S", "sample_interval_s", d.sample_interval_s),
        sample_distance_m=src.nonnegative_float(
            "FLEET_SAMPLE_DISTANCE_M", "sample_distance_m", d.sample_distance_m
        ),
        background_updates=src.boolean("FLEET_BACKGROUND_UPDATES", "background_updates", d.background_updates),
        sqlite_journal_mode=src.string("FLEET_SQLITE_JOURNAL_MODE", "sqlite_journal_mode", d.sqlite_journal_mode),
        sqlite_synchronous=src.string("FLEET_SQLITE_SYNCHRONOUS", "sqlite_synchronous", d.sqlite_synchronous),
        log_level=src.string("FLEET_LOG_LEVEL", "log_level", d.log_level).upper(),
        log_format=log_format,
    )


@dataclass(frozen=True)
class _Source:
    env: Mapping[str, str]
    file_values: Mapping[str, Any]

    def _raw(self, env_name: str, key: str) -> Any:
        v = self.env.get(env_name)
        if v is not None and v.strip() != "":
            return v.strip()
        return self.file_values.get(key)

    def string(self, env_name: str, key: str, default: str) -> str:
        raw = self._raw(env_name, key)
        if raw is None:
            return default
        value = str(raw).strip()
        return value or default

    def positive_int(self, env_name: str, key: str, default: int) -> int:
        raw = self._raw(env_name, key)
        if raw is None:
            return default
        try:
            value = int(str(raw).strip())
        except ValueError:
            logger.warning("invalid %s=%r; using %s", env_name, raw, default)
            return default
        if value <= 0:
            logger.warning("invalid %s=%r; using %s", env_name, raw, default)
            return default
        return value

    def positive_float(self, env_name: str, key: str, default: float) -> float:
        value = self._float(env_name, key, default)
        if value <= 0:
            logger.warning("invalid %s=%r; using %s", env_name, value, default)
            return default
        return value

    def nonnegative_float(self, env_name: str, key: str, default: float) -> float:
        value = self._float(env_name, key, default)
        if value < 0:
            logger.warning("invalid %s=%r; using %s", env_name, value, default)
            return default
        return value

    def _float(self, env_name: str, key: str, default: float) -> float:
        raw = self._raw(env_name, key)
        if raw is None:
            return default
        try:
            return float(str(raw).strip())
        except ValueError:
            logger.warning("invalid %s=%r; using %s", env_name, raw, default)
            return default

    def boolean(self, env_name: str, key: str, default: bool) -> bool:
        raw = self._raw(env_name, key)
        if raw is None:
            return default
        if isinstance(raw, bool):
            return raw
        value = str(raw).strip().lower()
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        logger.warning("invalid %s=%r; using %s", env_name, raw, default)
        return default
