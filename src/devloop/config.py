"""Loop configuration.

Priority (lowest to highest):
1. Built-in defaults
2. ``<project>/.devloop/config.json``
3. ``DEVLOOP_*`` environment variables (a ``.env`` file is loaded first)
4. Explicit overrides, usually CLI flags
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DEVLOOP_"
CONFIG_FILENAME = "config.json"
WORKSPACE_DIRNAME = ".devloop"
BACKENDS = ("http", "process")

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ModelSpec:
    provider_id: str
    model_id: str


@dataclass(frozen=True)
class LoopConfig:
    plan_model: str
    build_model: str
    project_dir: Path
    verbose: bool = False
    user_hint: Optional[str] = None
    max_retries: int = 3
    backoff_base: float = 10.0
    backoff_cap: float = 300.0
    log_retention_days: int = 30
    task_pause_seconds: float = 2.0
    cycle_timeout_minutes: float = 60.0
    backend: str = "http"
    server_url: Optional[str] = None
    server_hostname: str = "127.0.0.1"
    server_port: int = 4096
    server_start_timeout: float = 30.0
    agent_command: str = "opencode"
    shutdown_grace_seconds: float = 5.0
    request_timeout: Optional[float] = None

    @property
    def cycle_timeout_seconds(self) -> Optional[float]:
        if self.cycle_timeout_minutes <= 0:
            return None
        return self.cycle_timeout_minutes * 60.0


# field name -> (type, minimum)
_TUNABLES: dict[str, tuple[type, Optional[float]]] = {
    "plan_model": (str, None),
    "build_model": (str, None),
    "verbose": (bool, None),
    "max_retries": (int, 1),
    "backoff_base": (float, 0.0),
    "backoff_cap": (float, 0.0),
    "log_retention_days": (int, 0),
    "task_pause_seconds": (float, 0.0),
    "cycle_timeout_minutes": (float, 0.0),
    "backend": (str, None),
    "server_url": (str, None),
    "server_hostname": (str, None),
    "server_port": (int, 1),
    "server_start_timeout": (float, 1.0),
    "agent_command": (str, None),
    "shutdown_grace_seconds": (float, 0.0),
    "request_timeout": (float, 0.0),
}


def _is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _read_int(name: str, default: Any, minimum: float | None = None) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: expected an integer", name, raw)
        return default
    if minimum is not None:
        value = max(int(minimum), value)
    return value


def _read_float(name: str, default: Any, minimum: float | None = None) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: expected a number", name, raw)
        return default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _read_str(name: str, default: Any) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _read_bool(name: str, default: Any) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return _is_truthy(raw)


def resolve_project_dir(project: Optional[str | Path] = None) -> Path:
    if project:
        return Path(project).expanduser().resolve()
    env_project = os.getenv(f"{ENV_PREFIX}PROJECT_DIR")
    if env_project:
        return Path(env_project).expanduser().resolve()
    return Path.cwd().resolve()


def _coerce(name: str, value: Any) -> Any:
    typ, minimum = _TUNABLES[name]
    if value is None:
        return None
    if typ is bool:
        if isinstance(value, str):
            return _is_truthy(value)
        return bool(value)
    if typ is int:
        coerced = int(value)
        return max(int(minimum), coerced) if minimum is not None else coerced
    if typ is float:
        coerced = float(value)
        return max(minimum, coerced) if minimum is not None else coerced
    return str(value)


def _load_config_file(project_dir: Path) -> dict[str, Any]:
    config_path = project_dir / WORKSPACE_DIRNAME / CONFIG_FILENAME
    if not config_path.is_file():
        return {}
    try:
        parsed = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to parse %s, ignoring it: %s", config_path, exc)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return {}

    values: dict[str, Any] = {}
    for key, raw in parsed.items():
        if key not in _TUNABLES:
            logger.warning("Unknown key %r in %s", key, config_path)
            continue
        try:
            values[key] = _coerce(key, raw)
        except (TypeError, ValueError):
            logger.warning("Invalid value for %r in %s: %r", key, config_path, raw)
    return values


def _load_env_config(base: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, (typ, minimum) in _TUNABLES.items():
        env_name = f"{ENV_PREFIX}{name.upper()}"
        current = base.get(name)
        if typ is bool:
            value = _read_bool(env_name, current)
        elif typ is int:
            value = _read_int(env_name, current, minimum)
        elif typ is float:
            value = _read_float(env_name, current, minimum)
        else:
            value = _read_str(env_name, current)
        if value is not None:
            values[name] = value
    return values


def load_config(
    project: Optional[str | Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    load_env_file: bool = True,
) -> LoopConfig:
    if load_env_file:
        load_dotenv()

    project_dir = resolve_project_dir(project)
    merged: dict[str, Any] = {}
    merged.update(_load_config_file(project_dir))
    merged.update(_load_env_config(merged))

    hint = None
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "user_hint":
            hint = str(value)
            continue
        if key not in _TUNABLES:
            raise ConfigError(f"Unknown configuration override: {key}")
        merged[key] = _coerce(key, value)

    defaults = {f.name: f.default for f in fields(LoopConfig) if f.name in _TUNABLES}
    config = LoopConfig(
        project_dir=project_dir,
        user_hint=hint,
        **{**defaults, "plan_model": "", "build_model": "", **merged},
    )
    validate_config(config)
    return config


def validate_config(config: LoopConfig) -> None:
    if not config.plan_model:
        raise ConfigError(
            "Missing plan model. Provide it via --model, --plan-model, "
            f"{WORKSPACE_DIRNAME}/{CONFIG_FILENAME} or {ENV_PREFIX}PLAN_MODEL."
        )
    if not config.build_model:
        raise ConfigError(
            "Missing build model. Provide it via --model, --build-model, "
            f"{WORKSPACE_DIRNAME}/{CONFIG_FILENAME} or {ENV_PREFIX}BUILD_MODEL."
        )
    for label, model in (("plan", config.plan_model), ("build", config.build_model)):
        if not is_valid_model(model):
            raise ConfigError(f"Invalid {label} model format: {model}. Expected provider/model")
    if config.backend not in BACKENDS:
        raise ConfigError(f"Unknown backend {config.backend!r}. Expected one of: {', '.join(BACKENDS)}")
    if not config.project_dir.is_dir():
        raise ConfigError(f"Project directory does not exist: {config.project_dir}")


def is_valid_model(model: str) -> bool:
    provider, sep, model_id = model.partition("/")
    return bool(sep and provider and model_id)


def parse_model(model: str) -> ModelSpec:
    if not is_valid_model(model):
        raise ConfigError(f"Invalid model format: {model}. Expected provider/model")
    provider, _, model_id = model.partition("/")
    return ModelSpec(provider_id=provider, model_id=model_id)


def with_overrides(config: LoopConfig, **changes: Any) -> LoopConfig:
    return replace(config, **changes)
