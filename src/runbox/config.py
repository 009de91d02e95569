"""Runtime settings for the execution sandbox."""

from __future__ import annotations

import os
import sys
import tempfile
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import ConfigurationError

DEFAULT_TIMEOUT_S = 4.0

DEFAULT_CONFIG: dict[str, Any] = {
    "server": {
        "host": "127.0.0.1",
        "port": 8088,
        "api_key": "",
    },
    "execution": {
        "timeout_s": DEFAULT_TIMEOUT_S,
        "max_concurrency": 4,
        "scratch_dir": None,
        "max_source_bytes": 128 * 1024,
        "max_output_bytes": 1024 * 1024,
        "env_allowlist": [],
    },
    "runtimes": {
        "python": {"executable": None},
        "javascript": {"executable": "node"},
    },
    "logging": {
        "level": "INFO",
        "json": False,
    },
}


@dataclass(frozen=True)
class RunnerLimits:
    max_source_bytes: int = 128 * 1024
    max_output_bytes: int = 1024 * 1024


@dataclass(frozen=True)
class RunnerSettings:
    host: str = "127.0.0.1"
    port: int = 8088
    api_key: str = ""
    max_concurrency: int = 4
    scratch_dir: Path = Path(tempfile.gettempdir()) / "runbox"
    default_timeout_s: float = DEFAULT_TIMEOUT_S
    python_path: str = sys.executable or "python3"
    node_path: str = "node"
    env_allowlist: tuple[str, ...] = ()
    runtimes: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    limits: RunnerLimits = RunnerLimits()
    log_level: str = "INFO"
    log_json: bool = False


def deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"找不到設定檔：{path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"讀取設定檔失敗：{path}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"設定檔格式錯誤（需為 mapping）：{path}")
    return data


def load_settings(
    environ: Mapping[str, str] | None = None,
    config_path: Path | None = None,
) -> RunnerSettings:
    """Resolve settings from defaults, an optional YAML file and the environment."""
    env = os.environ if environ is None else environ

    effective = deepcopy(DEFAULT_CONFIG)
    path = config_path or (Path(env["RUNBOX_CONFIG"]).expanduser() if env.get("RUNBOX_CONFIG") else None)
    if path is not None:
        effective = deep_merge(effective, read_yaml(path))

    server = _section(effective, "server")
    execution = _section(effective, "execution")
    runtimes = _section(effective, "runtimes")
    logging_cfg = _section(effective, "logging")

    python_cfg = runtimes.get("python") if isinstance(runtimes.get("python"), Mapping) else {}
    node_cfg = runtimes.get("javascript") if isinstance(runtimes.get("javascript"), Mapping) else {}
    python_path = env.get("PYTHON_PATH") or python_cfg.get("executable") or sys.executable or "python3"
    node_path = env.get("RUNBOX_NODE_PATH") or node_cfg.get("executable") or "node"

    scratch_raw = env.get("RUNBOX_SCRATCH_DIR") or execution.get("scratch_dir")
    scratch_dir = Path(str(scratch_raw)).expanduser() if scratch_raw else Path(tempfile.gettempdir()) / "runbox"

    allowlist_raw: Any = env.get("RUNBOX_ENV_ALLOWLIST")
    if allowlist_raw is None:
        allowlist_raw = execution.get("env_allowlist") or []
    if isinstance(allowlist_raw, str):
        allowlist_raw = allowlist_raw.split(",")
    env_allowlist = tuple(str(item).strip() for item in allowlist_raw if str(item).strip())

    settings = RunnerSettings(
        host=str(env.get("RUNBOX_HOST") or server.get("host") or "127.0.0.1"),
        port=_read_int(env.get("RUNBOX_PORT", server.get("port")), "port"),
        api_key=str(env.get("RUNBOX_API_KEY") or server.get("api_key") or ""),
        max_concurrency=_read_int(env.get("RUNBOX_MAX_CONCURRENCY", execution.get("max_concurrency")), "max_concurrency"),
        scratch_dir=scratch_dir,
        default_timeout_s=_read_float(env.get("RUNBOX_TIMEOUT_S", execution.get("timeout_s")), "timeout_s"),
        python_path=str(python_path),
        node_path=str(node_path),
        env_allowlist=env_allowlist,
        runtimes={
            str(key): dict(value)
            for key, value in runtimes.items()
            if isinstance(value, Mapping)
        },
        limits=RunnerLimits(
            max_source_bytes=_read_int(
                env.get("RUNBOX_MAX_SOURCE_BYTES", execution.get("max_source_bytes")), "max_source_bytes"
            ),
            max_output_bytes=_read_int(
                env.get("RUNBOX_MAX_OUTPUT_BYTES", execution.get("max_output_bytes")), "max_output_bytes"
            ),
        ),
        log_level=str(env.get("RUNBOX_LOG_LEVEL") or logging_cfg.get("level") or "INFO").upper(),
        log_json=_read_bool(env.get("RUNBOX_LOG_JSON", logging_cfg.get("json"))),
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: RunnerSettings) -> None:
    if settings.default_timeout_s <= 0:
        raise ConfigurationError("timeout_s 必須大於 0")
    if settings.max_concurrency < 1:
        raise ConfigurationError("max_concurrency 至少為 1")
    if settings.limits.max_output_bytes <= 0:
        raise ConfigurationError("max_output_bytes 必須大於 0")
    if settings.limits.max_source_bytes <= 0:
        raise ConfigurationError("max_source_bytes 必須大於 0")
    if not 0 < settings.port < 65536:
        raise ConfigurationError(f"port 不合法：{settings.port}")


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"設定區段 {name} 必須是 mapping")
    return value


def _read_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} 必須是整數：{value!r}") from exc


def _read_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} 必須是數字：{value!r}") from exc


def _read_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}
