"""TOML-based controller settings.

Loads ~/.reclaim/defaults.toml (global) and reclaim.toml (project),
merges them, applies ``RECLAIM_*`` environment overrides and builds an
immutable ``Settings``.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from reclaim import constants
from reclaim.core.exceptions import ConfigurationError

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".reclaim" / "defaults.toml"
PROJECT_CONFIG_NAME = "reclaim.toml"
ENV_PREFIX = "RECLAIM_"


@dataclass(frozen=True, slots=True)
class Settings:
    """Controller settings.

    Args:
        cluster_name: Cluster identifier. Names the queue and is the value of
            the discovery tag on every created resource.
        region: AWS region for the queue and rules.
        enable_interruption_handling: When False, no infrastructure is
            provisioned and the queue is never polled.
        discovery_tag_key: Tag key scoping resources to this cluster.
        message_retention_seconds: Queue message retention.
        receive_wait_seconds: Long-poll duration per receive call.
        receive_max_messages: Batch size per receive call.
        visibility_timeout_seconds: How long a received message stays hidden.
        recently_deleted_requeue_seconds: Fixed delay before retrying queue
            creation after the provider refused a recently deleted name.
        unavailable_offerings_ttl_seconds: Lifetime of capacity cache entries.
        message_concurrency: Messages processed concurrently per batch.
        reconcile_timeout_seconds: Deadline for one owner reconcile. A reconcile
            that runs longer is cancelled and retried with backoff.
    """

    cluster_name: str
    region: str = "us-east-1"
    enable_interruption_handling: bool = True
    discovery_tag_key: str = constants.DISCOVERY_TAG_KEY
    message_retention_seconds: int = constants.MESSAGE_RETENTION_SECONDS
    receive_wait_seconds: int = constants.RECEIVE_WAIT_SECONDS
    receive_max_messages: int = constants.RECEIVE_MAX_MESSAGES
    visibility_timeout_seconds: int = constants.VISIBILITY_TIMEOUT_SECONDS
    recently_deleted_requeue_seconds: float = constants.QUEUE_RECREATE_DELAY_SECONDS
    unavailable_offerings_ttl_seconds: float = constants.UNAVAILABLE_OFFERINGS_TTL_SECONDS
    message_concurrency: int = constants.MESSAGE_CONCURRENCY
    reconcile_timeout_seconds: float = constants.RECONCILE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.cluster_name:
            raise ConfigurationError("cluster_name is required")
        if not 1 <= self.receive_max_messages <= 10:
            raise ConfigurationError("receive_max_messages must be between 1 and 10")
        if not 0 <= self.receive_wait_seconds <= 20:
            raise ConfigurationError("receive_wait_seconds must be between 0 and 20")
        if self.message_concurrency < 1:
            raise ConfigurationError("message_concurrency must be positive")
        if self.reconcile_timeout_seconds <= 0:
            raise ConfigurationError("reconcile_timeout_seconds must be positive")

    @property
    def queue_name(self) -> str:
        name = re.sub(r"[^a-zA-Z0-9_-]", "", self.cluster_name.replace(".", "-"))
        return name[: constants.QUEUE_NAME_MAX_LENGTH]


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def _env_overrides(environ: Mapping[str, str]) -> RawConfig:
    defaults = {f.name: f.default for f in fields(Settings)}
    overrides: RawConfig = {}
    for name, default in defaults.items():
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        try:
            overrides[name] = _coerce(raw, default)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return overrides


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)
    return _deep_merge(global_cfg, project_cfg)


def load_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from TOML files and environment variables.

    The ``[controller]`` table holds the settings; environment variables
    named ``RECLAIM_<FIELD>`` take precedence over both files.
    """
    config = load_config(project_dir=project_dir, global_path=global_path)
    raw = dict(config.get("controller", {}))
    raw.update(_env_overrides(os.environ if environ is None else environ))

    known = {f.name for f in fields(Settings)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    if "cluster_name" not in raw:
        raise ConfigurationError("cluster_name is required")
    return Settings(**raw)
