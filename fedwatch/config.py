"""Configuration management for fedwatch.

Loads settings from ~/.fedwatch/config.toml with environment variable
overrides (``FEDWATCH_{SECTION}_{KEY}``).
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import MISSING, dataclass, field
from dataclasses import fields as dataclass_fields
from dataclasses import replace as dc_replace
from pathlib import Path
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".fedwatch"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.toml"

# Public federation server; operators running their own bus override it.
DEFAULT_SERVER = "wss://f.tru.watch:9086"

# Keys whose values are never echoed back by ``fedwatch config show``.
SECRET_KEYS = frozenset({"password", "token", "nkey_seed"})


@dataclass(frozen=True)
class NodeConfig:
    """Local node settings."""

    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = "info"
    name: str = "fedwatch-monitor"


@dataclass(frozen=True)
class FederationConfig:
    """Message bus connection and publish policy."""

    servers: list[str] = field(default_factory=lambda: [DEFAULT_SERVER])
    # Authentication: user/password, bearer token, or key-pair (nkey seed
    # or a .creds file).  The first one configured wins, in that order.
    user: str = ""
    password: str = ""
    token: str = ""
    nkey_seed: str = ""
    credentials_file: str = ""
    tls: bool = True
    tls_cert: str = ""
    tls_key: str = ""
    tls_ca: str = ""
    reconnect: bool = True
    max_reconnect_attempts: int = -1  # -1 = unlimited
    reconnect_time_wait: float = 2.0  # seconds
    max_messages_per_minute: int = 60
    enable_privacy_checks: bool = True
    connect_timeout: float = 10.0
    publish_timeout: float = 5.0
    heartbeat_interval: float = 30.0
    leave_timeout: float = 2.0


@dataclass(frozen=True)
class AggregatorConfig:
    """Aggregator process settings."""

    db_path: Path = field(default_factory=lambda: DEFAULT_DATA_DIR / "aggregator.db")
    publish_interval: float = 30.0
    cleanup_interval: float = 86_400.0
    retention_days: int = 30
    stale_check_interval: float = 300.0
    stale_threshold: float = 300.0
    stale_batch_size: int = 5
    stale_batch_delay: float = 1.0
    rate_limit_per_node: int = 10
    global_rate_limit: int = 1000
    rate_limit_window: float = 1.0
    stats_stale_after: float = 90.0


@dataclass(frozen=True)
class Config:
    """Root configuration container."""

    node: NodeConfig = field(default_factory=NodeConfig)
    federation: FederationConfig = field(default_factory=FederationConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)


def _env_override(section: str, key: str) -> str | None:
    """Check for FEDWATCH_{SECTION}_{KEY} environment variable."""
    env_key = f"FEDWATCH_{section.upper()}_{key.upper()}"
    return os.environ.get(env_key)


def _field_kind(f: object) -> type:
    """Runtime type of a dataclass field, derived from its default."""
    default = f.default  # type: ignore[attr-defined]
    if default is MISSING:
        default = f.default_factory()  # type: ignore[attr-defined]
    return type(default)


def _coerce(value: str, target_type: type) -> object:
    """Coerce a string value to the target type."""
    if target_type is bool:
        return value.lower() in ("true", "1", "yes")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if issubclass(target_type, Path):
        return Path(value)
    if target_type is list:
        # Env var lists are comma-separated
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


# Configuration value constraints
_VALUE_CONSTRAINTS: dict[str, tuple[float, float]] = {
    "max_reconnect_attempts": (-1, 100_000),
    "reconnect_time_wait": (0.1, 300.0),
    "max_messages_per_minute": (1, 10_000),
    "connect_timeout": (0.5, 120.0),
    "publish_timeout": (0.1, 60.0),
    "heartbeat_interval": (5.0, 3600.0),
    "leave_timeout": (0.1, 30.0),
    "publish_interval": (1.0, 3600.0),
    "cleanup_interval": (60.0, 7 * 86_400.0),
    "retention_days": (1, 3650),
    "stale_check_interval": (5.0, 86_400.0),
    "stale_threshold": (30.0, 86_400.0),
    "stale_batch_size": (1, 1000),
    "stale_batch_delay": (0.0, 60.0),
    "rate_limit_per_node": (1, 10_000),
    "global_rate_limit": (1, 1_000_000),
    "rate_limit_window": (0.1, 60.0),
    "stats_stale_after": (10.0, 86_400.0),
}

# Allowed values for string enums
_ALLOWED_VALUES: dict[str, frozenset[str]] = {
    "log_level": frozenset({"debug", "info", "warning", "error", "critical"}),
}


def _validate_value(key: str, value: object) -> object:
    """Validate a config value against known constraints."""
    if (
        key in _VALUE_CONSTRAINTS
        and isinstance(value, (int, float))
        and not isinstance(value, bool)
    ):
        lo, hi = _VALUE_CONSTRAINTS[key]
        if not (lo <= value <= hi):
            logger.warning(
                "config_value_out_of_range",
                key=key,
                value=value,
                min=lo,
                max=hi,
            )
            # Clamp to valid range
            return type(value)(max(lo, min(hi, value)))
    if (
        key in _ALLOWED_VALUES
        and isinstance(value, str)
        and value.lower() not in _ALLOWED_VALUES[key]
    ):
        logger.warning(
            "config_invalid_value",
            key=key,
            value=value,
            allowed=sorted(_ALLOWED_VALUES[key]),
        )
        return None  # Will use default
    return value


def _build_section(
    cls: type[T], toml_section: dict[str, object], section_name: str
) -> T:
    """Build a dataclass instance from TOML data + env overrides."""
    kwargs: dict[str, object] = {}
    for f in dataclass_fields(cls):  # type: ignore[arg-type]
        kind = _field_kind(f)
        raw = toml_section.get(f.name)
        env_val = _env_override(section_name, f.name)
        if env_val is not None:
            try:
                raw = _coerce(env_val, kind)
            except ValueError:
                logger.warning(
                    "config_env_unparseable",
                    key=f"{section_name}.{f.name}",
                )
                continue
        if raw is None:
            continue
        if issubclass(kind, Path):
            raw = Path(str(raw)).expanduser()
        elif kind is float and isinstance(raw, int) and not isinstance(raw, bool):
            raw = float(raw)
        elif kind is list and isinstance(raw, str):
            raw = [raw]
        validated = _validate_value(f.name, raw)
        if validated is not None:
            kwargs[f.name] = validated
    return cls(**kwargs)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file with environment variable overrides.

    Priority: env vars > config.toml > defaults.

    Args:
        config_path: Path to config file. Defaults to ~/.fedwatch/config.toml.

    Returns:
        Populated Config instance.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    raw: dict[str, object] = {}

    if path.exists():
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        logger.info("config_loaded", path=str(path))
    else:
        logger.info("config_default", path=str(path), reason="file not found")

    node = _build_section(
        NodeConfig, raw.get("node", {}), "node"  # type: ignore[arg-type]
    )
    federation = _build_section(
        FederationConfig,
        raw.get("federation", {}),  # type: ignore[arg-type]
        "federation",
    )
    aggregator = _build_section(
        AggregatorConfig,
        raw.get("aggregator", {}),  # type: ignore[arg-type]
        "aggregator",
    )

    config = Config(node=node, federation=federation, aggregator=aggregator)

    if not config.federation.servers:
        config = dc_replace(
            config,
            federation=dc_replace(config.federation, servers=[DEFAULT_SERVER]),
        )

    # When data_dir is overridden but the aggregator DB still points to the
    # original default, re-derive it relative to the new data_dir.
    if (
        config.node.data_dir != DEFAULT_DATA_DIR
        and config.aggregator.db_path == DEFAULT_DATA_DIR / "aggregator.db"
    ):
        config = dc_replace(
            config,
            aggregator=dc_replace(
                config.aggregator,
                db_path=config.node.data_dir / "aggregator.db",
            ),
        )

    config.node.data_dir.resolve().mkdir(parents=True, exist_ok=True)
    return config


def config_as_dict(config: Config, *, mask_secrets: bool = True) -> dict[str, dict]:
    """Flatten *config* into ``{section: {key: value}}`` for display."""
    result: dict[str, dict] = {}
    for section_name in ("node", "federation", "aggregator"):
        section = getattr(config, section_name)
        values: dict[str, object] = {}
        for f in dataclass_fields(section):
            value = getattr(section, f.name)
            if isinstance(value, Path):
                value = str(value)
            if mask_secrets and f.name in SECRET_KEYS and value:
                value = "********"
            values[f.name] = value
        result[section_name] = values
    return result


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to TOML file.

    Only writes sections/keys that differ from defaults to keep
    the config file clean and readable.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    current = config_as_dict(config, mask_secrets=False)
    defaults = config_as_dict(Config(), mask_secrets=False)

    lines: list[str] = ["# fedwatch configuration", ""]
    for section_name, section_dict in current.items():
        changed = {
            k: v for k, v in section_dict.items() if v != defaults[section_name][k]
        }
        if not changed:
            continue
        lines.append(f"[{section_name}]")
        for key, value in changed.items():
            if isinstance(value, bool):
                lines.append(f"{key} = {str(value).lower()}")
            elif isinstance(value, str):
                escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                lines.append(f'{key} = "{escaped}"')
            elif isinstance(value, (float, int)):
                lines.append(f"{key} = {value}")
            elif isinstance(value, list):
                items = ", ".join(f'"{v}"' for v in value)
                lines.append(f"{key} = [{items}]")
        lines.append("")

    path.write_text("\n".join(lines), encoding="utf-8")
    logger.info("config_saved", path=str(path))
