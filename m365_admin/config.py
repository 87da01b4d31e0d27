"""Configuration loading utilities for the Microsoft 365 admin toolkit."""
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "M365_ADMIN_CONFIG"
ENV_PREFIX = "M365_ADMIN_"

DEFAULT_REQUIRED_FIELDS = ("display_name", "principal_name")
DEFAULT_COLUMNS: Dict[str, str] = {
    "display_name": "displayName",
    "principal_name": "userPrincipalName",
    "first_name": "firstName",
    "last_name": "lastName",
    "job_title": "jobTitle",
    "department": "department",
    "office": "office",
    "manager": "manager",
    "license_sku": "licenseSku",
    "groups": "groups",
    "password": "password",
    "force_password_change": "forcePasswordChange",
    "usage_location": "usageLocation",
}


@dataclass
class GraphConfig:
    """Settings for the Microsoft Graph integration (app-only credentials)."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    timeout_seconds: float = 30.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class ProvisioningConfig:
    """Behaviour of the bulk provisioning engine."""

    default_usage_location: str = "US"
    delay_seconds: float = 0.1
    verify: bool = True
    password_length: int = 16
    force_password_change: bool = True


@dataclass
class ImportConfig:
    """CSV import validation options."""

    required_fields: tuple[str, ...] = DEFAULT_REQUIRED_FIELDS
    validate_emails: bool = True
    check_duplicates: bool = True
    columns: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COLUMNS))


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    graph: GraphConfig = field(default_factory=GraphConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    imports: ImportConfig = field(default_factory=ImportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return [part for part in value.split(",")]
    return [value]


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _to_float(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _coerce(section: str, key: str, raw: Any, converter: Any) -> Any:
    try:
        return converter(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for '{section}.{key}': {raw!r}.") from exc


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    return config_from_dict(config_dict)


def config_from_dict(config_dict: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from a (possibly partial) primitive mapping."""

    graph_section = _section(config_dict, "graph")
    default_graph = GraphConfig()
    graph_config = GraphConfig(
        tenant_id=_optional_str(graph_section.get("tenant_id")),
        client_id=_optional_str(graph_section.get("client_id")),
        client_secret=_optional_str(graph_section.get("client_secret")),
        timeout_seconds=_coerce(
            "graph",
            "timeout_seconds",
            graph_section.get("timeout_seconds", default_graph.timeout_seconds),
            _to_float,
        ),
    )
    if graph_config.timeout_seconds <= 0:
        raise ConfigurationError("'graph.timeout_seconds' must be positive.")

    prov_section = _section(config_dict, "provisioning")
    default_prov = ProvisioningConfig()
    usage_location = (
        _optional_str(prov_section.get("default_usage_location"))
        or default_prov.default_usage_location
    ).upper()
    provisioning_config = ProvisioningConfig(
        default_usage_location=usage_location,
        delay_seconds=_coerce(
            "provisioning",
            "delay_seconds",
            prov_section.get("delay_seconds", default_prov.delay_seconds),
            _to_float,
        ),
        verify=_to_bool(prov_section.get("verify", default_prov.verify)),
        password_length=_coerce(
            "provisioning",
            "password_length",
            prov_section.get("password_length", default_prov.password_length),
            _to_int,
        ),
        force_password_change=_to_bool(
            prov_section.get("force_password_change", default_prov.force_password_change)
        ),
    )
    if provisioning_config.delay_seconds < 0:
        raise ConfigurationError("'provisioning.delay_seconds' cannot be negative.")
    if provisioning_config.password_length < 4:
        raise ConfigurationError("'provisioning.password_length' must be at least 4.")

    import_section = _section(config_dict, "import")
    default_import = ImportConfig()
    required = tuple(
        filter(
            None,
            [
                str(entry).strip()
                for entry in _normalize_sequence(
                    import_section.get("required_fields", default_import.required_fields)
                )
            ],
        )
    ) or DEFAULT_REQUIRED_FIELDS
    unknown_required = [name for name in required if name not in DEFAULT_COLUMNS]
    if unknown_required:
        raise ConfigurationError(
            f"Unknown required import field(s): {', '.join(unknown_required)}."
        )
    column_overrides = import_section.get("columns") or {}
    if not isinstance(column_overrides, dict):
        raise ConfigurationError("'import.columns' must be a mapping of field to column name.")
    columns = dict(DEFAULT_COLUMNS)
    for key, value in column_overrides.items():
        if key not in DEFAULT_COLUMNS:
            raise ConfigurationError(f"Unknown import column field '{key}'.")
        name = _optional_str(value)
        if name:
            columns[key] = name
    import_config = ImportConfig(
        required_fields=required,
        validate_emails=_to_bool(import_section.get("validate_emails", default_import.validate_emails)),
        check_duplicates=_to_bool(
            import_section.get("check_duplicates", default_import.check_duplicates)
        ),
        columns=columns,
    )

    logging_section = _section(config_dict, "logging")
    default_logging = LoggingConfig()
    logging_config = LoggingConfig(
        level=(_optional_str(logging_section.get("level")) or default_logging.level).upper(),
        format=_optional_str(logging_section.get("format")) or default_logging.format,
    )

    return AppConfig(
        graph=graph_config,
        provisioning=provisioning_config,
        imports=import_config,
        logging=logging_config,
    )


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for persistence."""

    return {
        "graph": {
            "tenant_id": config.graph.tenant_id or "",
            "client_id": config.graph.client_id or "",
            "client_secret": config.graph.client_secret or "",
            "timeout_seconds": config.graph.timeout_seconds,
        },
        "provisioning": {
            "default_usage_location": config.provisioning.default_usage_location,
            "delay_seconds": config.provisioning.delay_seconds,
            "verify": config.provisioning.verify,
            "password_length": config.provisioning.password_length,
            "force_password_change": config.provisioning.force_password_change,
        },
        "import": {
            "required_fields": list(config.imports.required_fields),
            "validate_emails": config.imports.validate_emails,
            "check_duplicates": config.imports.check_duplicates,
            "columns": dict(config.imports.columns),
        },
        "logging": {
            "level": config.logging.level,
            "format": config.logging.format,
        },
    }


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    """Persist the configuration to disk, returning the path that was written."""

    target = _resolve_config_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = config_to_dict(config)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False, indent=2)
    return target


def configure_logging(settings: LoggingConfig) -> None:
    """Apply the logging section to the root logger."""

    level = logging.getLevelName(settings.level)
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown logging level '{settings.level}'.")
    logging.basicConfig(level=level, format=settings.format)
    logging.getLogger().setLevel(level)


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "DEFAULT_COLUMNS",
    "GraphConfig",
    "ImportConfig",
    "LoggingConfig",
    "ProvisioningConfig",
    "config_from_dict",
    "config_to_dict",
    "configure_logging",
    "ensure_default_config",
    "load_config",
    "save_config",
]
