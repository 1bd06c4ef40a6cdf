"""
Configuration management for the podbox deployment orchestrator.

This module implements the DeployConfig Pydantic model and configuration
loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/podbox_update/deploy.yml or --config path)
3. Environment variables (PODBOX_DEPLOY_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

The database password falls back to the DB_PASSWORD environment variable,
which is where the deployment bundle has always received it.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from podbox_deploy.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("/etc/podbox_update/deploy.yml")
DEFAULT_ENV_PREFIX = "PODBOX_DEPLOY_"
PASSWORD_ENV_VAR = "DB_PASSWORD"

_VALID_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}


def _normalize_log_level(v: str) -> str:
    v_lower = v.lower()
    if v_lower not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of: {', '.join(sorted(_VALID_LOG_LEVELS))}"
        )
    if v_lower == "warn":
        return "warning"
    return v_lower


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseModel):
    """Connection parameters for the live database.

    Attributes:
        host: Database server host.
        port: Database server port.
        user: Role used for dump, restore, drop and create.
        name: Name of the live database.
        password: Password for ``user``; never logged.
        maintenance_db: Database to connect to while dropping/creating ``name``.
        command_timeout_seconds: Upper bound for a single dump/restore command.
    """

    host: str = Field(default="localhost", description="Database server host")
    port: int = Field(default=5432, ge=1, le=65535, description="Database server port")
    user: str = Field(default="podbox", description="Database role")
    name: str = Field(default="podbox", description="Live database name")
    password: str | None = Field(
        default=None,
        repr=False,
        description="Database password (falls back to DB_PASSWORD)",
    )
    maintenance_db: str = Field(
        default="template1",
        description="Database used while dropping and recreating the live database",
    )
    command_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Timeout for pg_dump/psql invocations",
    )

    @field_validator("password", mode="before")
    @classmethod
    def validate_password(cls, v: Any) -> str | None:
        """YAML values such as 1234 arrive parsed as numbers."""
        if v is None:
            return None
        return str(v)


# =============================================================================
# Paths Configuration
# =============================================================================


class PathsConfig(BaseModel):
    """Well-known filesystem locations.

    Attributes:
        staging_dir: Where the staged update (back/, pwa/, db.dump, images/) lives.
        live_dir: The live deployment directory tree.
        backup_root: Directory holding backup units as sibling directories.
        backup_prefix: Name prefix of backup unit directories.
        version_file: Deployment record read by external tooling.
        lock_file: Exclusive lock held for the whole run.
        state_file: Last known orchestrator state, for operators.
    """

    staging_dir: Path = Field(
        default=Path("/root/update"),
        description="Staged update directory",
    )
    live_dir: Path = Field(
        default=Path("/root/services"),
        description="Live deployment directory",
    )
    backup_root: Path = Field(
        default=Path("/root"),
        description="Directory containing backup units",
    )
    backup_prefix: str = Field(
        default="services_backup_",
        min_length=1,
        description="Backup unit directory name prefix",
    )
    version_file: Path = Field(
        default=Path("/etc/podbox_update/version.txt"),
        description="Deployment record file",
    )
    lock_file: Path = Field(
        default=Path("/run/podbox-deploy/deploy.lock"),
        description="Deployment lock file",
    )
    state_file: Path = Field(
        default=Path("/var/lib/podbox-deploy/state.json"),
        description="Orchestrator state file",
    )

    @field_validator("backup_prefix")
    @classmethod
    def validate_backup_prefix(cls, v: str) -> str:
        """Reject prefixes that would escape the backup root."""
        if "/" in v or v.startswith("."):
            raise ValueError(f"Invalid backup prefix: {v!r}")
        return v


# =============================================================================
# Services Configuration
# =============================================================================


class ServicesConfig(BaseModel):
    """Names of the supervised services.

    Attributes:
        backend: Backend service unit.
        proxy: Reverse proxy service unit.
        command_timeout_seconds: Upper bound for a single systemctl call.
    """

    backend: str = Field(default="podbox", description="Backend service name")
    proxy: str = Field(default="nginx", description="Reverse proxy service name")
    command_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for systemctl invocations",
    )


# =============================================================================
# Permissions Configuration
# =============================================================================


def _parse_mode(v: Any) -> int:
    if isinstance(v, str):
        try:
            return int(v, 8)
        except ValueError as exc:
            raise ValueError(f"Invalid octal mode: {v!r}") from exc
    return v


class PermissionsConfig(BaseModel):
    """Ownership and mode policy applied to replaced trees.

    Attributes:
        owner: Owning user (None leaves ownership untouched).
        group: Owning group (None leaves ownership untouched).
        dir_mode: Mode applied to directories.
        file_mode: Mode applied to files.
    """

    owner: str | None = Field(default="root", description="Owner user")
    group: str | None = Field(default="podbox", description="Owner group")
    dir_mode: int = Field(default=0o750, description="Directory mode (octal)")
    file_mode: int = Field(default=0o640, description="File mode (octal)")

    @field_validator("dir_mode", "file_mode", mode="before")
    @classmethod
    def validate_mode(cls, v: Any) -> int:
        """Accept octal strings such as "750" as well as integers."""
        mode = _parse_mode(v)
        if not isinstance(mode, int) or not 0 <= mode <= 0o7777:
            raise ValueError(f"Mode out of range: {v!r}")
        return mode


# =============================================================================
# Content Configuration
# =============================================================================


class ContentConfig(BaseModel):
    """Auxiliary content copied to an optional external volume.

    Attributes:
        mount_point: Mount point of the external volume.
        source_subdir: Directory inside the staging dir holding the content.
        dest_subdir: Directory on the volume receiving the content.
    """

    mount_point: Path = Field(
        default=Path("/mnt/sdcard"),
        description="External volume mount point",
    )
    source_subdir: str = Field(default="images", description="Staged content directory")
    dest_subdir: str = Field(default="assets", description="Destination on the volume")


# =============================================================================
# Health Configuration
# =============================================================================


class HealthConfig(BaseModel):
    """Post-deploy verification settings.

    Attributes:
        settle_delay_seconds: Delay between service checks and HTTP probes.
        backend_url: Internal backend root URL.
        backend_expected_status: Status the unrouted backend root must return.
        public_url: Public root URL served by the proxy.
        public_expected_status: Status the public root must return.
        request_timeout_seconds: Timeout for a single HTTP probe.
    """

    settle_delay_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Settling delay before HTTP probes",
    )
    backend_url: str = Field(
        default="http://localhost:8000/",
        description="Backend internal root URL",
    )
    backend_expected_status: int = Field(
        default=404,
        ge=100,
        le=599,
        description="Expected status from the backend root",
    )
    public_url: str = Field(
        default="https://podbox.plus/",
        description="Public root URL",
    )
    public_expected_status: int = Field(
        default=200,
        ge=100,
        le=599,
        description="Expected status from the public root",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="HTTP probe timeout",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit one JSON object per line.
        log_to_stdout: Whether to log to stdout.
        log_file: Optional additional log file.
    """

    level: str = Field(default="info", description="Log level")
    json_format: bool = Field(default=True, description="Use JSON log lines")
    log_to_stdout: bool = Field(default=True, description="Whether to log to stdout")
    log_file: str | None = Field(default=None, description="Optional log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)


# =============================================================================
# Main Configuration
# =============================================================================


class DeployConfig(BaseModel):
    """
    Main deployment configuration model.

    Attributes:
        release_version: Version identifier written to the deployment record.
            When unset, the staged update's VERSION file is used.
        restore_version_on_rollback: Restore the previous deployment record
            after a successful rollback.
        database: Database connection parameters.
        paths: Filesystem locations.
        services: Supervised service names.
        permissions: Ownership and mode policy.
        content: External content volume settings.
        health: Post-deploy verification settings.
        logging: Logging configuration.
    """

    release_version: str | None = Field(
        default=None,
        description="Version identifier of the staged release",
    )
    restore_version_on_rollback: bool = Field(
        default=True,
        description="Restore the previous deployment record after rollback",
    )
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig,
        description="Database connection parameters",
    )
    paths: PathsConfig = Field(
        default_factory=PathsConfig,
        description="Filesystem locations",
    )
    services: ServicesConfig = Field(
        default_factory=ServicesConfig,
        description="Supervised services",
    )
    permissions: PermissionsConfig = Field(
        default_factory=PermissionsConfig,
        description="Ownership and mode policy",
    )
    content: ContentConfig = Field(
        default_factory=ContentConfig,
        description="External content volume",
    )
    health: HealthConfig = Field(
        default_factory=HealthConfig,
        description="Health verification",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )

    @field_validator("release_version", mode="before")
    @classmethod
    def validate_release_version(cls, v: Any) -> str | None:
        """Accept integer versions and reject blank or multi-line ones."""
        if v is None:
            return None
        v = str(v).strip()
        if not v or "\n" in v:
            raise ValueError("release_version must be a non-empty single line")
        return v


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        ConfigError: If the file doesn't exist or is not valid YAML mapping.
    """
    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            details={"path": str(config_path)},
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(
            f"Invalid YAML in {config_path}: {exc}",
            details={"path": str(config_path)},
        ) from exc

    if not isinstance(data, dict):
        raise ConfigError(
            f"Configuration file must contain a mapping: {config_path}",
            details={"path": str(config_path)},
        )
    return data


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: PODBOX_DEPLOY_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: PODBOX_DEPLOY_HEALTH__SETTLE_DELAY_SECONDS=2
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        # Left as strings; pydantic coerces int, float and bool fields itself
        current[parts[-1]] = value

    return result


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command-line parser shared by the CLI and load_config."""
    parser = argparse.ArgumentParser(
        prog="podbox-deploy",
        description=(
            "Replace the live podbox deployment with the staged update, verify it, "
            "and roll back to the latest backup on failure."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging in plain-text format",
    )

    parser.add_argument(
        "--release-version",
        type=str,
        help="Version identifier to record (defaults to the staged VERSION file)",
    )

    parser.add_argument(
        "--rollback",
        action="store_true",
        help="Only restore the latest backup unit (manual rollback)",
    )

    return parser


def _cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed CLI arguments into a config override dict."""
    result: dict[str, Any] = {}

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["level"] = "debug"
        result["logging"]["json_format"] = False

    if parsed.release_version:
        result["release_version"] = parsed.release_version

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> DeployConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the CLI
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, no CLI overrides are applied.

    Returns:
        Fully configured DeployConfig instance.

    Raises:
        ConfigError: If the config file is missing/invalid or validation fails.

    Example:
        >>> config = load_config(config_path="/etc/podbox_update/deploy.yml")
        >>> print(config.paths.live_dir)
        /root/services
    """
    config_dict: dict[str, Any] = {}

    cli_config: dict[str, Any] = {}
    if cli_args is not None:
        parsed = build_arg_parser().parse_args(cli_args)
        cli_config = _cli_overrides(parsed)
        if config_path is None and parsed.config:
            config_path = parsed.config

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    database = config_dict.get("database")
    if not (isinstance(database, dict) and database.get("password")):
        password = os.environ.get(PASSWORD_ENV_VAR)
        if password:
            config_dict = _deep_merge(config_dict, {"database": {"password": password}})

    try:
        return DeployConfig(**config_dict)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid configuration: {exc.error_count()} validation error(s)",
            details={"errors": exc.errors(include_url=False, include_input=False)},
        ) from exc
