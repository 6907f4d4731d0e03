"""Configuration Manager for the Audit Pipeline.

This module loads the audit pipeline's configuration (table filters, column
allow-lists, retry and async settings) and the audit store's database
connection settings from environment variables or a JSON file.

Security Impact:
    - Database credentials are held as SecretStr and never logged
    - Column allow-lists keep non-audited columns out of the audit trail
    - Invalid configuration fails fast at load time

Architecture:
    - Infrastructure layer; the domain consumes AuditConfig read-only
    - Type-safe configuration using Pydantic models
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs, quote_plus, unquote, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "TA_"
DEFAULT_AUDIT_TABLE = "sys_data_audit_log"
SUPPORTED_DB_TYPES = ("duckdb", "postgresql")


def _normalize_table_set(value: Any) -> Optional[set[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    tables = {str(name).strip().lower() for name in value if str(name).strip()}
    return tables or None


class AuditConfig(BaseModel):
    """Audit pipeline configuration.

    Parameters:
        enabled: Master switch; when false nothing is audited
        include_tables: If set, only these tables are audited
        exclude_tables: Tables never audited
        include_columns: Table → allowed columns; tables without an entry
            pass every column through
        max_retries: Retries after the first failed write (>= 0)
        async_mode: Persist off the caller's thread (alias "async")
        audit_table: The audit store's own table, always excluded
        retry_backoff_seconds: Backoff unit; retry k waits k units
        writer_workers: Background writer threads
        dead_letter_capacity: Exhausted batches kept for replay
        shutdown_grace_period: Seconds to wait for in-flight writes on shutdown
    """

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = Field(default=True, description="Enable auditing")
    include_tables: Optional[set[str]] = Field(default=None, description="Tables to audit (all if unset)")
    exclude_tables: Optional[set[str]] = Field(default=None, description="Tables never audited")
    include_columns: dict[str, set[str]] = Field(default_factory=dict, description="Per-table column allow-list")
    max_retries: int = Field(default=3, ge=0, description="Write retries after the first failure")
    async_mode: bool = Field(default=True, alias="async", description="Persist in background workers")
    audit_table: str = Field(default=DEFAULT_AUDIT_TABLE, min_length=1, description="Audit store table name")
    retry_backoff_seconds: float = Field(default=1.0, ge=0, description="Linear backoff unit in seconds")
    writer_workers: int = Field(default=2, ge=1, description="Background writer threads")
    dead_letter_capacity: int = Field(default=1000, ge=0, description="Dead-letter queue capacity")
    shutdown_grace_period: float = Field(default=5.0, ge=0, description="Shutdown wait in seconds")

    @field_validator("include_tables", "exclude_tables", mode="before")
    @classmethod
    def normalize_tables(cls, v: Any) -> Optional[set[str]]:
        return _normalize_table_set(v)

    @field_validator("include_columns", mode="before")
    @classmethod
    def normalize_columns(cls, v: Any) -> dict[str, set[str]]:
        """Accept a mapping, or the "table:col,col;table:col" string form."""
        if v is None:
            return {}
        if isinstance(v, str):
            parsed: dict[str, set[str]] = {}
            for entry in v.split(";"):
                if not entry.strip():
                    continue
                table, sep, columns = entry.partition(":")
                if not sep or not table.strip():
                    raise ValueError(f"Invalid column allow-list entry: {entry!r} (expected table:col,col)")
                parsed[table.strip().lower()] = {c.strip() for c in columns.split(",") if c.strip()}
            return parsed
        return {str(table).strip().lower(): set(columns) for table, columns in dict(v).items()}

    @field_validator("audit_table")
    @classmethod
    def normalize_audit_table(cls, v: str) -> str:
        return v.strip().lower()


class DatabaseConfig(BaseModel):
    """Audit store connection settings.

    Security Impact:
        - Password and connection string are SecretStr (never logged)

    Parameters:
        db_type: duckdb or postgresql
        db_path: DuckDB file path (":memory:" for in-memory)
        host, port, database, username, password, ssl_mode: PostgreSQL fields
        connection_string: postgresql:// URL; takes precedence over fields
        pool_size: Maximum pooled PostgreSQL connections
    """

    db_type: str = Field(..., description="Database type (duckdb, postgresql)")
    db_path: Optional[str] = Field(None, description="Path to DuckDB file")
    host: Optional[str] = Field(None, description="Database host")
    port: Optional[int] = Field(None, description="Database port")
    database: Optional[str] = Field(None, description="Database name")
    username: Optional[str] = Field(None, description="Database username")
    password: Optional[SecretStr] = Field(None, description="Database password (secret)")
    connection_string: Optional[SecretStr] = Field(None, description="Connection URL (secret)")
    ssl_mode: Optional[str] = Field(None, description="SSL mode")
    pool_size: int = Field(default=5, ge=1, description="Connection pool size")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        if v.lower() not in SUPPORTED_DB_TYPES:
            raise ValueError(f"Unsupported database type: {v}. Supported: {list(SUPPORTED_DB_TYPES)}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == ":memory:":
            return v
        path = Path(v)
        if not path.parent.exists():
            raise ValueError(f"Database directory does not exist: {path.parent}")
        return str(path)

    @model_validator(mode='after')
    def sync_connection_fields(self) -> 'DatabaseConfig':
        """Populate fields from the URL, or build the URL from fields."""
        if self.db_type != "postgresql":
            return self

        if self.connection_string:
            parsed = urlparse(self.connection_string.get_secret_value())
            if parsed.scheme not in ("postgresql", "postgres"):
                raise ValueError(f"Unsupported connection string scheme: {parsed.scheme}")
            self.host = parsed.hostname or self.host
            self.port = parsed.port or self.port
            self.database = parsed.path.lstrip('/') or self.database
            if parsed.username:
                self.username = unquote(parsed.username)
            if parsed.password:
                self.password = SecretStr(unquote(parsed.password))
            ssl = parse_qs(parsed.query).get('sslmode')
            if ssl:
                self.ssl_mode = ssl[0]
        elif self.host and self.database:
            credentials = quote_plus(self.username) if self.username else ""
            if self.password:
                credentials += f":{quote_plus(self.password.get_secret_value())}"
            ssl_part = f"?sslmode={self.ssl_mode}" if self.ssl_mode else ""
            self.connection_string = SecretStr(
                f"postgresql://{credentials}@{self.host}:{self.port or 5432}/{self.database}{ssl_part}"
            )
        return self

    def get_connection_string(self) -> str:
        """DuckDB path or PostgreSQL URL for this configuration."""
        if self.db_type == "duckdb":
            return self.db_path or ":memory:"
        if self.connection_string is None:
            raise ValueError("postgresql requires a connection string or host and database")
        return self.connection_string.get_secret_value()


class ConfigManager:
    """Loads database and audit configuration from one source.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        audit_config = config.get_audit_config()
        db_config = config.get_database_config()

        config = ConfigManager.from_file("audit.json")
        ```
    """

    def __init__(self, config_data: dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._audit_config: Optional[AuditConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from TA_* environment variables.

        Environment Variables:
            - TA_DB_TYPE, TA_DB_PATH, TA_DB_HOST, TA_DB_PORT, TA_DB_NAME,
              TA_DB_USER, TA_DB_PASSWORD, TA_DB_CONNECTION_STRING, TA_DB_SSL_MODE
            - TA_AUDIT_ENABLED, TA_AUDIT_ASYNC, TA_AUDIT_MAX_RETRIES,
              TA_AUDIT_RETRY_BACKOFF, TA_AUDIT_TABLE, TA_AUDIT_WORKERS
            - TA_AUDIT_INCLUDE_TABLES=orders,customers
            - TA_AUDIT_EXCLUDE_TABLES=sessions
            - TA_AUDIT_INCLUDE_COLUMNS=orders:id,status;customers:name

        A .env file (env_file, or .env in the working directory) is loaded
        first; variables already set in the process win.
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str) -> Optional[str]:
            value = os.getenv(f"{ENV_PREFIX}{name}")
            return value if value not in (None, "") else None

        def env_int(name: str) -> Optional[int]:
            value = env(name)
            if value is None:
                return None
            try:
                return int(value)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}")

        def env_bool(name: str) -> Optional[bool]:
            value = env(name)
            return None if value is None else value.strip().lower() in ("1", "true", "yes", "on")

        audit = {
            "enabled": env_bool("AUDIT_ENABLED"),
            "async": env_bool("AUDIT_ASYNC"),
            "max_retries": env_int("AUDIT_MAX_RETRIES"),
            "retry_backoff_seconds": env("AUDIT_RETRY_BACKOFF"),
            "audit_table": env("AUDIT_TABLE"),
            "writer_workers": env_int("AUDIT_WORKERS"),
            "include_tables": env("AUDIT_INCLUDE_TABLES"),
            "exclude_tables": env("AUDIT_EXCLUDE_TABLES"),
            "include_columns": env("AUDIT_INCLUDE_COLUMNS"),
        }
        config_data = {
            "database": {
                "db_type": env("DB_TYPE") or "duckdb",
                "db_path": env("DB_PATH"),
                "host": env("DB_HOST"),
                "port": env_int("DB_PORT"),
                "database": env("DB_NAME"),
                "username": env("DB_USER"),
                "password": env("DB_PASSWORD"),
                "connection_string": env("DB_CONNECTION_STRING"),
                "ssl_mode": env("DB_SSL_MODE"),
            },
            "audit": {key: value for key, value in audit.items() if value is not None},
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file with "database" and "audit" sections.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not valid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        if config_file.stat().st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )
        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")
        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            data = dict(self._config_data.get("database") or {"db_type": "duckdb"})
            data = {key: value for key, value in data.items() if value is not None}
            self._database_config = DatabaseConfig(**data)
        return self._database_config

    def get_audit_config(self) -> AuditConfig:
        if self._audit_config is None:
            self._audit_config = AuditConfig.model_validate(self._config_data.get("audit") or {})
        return self._audit_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw value by dotted key, e.g. "audit.max_retries"."""
        value: Any = self._config_data
        for part in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(part)
        return value if value is not None else default


def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment."""
    return ConfigManager.from_environment().get_database_config()


def get_audit_config() -> AuditConfig:
    """Audit configuration from the environment."""
    return ConfigManager.from_environment().get_audit_config()
