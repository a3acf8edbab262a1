import os
import re
import sys
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


_ENV_LOADED = False

_GUC_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\.[A-Za-z_][A-Za-z0-9_]*$")
_SCHEMA_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ENV_ALIASES = (
    "DB_HOST", "DB_PORT", "DB_USER", "DB_PASSWORD", "DB_NAME", "DB_SSLMODE",
    "DB_POOL_SIZE", "DB_POOL_MIN_SIZE", "DB_POOL_ACQUIRE_TIMEOUT",
    "DB_DEFAULT_ISOLATION", "DB_STRICT_ISOLATION", "DB_RLS_SETTING", "DB_SCHEMA",
    "DB_MIGRATIONS_DIR", "DB_CONNECT_RETRIES", "DB_CONNECT_RETRY_DELAY",
    "DB_SKIP_VALIDATION", "APP_ENV", "TENANTDB_LOG_LEVEL", "TENANTDB_LOG_JSON",
)


def read_env_file(path: Path) -> Dict[str, str]:
    """``KEY=VALUE`` pairs from a dotenv file; comments, blank lines and ``export`` prefixes are skipped."""
    values: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip().removeprefix("export ").strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        values[key] = value
    return values


def _apply_env_file(path: str) -> None:
    env_file = Path(path)
    if not env_file.is_file():
        return
    for key, value in read_env_file(env_file).items():
        os.environ.setdefault(key, value)


def load_env_if_present(force_reload: bool = False) -> None:
    """
    Load environment variables from .env files in order of precedence:
    1. TENANTDB_ENV_FILE (when set, the only file read)
    2. .env.local
    3. .env.{APP_ENV}
    4. .env
    """
    global _ENV_LOADED
    if _ENV_LOADED and not force_reload:
        return

    custom = os.environ.get("TENANTDB_ENV_FILE")
    if custom:
        _apply_env_file(custom)
    else:
        env_files = [".env.local", ".env"]
        environment = os.environ.get("APP_ENV", "").strip()
        if environment:
            env_files.insert(1, f".env.{environment}")
        for env_file in env_files:
            _apply_env_file(env_file)

    _ENV_LOADED = True


class Settings(BaseModel):
    """
    tenantdb settings sourced from environment variables.
    """
    model_config = ConfigDict(validate_assignment=True, populate_by_name=True)

    # Connection (credentials required; no defaults)
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field(..., alias="DB_USER")
    db_password: str = Field(..., alias="DB_PASSWORD", repr=False)
    db_name: str = Field(..., alias="DB_NAME")
    db_sslmode: str = Field("prefer", alias="DB_SSLMODE")

    # Pool
    pool_size: int = Field(10, alias="DB_POOL_SIZE")
    pool_min_size: int = Field(1, alias="DB_POOL_MIN_SIZE")
    acquire_timeout: Optional[float] = Field(None, alias="DB_POOL_ACQUIRE_TIMEOUT")

    # Transactions / RLS
    default_isolation: str = Field("READ COMMITTED", alias="DB_DEFAULT_ISOLATION")
    strict_isolation: bool = Field(False, alias="DB_STRICT_ISOLATION")
    rls_setting: str = Field("app.current_user_id", alias="DB_RLS_SETTING")

    # Migrations
    db_schema: str = Field("public", alias="DB_SCHEMA")
    migrations_dir: Path = Field(Path("migrations"), alias="DB_MIGRATIONS_DIR")

    # Startup probe
    connect_retries: int = Field(5, alias="DB_CONNECT_RETRIES")
    connect_retry_delay: float = Field(2.0, alias="DB_CONNECT_RETRY_DELAY")

    # Local iteration without a database
    skip_validation: bool = Field(False, alias="DB_SKIP_VALIDATION")
    app_env: str = Field("development", alias="APP_ENV")

    log_level: str = Field("INFO", alias="TENANTDB_LOG_LEVEL")
    log_json: bool = Field(False, alias="TENANTDB_LOG_JSON")

    @field_validator("db_host", "db_user", "db_password", "db_name", mode="before")
    def validate_not_empty_str(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Value cannot be empty or whitespace only")
        return v.strip()

    @field_validator("strict_isolation", "skip_validation", "log_json", mode="before")
    def coerce_bool(cls, v):
        if isinstance(v, bool):
            return v
        if not isinstance(v, str):
            raise ValueError("Expected string for boolean field")
        val = v.strip().lower()
        if val in ("true", "1", "yes", "y", "on"):
            return True
        if val in ("false", "0", "no", "n", "off", ""):
            return False
        raise ValueError(f"Invalid boolean value: {v}")

    @field_validator("db_port", "pool_size", "pool_min_size", "connect_retries", mode="before")
    def coerce_int(cls, v):
        if isinstance(v, int):
            return v
        if isinstance(v, str):
            return int(v.strip())
        raise ValueError("Expected integer-compatible value")

    @field_validator("connect_retry_delay", "acquire_timeout", mode="before")
    def coerce_float(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if isinstance(v, (int, float)):
            return float(v)
        if isinstance(v, str):
            return float(v.strip())
        raise ValueError("Expected float-compatible value")

    @field_validator("default_isolation", mode="before")
    def normalize_isolation(cls, v):
        from tenantdb.db.transaction import IsolationLevel

        level = IsolationLevel.parse(v)
        if level is None:
            raise ValueError(
                f"Invalid isolation level {v!r}; expected one of {[l.value for l in IsolationLevel]}"
            )
        return level.value

    @field_validator("rls_setting", mode="before")
    def validate_rls_setting(cls, v):
        if not isinstance(v, str) or not _GUC_NAME.match(v.strip()):
            raise ValueError(f"Invalid RLS setting name {v!r}; expected '<prefix>.<name>'")
        return v.strip()

    @field_validator("db_schema", mode="before")
    def validate_schema(cls, v):
        if not isinstance(v, str) or not _SCHEMA_NAME.match(v.strip()):
            raise ValueError(f"Invalid schema name {v!r}")
        return v.strip()

    @field_validator("app_env", "log_level", mode="before")
    def normalize_str(cls, v):
        return str(v).strip()

    @model_validator(mode="after")
    def validate_ranges(self):
        if self.db_port < 1 or self.db_port > 65535:
            raise ValueError(f"Invalid DB_PORT number: {self.db_port}")
        if self.pool_size < 1:
            raise ValueError("DB_POOL_SIZE must be >= 1")
        if self.pool_min_size < 0 or self.pool_min_size > self.pool_size:
            raise ValueError("DB_POOL_MIN_SIZE must be between 0 and DB_POOL_SIZE")
        if self.connect_retries < 1:
            raise ValueError("DB_CONNECT_RETRIES must be >= 1")
        if self.connect_retry_delay is None or self.connect_retry_delay < 0:
            raise ValueError("DB_CONNECT_RETRY_DELAY must be >= 0")
        if self.acquire_timeout is not None and self.acquire_timeout <= 0:
            raise ValueError("DB_POOL_ACQUIRE_TIMEOUT must be > 0 when set")
        return self

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from an environment mapping; absent keys keep their defaults."""
        env = os.environ if env is None else env
        values = {alias: env[alias] for alias in ENV_ALIASES if alias in env}
        return cls(**values)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in ("production", "prod")

    @property
    def skip_validation_active(self) -> bool:
        """Canned-response mode is honoured only outside production."""
        return self.skip_validation and not self.is_production

    @property
    def conninfo(self) -> str:
        """libpq connection string, password included. Never log this."""
        return (
            f"host={self.db_host} port={self.db_port} dbname={self.db_name} "
            f"user={self.db_user} password={self.db_password} sslmode={self.db_sslmode}"
        )

    @property
    def safe_conninfo(self) -> str:
        return f"host={self.db_host} port={self.db_port} dbname={self.db_name} user={self.db_user}"

    def describe(self) -> Dict[str, object]:
        """Configuration summary suitable for a log line."""
        return {
            "host": self.db_host,
            "port": self.db_port,
            "database": self.db_name,
            "has_user": bool(self.db_user),
            "has_password": bool(self.db_password),
            "pool_size": self.pool_size,
            "default_isolation": self.default_isolation,
            "environment": self.app_env,
            "skip_validation": self.skip_validation_active,
        }


_settings: Optional[Settings] = None


def get_settings(reload: bool = False) -> Settings:
    """
    Get application settings. Validates environment variables on first call.
    Set reload=True to force reloading from the current environment.
    """
    global _settings
    if _settings is None or reload:
        load_env_if_present(force_reload=reload)
        try:
            _settings = Settings.from_env()
        except ValidationError as e:
            print(f"FATAL: Failed to initialize settings: {e}", file=sys.stderr)
            sys.exit(1)
    return _settings


def validate_setting_name(name: str) -> str:
    """Check a custom GUC name (``prefix.name``) before it is spliced into RESET."""
    if not isinstance(name, str) or not _GUC_NAME.match(name):
        raise ValueError(f"Invalid setting name {name!r}; expected '<prefix>.<name>'")
    return name
