#!/usr/bin/env python3
"""
Configuration for sqlmirror
Reads connection settings and transfer options from the environment and an
optional .env file. The resulting MirrorConfig is built once at startup and
passed to each component; nothing else reads the process environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values

from core.errors import ConfigurationError

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None or value == '':
        return default
    return value.strip().lower() in TRUE_VALUES


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


def _millis(env: Mapping[str, str], key: str, default_seconds: float) -> float:
    """Durations are configured in milliseconds and used in seconds"""
    return _int(env, key, int(default_seconds * 1000)) / 1000.0


@dataclass
class DatabaseSettings:
    """One SQL Server endpoint"""
    server: Optional[str] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    port: int = 1433
    login_timeout: float = 30.0  # seconds
    query_timeout: float = 30.0  # seconds, 0 waits forever
    app_name: str = "sqlmirror"

    @classmethod
    def from_env(cls, env: Mapping[str, str], prefix: str) -> 'DatabaseSettings':
        return cls(
            server=env.get(f'{prefix}_DB_SERVER'),
            database=env.get(f'{prefix}_DB_NAME') or env.get(f'{prefix}_DB_DATABASE'),
            user=env.get(f'{prefix}_DB_USER'),
            password=env.get(f'{prefix}_DB_PASSWORD'),
            port=_int(env, f'{prefix}_DB_PORT', 1433),
            login_timeout=_millis(env, 'DB_CONNECTION_TIMEOUT', 30.0),
            query_timeout=_millis(env, 'DB_REQUEST_TIMEOUT', 30.0),
        )

    def missing_fields(self, prefix: str) -> List[str]:
        missing = []
        if not self.server:
            missing.append(f'{prefix}_DB_SERVER')
        if not self.database:
            missing.append(f'{prefix}_DB_NAME')
        if not self.user:
            missing.append(f'{prefix}_DB_USER')
        if not self.password:
            missing.append(f'{prefix}_DB_PASSWORD')
        return missing

    def endpoint(self) -> str:
        return f"{self.server}:{self.port}/{self.database}"

    def get_safe_dict(self) -> Dict[str, Any]:
        return {
            'server': self.server,
            'port': self.port,
            'database': self.database,
            'user': self.user,
            'password_configured': bool(self.password),
            'login_timeout': self.login_timeout,
            'query_timeout': self.query_timeout,
        }


@dataclass
class TransferSettings:
    """Batching, retry and feature toggles"""
    batch_size: int = 10000
    repair_batch_size: int = 5000
    progress_interval: int = 25000  # rows between progress lines
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds
    checksum_mode: str = 'server'
    schemas: List[str] = field(default_factory=list)
    export_path: str = './exports'
    max_rows_per_file: int = 50000
    validate_data: bool = True
    create_backup: bool = False
    drop_existing: bool = False
    copy_routines: bool = True
    create_foreign_keys: bool = True
    rejects_path: Optional[str] = None

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> 'TransferSettings':
        schemas = [s.strip() for s in env.get('MIRROR_SCHEMAS', '').split(',') if s.strip()]
        return cls(
            batch_size=_int(env, 'BATCH_SIZE', 10000),
            repair_batch_size=_int(env, 'REPAIR_BATCH_SIZE', 5000),
            progress_interval=_int(env, 'PROGRESS_INTERVAL', 25000),
            max_retries=_int(env, 'MAX_RETRIES', 3),
            retry_delay=_millis(env, 'RETRY_DELAY', 1.0),
            checksum_mode=env.get('CHECKSUM_MODE', 'server').strip().lower(),
            schemas=schemas,
            export_path=env.get('EXPORT_PATH', './exports'),
            max_rows_per_file=_int(env, 'MAX_ROWS_PER_FILE', 50000),
            validate_data=_flag(env, 'VALIDATE_DATA', True),
            create_backup=_flag(env, 'CREATE_BACKUP', False),
            drop_existing=_flag(env, 'DROP_EXISTING', False),
            copy_routines=_flag(env, 'COPY_ROUTINES', True),
            create_foreign_keys=_flag(env, 'CREATE_FOREIGN_KEYS', True),
            rejects_path=env.get('REJECTS_PATH') or None,
        )

    def validate(self) -> List[str]:
        problems = []
        if self.batch_size <= 0:
            problems.append("BATCH_SIZE must be positive")
        if self.repair_batch_size <= 0:
            problems.append("REPAIR_BATCH_SIZE must be positive")
        if self.max_retries < 1:
            problems.append("MAX_RETRIES must be at least 1")
        if self.retry_delay < 0:
            problems.append("RETRY_DELAY must not be negative")
        if self.max_rows_per_file <= 0:
            problems.append("MAX_ROWS_PER_FILE must be positive")
        if self.checksum_mode not in ('server', 'client'):
            problems.append("CHECKSUM_MODE must be 'server' or 'client'")
        return problems


@dataclass
class MirrorConfig:
    """Complete run configuration"""
    source: DatabaseSettings = field(default_factory=DatabaseSettings)
    target: DatabaseSettings = field(default_factory=DatabaseSettings)
    transfer: TransferSettings = field(default_factory=TransferSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> 'MirrorConfig':
        return cls(
            source=DatabaseSettings.from_env(env, 'SOURCE'),
            target=DatabaseSettings.from_env(env, 'TARGET'),
            transfer=TransferSettings.from_env(env),
            log_level=env.get('MIRROR_LOG_LEVEL', 'INFO').upper(),
        )

    def validate(self, require_source: bool = True, require_target: bool = True):
        """Raise ConfigurationError listing every problem found"""
        problems = []
        missing = []
        if require_source:
            missing += self.source.missing_fields('SOURCE')
        if require_target:
            missing += self.target.missing_fields('TARGET')
        if missing:
            problems.append(f"Missing required environment variables: {', '.join(missing)}")
        problems += self.transfer.validate()

        if require_source and require_target and self.same_endpoint():
            problems.append("Source and target point at the same database; refusing to copy onto itself")

        if problems:
            raise ConfigurationError("; ".join(problems), {'problems': problems})

    def same_endpoint(self) -> bool:
        return (bool(self.source.server) and bool(self.source.database)
                and (self.source.server or '').lower() == (self.target.server or '').lower()
                and self.source.port == self.target.port
                and (self.source.database or '').lower() == (self.target.database or '').lower())

    def get_safe_dict(self) -> Dict[str, Any]:
        """Configuration without secrets, for logs and reports"""
        return {
            'source': self.source.get_safe_dict(),
            'target': self.target.get_safe_dict(),
            'transfer': {
                'batch_size': self.transfer.batch_size,
                'repair_batch_size': self.transfer.repair_batch_size,
                'max_retries': self.transfer.max_retries,
                'retry_delay': self.transfer.retry_delay,
                'checksum_mode': self.transfer.checksum_mode,
                'schemas': self.transfer.schemas,
                'validate_data': self.transfer.validate_data,
                'create_backup': self.transfer.create_backup,
                'drop_existing': self.transfer.drop_existing,
                'copy_routines': self.transfer.copy_routines,
            },
            'log_level': self.log_level,
        }


def load_config(env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> MirrorConfig:
    """Build the configuration.

    Priority (highest to lowest):
    1. Environment variables
    2. .env file (the given path, or ./.env when present)
    3. Dataclass defaults
    """
    values: Dict[str, str] = {}
    path = Path(env_file) if env_file else Path.cwd() / '.env'
    if env_file and not path.exists():
        raise ConfigurationError(f"Environment file not found: {path}")
    if path.exists():
        values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    values.update(os.environ if environ is None else environ)
    return MirrorConfig.from_env(values)
