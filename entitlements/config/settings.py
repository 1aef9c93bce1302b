"""Configuration management with environment-specific settings"""

import os
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field
from pathlib import Path
import yaml
import json
from enum import Enum


class Environment(Enum):
    """Environment types"""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class StorageBackend(str, Enum):
    """Where subscription and license records live"""
    MEMORY = "memory"
    POSTGRES = "postgres"


class RateLimitBackend(str, Enum):
    """Where validation rate-limit counters live"""
    MEMORY = "memory"
    REDIS = "redis"


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    database: str = "entitlements"
    username: str = "postgres"
    password: str = ""
    min_pool_size: int = 2
    max_pool_size: int = 10
    command_timeout: float = 5.0


@dataclass
class RedisConfig:
    """Redis configuration"""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    max_connections: int = 10
    socket_timeout: float = 2.0


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


@dataclass
class APIConfig:
    """API server configuration"""
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    cors_origins: list = field(default_factory=lambda: ["*"])
    jwt_secret: str = "your-secret-key"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24


@dataclass
class EntitlementConfig:
    """Entitlement engine configuration"""
    storage_backend: StorageBackend = StorageBackend.MEMORY
    rate_limit_backend: RateLimitBackend = RateLimitBackend.MEMORY
    plan_catalog_file: Optional[str] = None
    default_timezone: str = "UTC"
    forex_daily_trade_limit: int = 5
    forex_license_days: int = 30
    persistence_timeout_seconds: float = 5.0
    license_validation_rate_limit: int = 60  # requests per minute per key
    renewal_reminder_days: Tuple[int, ...] = (30, 7, 1)


@dataclass
class Settings:
    """Main application settings"""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True

    # Component configurations
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: APIConfig = field(default_factory=APIConfig)
    entitlements: EntitlementConfig = field(default_factory=EntitlementConfig)

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create settings from environment variables"""
        env_name = os.getenv("ENVIRONMENT", "development")
        environment = Environment(env_name)

        settings = cls(environment=environment)

        if os.getenv("DEBUG"):
            settings.debug = os.getenv("DEBUG").lower() == "true"

        # Database settings
        if os.getenv("DB_HOST"):
            settings.database.host = os.getenv("DB_HOST")
        if os.getenv("DB_PORT"):
            settings.database.port = int(os.getenv("DB_PORT"))
        if os.getenv("DB_NAME"):
            settings.database.database = os.getenv("DB_NAME")
        if os.getenv("DB_USER"):
            settings.database.username = os.getenv("DB_USER")
        if os.getenv("DB_PASSWORD"):
            settings.database.password = os.getenv("DB_PASSWORD")

        # Redis settings
        if os.getenv("REDIS_HOST"):
            settings.redis.host = os.getenv("REDIS_HOST")
        if os.getenv("REDIS_PORT"):
            settings.redis.port = int(os.getenv("REDIS_PORT"))
        if os.getenv("REDIS_PASSWORD"):
            settings.redis.password = os.getenv("REDIS_PASSWORD")

        # API settings
        if os.getenv("API_HOST"):
            settings.api.host = os.getenv("API_HOST")
        if os.getenv("API_PORT"):
            settings.api.port = int(os.getenv("API_PORT"))
        if os.getenv("JWT_SECRET"):
            settings.api.jwt_secret = os.getenv("JWT_SECRET")

        if os.getenv("LOG_LEVEL"):
            settings.logging.level = os.getenv("LOG_LEVEL")

        # Entitlement settings
        if os.getenv("ENTITLEMENT_STORAGE"):
            settings.entitlements.storage_backend = StorageBackend(os.getenv("ENTITLEMENT_STORAGE"))
        if os.getenv("ENTITLEMENT_RATE_LIMIT_BACKEND"):
            settings.entitlements.rate_limit_backend = RateLimitBackend(
                os.getenv("ENTITLEMENT_RATE_LIMIT_BACKEND")
            )
        if os.getenv("ENTITLEMENT_PLAN_CATALOG"):
            settings.entitlements.plan_catalog_file = os.getenv("ENTITLEMENT_PLAN_CATALOG")
        if os.getenv("ENTITLEMENT_DEFAULT_TIMEZONE"):
            settings.entitlements.default_timezone = os.getenv("ENTITLEMENT_DEFAULT_TIMEZONE")
        if os.getenv("ENTITLEMENT_FOREX_DAILY_LIMIT"):
            settings.entitlements.forex_daily_trade_limit = int(os.getenv("ENTITLEMENT_FOREX_DAILY_LIMIT"))
        if os.getenv("ENTITLEMENT_PERSISTENCE_TIMEOUT"):
            settings.entitlements.persistence_timeout_seconds = float(
                os.getenv("ENTITLEMENT_PERSISTENCE_TIMEOUT")
            )

        return settings

    @classmethod
    def from_file(cls, config_path: str) -> 'Settings':
        """Load settings from configuration file"""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_file, 'r') as f:
            if config_file.suffix.lower() in ('.yaml', '.yml'):
                config_data = yaml.safe_load(f) or {}
            elif config_file.suffix.lower() == '.json':
                config_data = json.load(f)
            else:
                raise ValueError(f"Unsupported configuration file format: {config_file.suffix}")

        return cls._from_dict(config_data)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> 'Settings':
        """Create Settings from dictionary"""
        settings = cls()

        if 'environment' in data:
            settings.environment = Environment(data['environment'])

        if 'debug' in data:
            settings.debug = data['debug']

        for section in ('database', 'redis', 'logging', 'api'):
            for key, value in data.get(section, {}).items():
                target = getattr(settings, section)
                if hasattr(target, key):
                    setattr(target, key, value)

        for key, value in data.get('entitlements', {}).items():
            if not hasattr(settings.entitlements, key):
                continue
            if key == 'storage_backend':
                value = StorageBackend(value)
            elif key == 'rate_limit_backend':
                value = RateLimitBackend(value)
            elif key == 'renewal_reminder_days':
                value = tuple(value)
            setattr(settings.entitlements, key, value)

        return settings

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary (secrets omitted)"""
        return {
            'environment': self.environment.value,
            'debug': self.debug,
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'database': self.database.database,
                'username': self.database.username,
                'min_pool_size': self.database.min_pool_size,
                'max_pool_size': self.database.max_pool_size,
                'command_timeout': self.database.command_timeout
            },
            'redis': {
                'host': self.redis.host,
                'port': self.redis.port,
                'db': self.redis.db,
                'max_connections': self.redis.max_connections
            },
            'api': {
                'host': self.api.host,
                'port': self.api.port,
                'debug': self.api.debug,
                'cors_origins': self.api.cors_origins,
                'jwt_expiry_hours': self.api.jwt_expiry_hours
            },
            'entitlements': {
                'storage_backend': self.entitlements.storage_backend.value,
                'rate_limit_backend': self.entitlements.rate_limit_backend.value,
                'plan_catalog_file': self.entitlements.plan_catalog_file,
                'default_timezone': self.entitlements.default_timezone,
                'forex_daily_trade_limit': self.entitlements.forex_daily_trade_limit,
                'forex_license_days': self.entitlements.forex_license_days,
                'persistence_timeout_seconds': self.entitlements.persistence_timeout_seconds,
                'license_validation_rate_limit': self.entitlements.license_validation_rate_limit,
                'renewal_reminder_days': list(self.entitlements.renewal_reminder_days)
            }
        }


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings instance"""
    global _settings

    if _settings is None:
        # Try to load from file first, then fall back to environment
        config_file = os.getenv("CONFIG_FILE", "config/settings.yaml")

        if os.path.exists(config_file):
            _settings = Settings.from_file(config_file)
        else:
            _settings = Settings.from_env()

    return _settings


def set_settings(settings: Settings) -> None:
    """Set global settings instance"""
    global _settings
    _settings = settings
