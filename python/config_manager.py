"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "tesseramento"
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 2
    pool_recycle: int = 1800
    echo: bool = False


@dataclass
class ApplicationsConfig:
    """Membership application settings"""
    registration_fee: Decimal = Decimal("50.00")
    default_page_size: int = 20
    max_page_size: int = 100


@dataclass
class NotificationsConfig:
    """Realtime notification settings"""
    queue_size: int = 100  # Pending events per WebSocket subscriber


@dataclass
class ApiConfig:
    """HTTP API settings"""
    title: str = "Tesseramento API"
    version: str = "1.0.0"
    api_key: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:5173",
    ])


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.database: DatabaseConfig = DatabaseConfig()
        self.applications: ApplicationsConfig = ApplicationsConfig()
        self.notifications: NotificationsConfig = NotificationsConfig()
        self.api: ApiConfig = ApiConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

        self._apply_env()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_database()
        self._parse_applications()
        self._parse_notifications()
        self._parse_api()
        self._parse_logging()
        self._validate()

    def _apply_env(self) -> None:
        """Environment overrides for secrets"""
        api_key = os.getenv("API_KEY")
        if api_key:
            self.api.api_key = api_key

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            pool_size=cfg.get('pool_size', self.database.pool_size),
            max_overflow=cfg.get('max_overflow', self.database.max_overflow),
            pool_timeout=cfg.get('pool_timeout', self.database.pool_timeout),
            pool_recycle=cfg.get('pool_recycle', self.database.pool_recycle),
            echo=cfg.get('echo', self.database.echo)
        )

    def _parse_applications(self) -> None:
        """Parse application settings"""
        cfg = self._raw_config.get('applications', {})
        try:
            fee = Decimal(str(cfg.get('registration_fee', self.applications.registration_fee)))
        except InvalidOperation:
            raise ConfigurationError(
                f"applications.registration_fee is not a number: {cfg.get('registration_fee')!r}"
            )

        self.applications = ApplicationsConfig(
            registration_fee=fee,
            default_page_size=cfg.get('default_page_size', 20),
            max_page_size=cfg.get('max_page_size', 100)
        )

    def _parse_notifications(self) -> None:
        """Parse notification settings"""
        cfg = self._raw_config.get('notifications', {})
        self.notifications = NotificationsConfig(
            queue_size=cfg.get('queue_size', 100)
        )

    def _parse_api(self) -> None:
        """Parse API settings"""
        cfg = self._raw_config.get('api', {})
        self.api = ApiConfig(
            title=cfg.get('title', self.api.title),
            version=cfg.get('version', self.api.version),
            api_key=cfg.get('api_key') or None,
            cors_origins=cfg.get('cors_origins', self.api.cors_origins)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets masked)"""
        return {
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name,
                'pool_size': self.database.pool_size,
                'max_overflow': self.database.max_overflow,
                'pool_timeout': self.database.pool_timeout,
                'pool_recycle': self.database.pool_recycle,
                'echo': self.database.echo
            },
            'applications': {
                'registration_fee': str(self.applications.registration_fee),
                'default_page_size': self.applications.default_page_size,
                'max_page_size': self.applications.max_page_size
            },
            'notifications': {
                'queue_size': self.notifications.queue_size
            },
            'api': {
                'title': self.api.title,
                'version': self.api.version,
                'api_key': '***' if self.api.api_key else None,
                'cors_origins': self.api.cors_origins
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []

        if self.applications.registration_fee < 0:
            errors.append("applications.registration_fee must not be negative")
        if self.applications.default_page_size < 1:
            errors.append("applications.default_page_size must be at least 1")
        if self.applications.max_page_size < 1:
            errors.append("applications.max_page_size must be at least 1")
        if self.applications.default_page_size > self.applications.max_page_size:
            errors.append("applications.default_page_size must not exceed max_page_size")
        if self.notifications.queue_size < 1:
            errors.append("notifications.queue_size must be at least 1")
        if self.database.pool_size < 1:
            errors.append("database.pool_size must be at least 1")
        if self.database.max_overflow < 0:
            errors.append("database.max_overflow must not be negative")
        if self.database.pool_timeout <= 0:
            errors.append("database.pool_timeout must be positive")
        if not isinstance(logging.getLevelName(self.logging.level.upper()), int):
            errors.append(f"logging.level is not a known level: {self.logging.level}")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
