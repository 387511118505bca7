"""
Environment-specific settings for the authorization engine.

Settings come from environment variables, with a ``.env`` file loaded through
python-dotenv at import. ``get_config`` picks the configuration class for
``AUTHZ_ENV`` (development, testing, production) and returns a loaded
instance. Malformed values raise ``ConfigurationError`` when the instance is
built, so a misconfigured process fails at startup rather than at the first
permission check.
"""

import json
import logging
import os
from typing import Dict, Mapping, Optional, Type

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised for missing or malformed settings."""


def _read_int(environ: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _read_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or raw == '':
        return default
    lowered = raw.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _read_choice(environ: Mapping[str, str], name: str, default: str, choices) -> str:
    value = (environ.get(name) or default).strip().lower()
    if value not in choices:
        raise ConfigurationError(f"{name} must be one of {sorted(choices)}, got {value!r}")
    return value


def _read_group_mapping(environ: Mapping[str, str], name: str) -> Dict[str, str]:
    raw = environ.get(name)
    if not raw:
        return {}
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} must be a JSON object: {e}") from e
    if not isinstance(mapping, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in mapping.items()
    ):
        raise ConfigurationError(f"{name} must map group names to role ids")
    return mapping


class BaseConfig:
    """
    Settings shared by every environment.

    Args:
        environ: Mapping to read settings from; defaults to ``os.environ``
    """

    ENVIRONMENT = 'base'
    USE_IN_MEMORY_STORE = False
    PUBLISH_EVENTS_OVER_HTTP = True

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        # MongoDB
        self.MONGODB_URI = env.get('MONGODB_URI', 'mongodb://localhost:27017')
        self.MONGODB_DATABASE = env.get('MONGODB_DATABASE', 'authorization')
        self.MONGODB_SERVER_SELECTION_TIMEOUT_MS = _read_int(
            env, 'MONGODB_SERVER_SELECTION_TIMEOUT_MS', 5000, minimum=1
        )

        # Redis
        self.REDIS_URL = env.get('REDIS_URL', 'redis://localhost:6379/0')
        self.REDIS_MAX_CONNECTIONS = _read_int(env, 'REDIS_MAX_CONNECTIONS', 50, minimum=1)
        self.REDIS_SOCKET_TIMEOUT = _read_float(env, 'REDIS_SOCKET_TIMEOUT', 1.0)

        # Decision cache
        self.DECISION_CACHE_ENABLED = _read_bool(env, 'DECISION_CACHE_ENABLED', True)
        self.DECISION_CACHE_TTL_SECONDS = _read_int(env, 'DECISION_CACHE_TTL_SECONDS', 300, minimum=1)

        # Grants
        self.TEMP_GRANT_MAX_DAYS = _read_int(env, 'TEMP_GRANT_MAX_DAYS', 30, minimum=1)
        self.MEDICAL_SCOPE_POLICY = _read_choice(env, 'MEDICAL_SCOPE_POLICY', 'deny', {'deny', 'allow'})
        self.GROUP_ROLE_MAPPING = _read_group_mapping(env, 'GROUP_ROLE_MAPPING')

        # Events
        self.EVENT_PUBLISHER_ENDPOINT = env.get('EVENT_PUBLISHER_ENDPOINT') or None
        self.EVENT_PUBLISHER_KEY = env.get('EVENT_PUBLISHER_KEY') or None
        self.EVENT_PUBLISHER_TIMEOUT = _read_float(env, 'EVENT_PUBLISHER_TIMEOUT', 5.0)
        self.EVENT_PUBLISH_MAX_ATTEMPTS = _read_int(env, 'EVENT_PUBLISH_MAX_ATTEMPTS', 3, minimum=1)

        # Logging
        self.LOG_LEVEL = _read_choice(
            env, 'LOG_LEVEL', self.default_log_level(),
            {'debug', 'info', 'warning', 'error', 'critical'}
        ).upper()
        self.LOG_FORMAT = _read_choice(env, 'LOG_FORMAT', self.default_log_format(), {'json', 'console'})

    def default_log_level(self) -> str:
        return 'info'

    def default_log_format(self) -> str:
        return 'json'

    def to_dict(self) -> Dict[str, object]:
        """Loaded settings with secrets masked, for startup logging."""
        settings = {key: value for key, value in vars(self).items() if key.isupper()}
        if settings.get('EVENT_PUBLISHER_KEY'):
            settings['EVENT_PUBLISHER_KEY'] = '***'
        settings['ENVIRONMENT'] = self.ENVIRONMENT
        return settings


class DevelopmentConfig(BaseConfig):
    """Local development: console logs at debug level."""

    ENVIRONMENT = 'development'

    def default_log_level(self) -> str:
        return 'debug'

    def default_log_format(self) -> str:
        return 'console'


class TestingConfig(BaseConfig):
    """
    Automated tests: in-memory document store and no network event delivery.

    The decision cache still needs a Redis client; tests inject their own.
    """

    ENVIRONMENT = 'testing'
    USE_IN_MEMORY_STORE = True
    PUBLISH_EVENTS_OVER_HTTP = False

    def default_log_level(self) -> str:
        return 'warning'

    def default_log_format(self) -> str:
        return 'console'


class ProductionConfig(BaseConfig):
    """Production: JSON logs; the event endpoint must be configured with a key."""

    ENVIRONMENT = 'production'

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        super().__init__(environ)
        if self.EVENT_PUBLISHER_ENDPOINT and not self.EVENT_PUBLISHER_KEY:
            raise ConfigurationError("EVENT_PUBLISHER_KEY must be set when EVENT_PUBLISHER_ENDPOINT is")


config_map: Dict[str, Type[BaseConfig]] = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,

    'dev': DevelopmentConfig,
    'test': TestingConfig,
    'prod': ProductionConfig,
}


def get_config(
    environment: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> BaseConfig:
    """
    Load settings for an environment.

    Args:
        environment: Environment name; defaults to ``AUTHZ_ENV`` or development
        environ: Mapping to read settings from; defaults to ``os.environ``

    Raises:
        ConfigurationError: unknown environment or malformed setting
    """
    source = os.environ if environ is None else environ
    if environment is None:
        environment = source.get('AUTHZ_ENV', 'development')

    environment = environment.lower()
    if environment not in config_map:
        raise ConfigurationError(
            f"Unsupported environment '{environment}'. "
            f"Supported environments: {list(config_map.keys())}"
        )

    config = config_map[environment](environ)
    logger.info(
        "Configuration loaded",
        extra={'environment': config.ENVIRONMENT, 'config_class': type(config).__name__}
    )
    return config
