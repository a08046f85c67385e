import os
import secrets
from dotenv import load_dotenv
from typing import Optional

from celery_config import with_ssl_params

# Find the absolute path of the root directory
basedir = os.path.abspath(os.path.dirname(__file__))

# Load the .env file from the root directory
load_dotenv(os.path.join(basedir, '.env'))


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid"""
    pass


def _env_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    return int(value) if value else default


def _env_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    return float(value) if value else default


class Config:
    """
    Base configuration class. Contains default configuration settings
    and settings applicable to all environments.
    """
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(32)
    FLASK_ENV = os.environ.get('FLASK_ENV')

    @classmethod
    def validate_required_config(cls) -> None:
        """Validate that all required configuration is present"""
        # Skip validation in testing environment or during migrations
        if os.environ.get('FLASK_ENV') == 'testing' or os.environ.get('SKIP_ENV_VALIDATION'):
            return

        required_vars = []
        if not (os.environ.get('DATABASE_URL') or os.environ.get('POSTGRES_URI')):
            required_vars.append('POSTGRES_URI')

        missing_vars = [var for var in required_vars if not os.environ.get(var)]
        if missing_vars:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing_vars)}"
            )

    @staticmethod
    def get_required_env(key: str) -> str:
        """Get required environment variable or raise error"""
        value = os.environ.get(key)
        if not value:
            raise ConfigurationError(f"Required environment variable {key} is not set")
        return value

    # Database settings
    SQLALCHEMY_DATABASE_URI = os.environ.get('POSTGRES_URI') or \
        'sqlite:///' + os.path.join(basedir, 'journeys.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Journey engine
    JOURNEY_POLL_INTERVAL_SECONDS = _env_int('JOURNEY_POLL_INTERVAL_SECONDS', 60)
    JOURNEY_MAX_PROCESSING_SECONDS = _env_float('JOURNEY_MAX_PROCESSING_SECONDS', 45)
    JOURNEY_TIME_DELAY_BATCH_SIZE = _env_int('JOURNEY_TIME_DELAY_BATCH_SIZE', 500)
    JOURNEY_BATCH_SIZE = _env_int('JOURNEY_BATCH_SIZE', 100)
    JOURNEY_SPREAD_WINDOW_MINUTES = _env_int('JOURNEY_SPREAD_WINDOW_MINUTES', 120)
    JOURNEY_CALL_COOLDOWN_MINUTES = _env_int('JOURNEY_CALL_COOLDOWN_MINUTES', 5)
    JOURNEY_CALL_TIMEOUT_MINUTES = _env_int('JOURNEY_CALL_TIMEOUT_MINUTES', 5)
    JOURNEY_LOOP_WINDOW_SECONDS = _env_float('JOURNEY_LOOP_WINDOW_SECONDS', 5)
    JOURNEY_STALE_PENDING_HOURS = _env_float('JOURNEY_STALE_PENDING_HOURS', 1)
    JOURNEY_RESCHEDULE_QUEUE_MAX = _env_int('JOURNEY_RESCHEDULE_QUEUE_MAX', 10000)
    JOURNEY_CACHE_TTL_SECONDS = _env_int('JOURNEY_CACHE_TTL_SECONDS', 300)
    JOURNEY_CALL_LOG_CACHE_SIZE = _env_int('JOURNEY_CALL_LOG_CACHE_SIZE', 1000)
    JOURNEY_NODE_CACHE_SIZE = _env_int('JOURNEY_NODE_CACHE_SIZE', 5000)

    # Outbound webhook nodes
    WEBHOOK_DEFAULT_TIMEOUT_MS = _env_int('WEBHOOK_DEFAULT_TIMEOUT_MS', 30000)
    WEBHOOK_DEFAULT_RETRIES = _env_int('WEBHOOK_DEFAULT_RETRIES', 3)
    WEBHOOK_DEFAULT_RETRY_DELAY_MS = _env_int('WEBHOOK_DEFAULT_RETRY_DELAY_MS', 1000)

    # OpenPhone API (SMS)
    OPENPHONE_API_KEY = os.environ.get('OPENPHONE_API_KEY')
    OPENPHONE_PHONE_NUMBER = os.environ.get('OPENPHONE_PHONE_NUMBER')

    # Dialer and text-to-speech providers
    TELEPHONY_API_URL = os.environ.get('TELEPHONY_API_URL')
    TELEPHONY_API_KEY = os.environ.get('TELEPHONY_API_KEY')
    TTS_API_URL = os.environ.get('TTS_API_URL')
    TTS_API_KEY = os.environ.get('TTS_API_KEY')
    AUDIO_STORAGE_DIR = os.environ.get('AUDIO_STORAGE_DIR') or os.path.join(basedir, 'generated_audio')

    # Links rendered into messages
    BOOKING_LINK_BASE_URL = os.environ.get('BOOKING_LINK_BASE_URL')
    APP_BASE_URL = os.environ.get('APP_BASE_URL')

    # Celery / Redis
    # 'redis' is the service name in docker-compose
    REDIS_URL = os.environ.get('REDIS_URL') or 'redis://redis:6379/0'
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL') or REDIS_URL
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND') or REDIS_URL

    # Application settings
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024
    JSON_SORT_KEYS = False

    @classmethod
    def init_app(cls, app):
        """Initialize application with this config"""
        cls.validate_required_config()


class DevelopmentConfig(Config):
    """Development environment configuration"""
    DEBUG = True
    TESTING = False

    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or \
        Config.SQLALCHEMY_DATABASE_URI

    @classmethod
    def init_app(cls, app):
        """Development-specific initialization"""
        Config.init_app(app)

        # Log to stdout in development
        import logging
        from logging import StreamHandler
        stream_handler = StreamHandler()
        stream_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(stream_handler)


class TestingConfig(Config):
    """Testing environment configuration"""
    TESTING = True
    DEBUG = True

    # Use in-memory SQLite for tests
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    OPENPHONE_API_KEY = 'test-openphone-key'
    OPENPHONE_PHONE_NUMBER = '+15550000000'
    TELEPHONY_API_URL = 'http://telephony.test'
    TTS_API_URL = 'http://tts.test'

    # Use test Redis database
    CELERY_BROKER_URL = 'redis://localhost:6379/1'
    CELERY_RESULT_BACKEND = 'redis://localhost:6379/1'

    @classmethod
    def init_app(cls, app):
        """Testing-specific initialization"""
        # No env validation and no Redis in tests
        import logging
        logger = logging.getLogger(__name__)
        logger.info("Testing mode: in-memory SQLite")


class ProductionConfig(Config):
    """Production environment configuration"""
    DEBUG = False
    TESTING = False

    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', '')

    REDIS_URL = os.environ.get('REDIS_URL', '')
    CELERY_BROKER_URL = with_ssl_params(REDIS_URL)
    CELERY_RESULT_BACKEND = with_ssl_params(REDIS_URL)

    @classmethod
    def init_app(cls, app):
        """Production-specific initialization"""
        if not cls.SQLALCHEMY_DATABASE_URI:
            cls.SQLALCHEMY_DATABASE_URI = cls.get_required_env('POSTGRES_URI')
            app.config['SQLALCHEMY_DATABASE_URI'] = cls.SQLALCHEMY_DATABASE_URI

        # Validate all required config
        cls.validate_required_config()

        # Log to syslog in production
        import logging
        from logging.handlers import SysLogHandler
        syslog_handler = SysLogHandler()
        syslog_handler.setLevel(logging.WARNING)
        app.logger.addHandler(syslog_handler)


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name: Optional[str] = None) -> type[Config]:
    """Get configuration class based on environment"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    return config.get(config_name, DevelopmentConfig)
