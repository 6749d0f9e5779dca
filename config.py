import os
import secrets
import warnings

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, ".env"))


def _env_bool(name, default):
    return os.environ.get(name, default).lower() in ["true", "on", "1"]


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY") or secrets.token_urlsafe(32)

    # Database configuration - built from environment at initialization
    def __init__(self):
        """Initialize configuration with dynamic database URI"""
        self.SQLALCHEMY_DATABASE_URI = self._build_database_uri()

    def _build_database_uri(self):
        """Build database URI from environment variables"""
        database_url = os.environ.get("DATABASE_URL")

        if database_url:
            return database_url

        db_type = os.environ.get("DB_TYPE", "sqlite")

        if db_type.lower() == "postgresql":
            db_host = os.environ.get("DB_HOST") or "localhost"
            db_port = os.environ.get("DB_PORT") or "5432"
            db_name = os.environ.get("DB_NAME") or "cardleague_db"
            db_user = os.environ.get("DB_USER") or "cardleague"
            db_password = os.environ.get("DB_PASSWORD") or "cardleague"

            return f"postgresql+psycopg://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
        else:
            # Default to SQLite for development
            return "sqlite:///" + os.path.join(basedir, "cardleague.db")

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Card rules
    MAX_PICKS = int(os.environ.get("MAX_PICKS") or 5)
    # Seconds a card edit or recompute waits for another writer on the same card
    CARD_LOCK_TIMEOUT_SECONDS = float(os.environ.get("CARD_LOCK_TIMEOUT_SECONDS") or 10)
    # Python weekday numbering: Monday=0 ... Sunday=6. Tuesday-to-Monday weeks.
    WEEK_BOUNDARY_WEEKDAY = int(os.environ.get("WEEK_BOUNDARY_WEEKDAY") or 1)
    TIMEZONE = os.environ.get("TIMEZONE", "UTC")  # Default to UTC if not specified

    # Scoring
    POINT_SYSTEM = os.environ.get("POINT_SYSTEM", "flat")
    MONEYLINE_TIE_POLICY = os.environ.get("MONEYLINE_TIE_POLICY", "push")

    # Game feed configuration
    GAME_FEED_URL = os.environ.get("GAME_FEED_URL")
    GAME_FEED_TIMEOUT = float(os.environ.get("GAME_FEED_TIMEOUT") or 10)
    GAME_FEED_MAX_RETRIES = int(os.environ.get("GAME_FEED_MAX_RETRIES") or 3)

    # Settlement
    SETTLEMENT_INTERVAL_SECONDS = int(
        os.environ.get("SETTLEMENT_INTERVAL_SECONDS") or 300
    )
    RESULT_CORRECTION_WINDOW_HOURS = int(
        os.environ.get("RESULT_CORRECTION_WINDOW_HOURS") or 72
    )

    # Caching configuration
    CACHE_TYPE = os.environ.get("CACHE_TYPE", "RedisCache")
    CACHE_DEFAULT_TIMEOUT = int(
        os.environ.get("CACHE_DEFAULT_TIMEOUT", 300)
    )  # 5 minutes
    CACHE_REDIS_URL = os.environ.get("CACHE_REDIS_URL", "redis://localhost:6379/0")
    CACHE_KEY_PREFIX = "cardleague:"
    STANDINGS_CACHE_TIMEOUT = int(os.environ.get("STANDINGS_CACHE_TIMEOUT", 600))

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_ENABLED = _env_bool("RATELIMIT_ENABLED", "True")

    # Scheduler configuration
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "True")

    # Logging configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_TO_CONSOLE = _env_bool("LOG_TO_CONSOLE", "True")
    LOG_TO_FILE = _env_bool("LOG_TO_FILE", "True")
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    SLOW_FUNCTION_THRESHOLD = float(os.environ.get("SLOW_FUNCTION_THRESHOLD", "1.0"))

    # Environment detection
    FLASK_ENV = os.environ.get("FLASK_ENV", "development")
    DEBUG = FLASK_ENV == "development"
    TESTING = False


class DevelopmentConfig(Config):
    """Development configuration with helpful defaults"""

    DEBUG = True
    SQLALCHEMY_ECHO = _env_bool("SQLALCHEMY_ECHO", "False")

    def __init__(self):
        super().__init__()
        # Fallback to SimpleCache if Redis isn't available in development
        try:
            import redis

            redis_client = redis.Redis.from_url(self.CACHE_REDIS_URL)
            redis_client.ping()
        except Exception:
            self.CACHE_TYPE = "SimpleCache"
            warnings.warn(
                "Redis not available, falling back to SimpleCache for development.",
                UserWarning,
            )


class ProductionConfig(Config):
    """Production configuration with security focus"""

    DEBUG = False
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "False")

    def __init__(self):
        super().__init__()  # Call parent __init__ to build database URI

        if not os.environ.get("SECRET_KEY"):
            warnings.warn(
                "PRODUCTION WARNING: SECRET_KEY not explicitly set!",
                UserWarning,
            )
        if not self.GAME_FEED_URL:
            warnings.warn(
                "PRODUCTION WARNING: GAME_FEED_URL not set, settlement passes "
                "will only grade games already stored as final.",
                UserWarning,
            )


class TestingConfig(Config):
    """Testing configuration"""

    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CACHE_TYPE = "SimpleCache"
    SCHEDULER_ENABLED = False
    RATELIMIT_ENABLED = False
    LOG_TO_FILE = False
    LOG_TO_CONSOLE = False
    GAME_FEED_URL = None
    MAX_PICKS = 5
    WEEK_BOUNDARY_WEEKDAY = 1
    TIMEZONE = "UTC"
    POINT_SYSTEM = "flat"
    MONEYLINE_TIE_POLICY = "push"

    def __init__(self):
        # In-memory database regardless of DATABASE_URL
        pass


# Configuration mapping
config = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig,
}
