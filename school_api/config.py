"""
Environment-aware configuration.
Values come from the environment (a .env file is read if present); the
config class is chosen by APP_ENV (dev/test/prod) unless a name is passed to
create_app().
"""
import os
from dotenv import load_dotenv
from datetime import timedelta

load_dotenv()  # Read .env if present

DEV_JWT_SECRET = "dev-secret-change-me"


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class BaseConfig:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")  # Set a strong key in production
    DEBUG = False
    TESTING = False
    # CORS: in dev we usually allow '*', in prod supply a comma-separated list in env
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    APP_ENV = os.getenv("APP_ENV", "dev")
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///school-admin.db")
    SQL_ECHO = _env_bool("SQL_ECHO", False)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    # Include exception type/message in 500 responses
    EXPOSE_ERROR_DETAILS = False

    # Access tokens (JWT)
    JWT_SECRET = os.getenv("JWT_SECRET", DEV_JWT_SECRET)
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_ISSUER = os.getenv("JWT_ISSUER", "school-admin-api")
    ACCESS_TOKEN_EXPIRES = timedelta(seconds=int(os.getenv("ACCESS_TOKEN_EXPIRES_SECONDS", str(4 * 60 * 60))))

    # Refresh tokens / sessions
    REFRESH_TOKEN_EXPIRES = timedelta(days=int(os.getenv("REFRESH_TOKEN_EXPIRES_DAYS", "30")))
    MAX_TOKENS_PER_USER = int(os.getenv("MAX_TOKENS_PER_USER", "5"))
    # Consume the presented refresh token and hand out a new one on /auth/refresh
    REFRESH_TOKEN_ROTATION = _env_bool("REFRESH_TOKEN_ROTATION", True)
    REVOKE_SESSIONS_ON_PASSWORD_CHANGE = _env_bool("REVOKE_SESSIONS_ON_PASSWORD_CHANGE", False)

    PASSWORD_MIN_SCORE = int(os.getenv("PASSWORD_MIN_SCORE", "50"))

    # Rate limiting: group -> (max requests, window seconds)
    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    RATE_LIMITS = {
        "login": (int(os.getenv("LOGIN_RATE_LIMIT", "5")), int(os.getenv("LOGIN_RATE_WINDOW_SECONDS", "900"))),
        "api": (int(os.getenv("API_RATE_LIMIT", "100")), int(os.getenv("API_RATE_WINDOW_SECONDS", "900"))),
    }
    # Only honour X-Forwarded-For / X-Real-IP behind a trusted reverse proxy
    TRUST_PROXY_HEADERS = _env_bool("TRUST_PROXY_HEADERS", False)

    # Audit trail
    AUDIT_SINKS = _env_list("AUDIT_SINKS", "log,database")
    AUDIT_ASYNC = _env_bool("AUDIT_ASYNC", True)
    SLOW_REQUEST_SECONDS = float(os.getenv("SLOW_REQUEST_SECONDS", "5"))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    EXPOSE_ERROR_DETAILS = True
    # In dev, propagate exceptions so our error handler has full context
    PROPAGATE_EXCEPTIONS = True


class TestingConfig(BaseConfig):
    TESTING = True
    DATABASE_URL = "sqlite:///:memory:"
    JWT_SECRET = "test-secret-with-enough-length-for-hs256"
    AUDIT_ASYNC = False
    AUDIT_SINKS = ["log", "database"]
    RATE_LIMITS = {"login": (5, 900), "api": (100, 900)}
    EXPOSE_ERROR_DETAILS = True
    # Let the registered 500 handler run instead of re-raising into the test client
    PROPAGATE_EXCEPTIONS = False


class ProductionConfig(BaseConfig):
    DEBUG = False


def get_config(name: str | None):
    """
    Select config class.
    - If name is provided, choose by name.
    - Else choose based on APP_ENV (dev/test/prod).
    """
    if name:
        name = name.lower()
    env = (name or os.getenv("APP_ENV", "dev")).lower()
    if env in ["prod", "production"]:
        return ProductionConfig
    if env in ["test", "testing"]:
        return TestingConfig
    return DevelopmentConfig
