import logging
import time

from flask import Flask, g, request
from flasgger import Swagger
from flask_cors import CORS

from .config import DEV_JWT_SECRET, get_config
from .errors import register_error_handlers
from models import storage
from utils.audit import AuditEventType, AuditLogger, AuditSeverity
from utils.rate_limit import RateLimiter, enforce
from utils.refresh_tokens import RefreshTokenStore
from utils.security import TokenIssuer

# Minimal Swagger config: exposes /swagger.json and UI at /apidocs
SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "School Admin Auth API",
        "version": "1.0.0",
        "description": "Authentication, session lifecycle and security audit for the school administration backend.",
    },
    "basePath": "/",  # Blueprints are mounted under /api/v1
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "Bearer": {
            "type": "apiKey",
            "name": "Authorization",
            "in": "header",
            "description": "Enter the token with the `Bearer ` prefix, e.g. \"Bearer abcde12345\"."
        }
    }
}

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec_1",
            "route": "/swagger.json",
            "rule_filter": lambda rule: True,   # include all endpoints
            "model_filter": lambda tag: True,   # include all models
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/apidocs/",
}

API_PREFIX = "/api/v1"
# Probes are never counted against the general API limit
UNLIMITED_PATHS = {f"{API_PREFIX}/health"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def _build_services(app: Flask) -> None:
    """Construct the auth services once per app and expose them via app.extensions."""
    config = app.config
    refresh_store = RefreshTokenStore(
        storage,
        max_tokens_per_user=config["MAX_TOKENS_PER_USER"],
        ttl=config["REFRESH_TOKEN_EXPIRES"],
    )
    app.extensions["refresh_tokens"] = refresh_store
    app.extensions["token_issuer"] = TokenIssuer(
        config["JWT_SECRET"],
        refresh_store,
        algorithm=config["JWT_ALGORITHM"],
        access_ttl=config["ACCESS_TOKEN_EXPIRES"],
        issuer=config["JWT_ISSUER"],
    )
    app.extensions["rate_limiter"] = RateLimiter()
    app.extensions["audit_logger"] = AuditLogger(
        storage,
        sinks=config["AUDIT_SINKS"],
        async_writes=config["AUDIT_ASYNC"],
    )


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def start_timer_and_limit():
        g.request_started = time.monotonic()
        if request.path.startswith(API_PREFIX) and request.path not in UNLIMITED_PATHS:
            enforce("api")

    @app.after_request
    def security_headers_and_slow_requests(response):
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        if app.config.get("APP_ENV") in ("prod", "production"):
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")

        started = g.get("request_started")
        if started is not None:
            duration = time.monotonic() - started
            if duration > app.config["SLOW_REQUEST_SECONDS"]:
                app.extensions["audit_logger"].from_request(
                    AuditEventType.SUSPICIOUS_ACTIVITY,
                    AuditSeverity.MEDIUM,
                    success=response.status_code < 400,
                    details={"slow_request": True, "duration_ms": int(duration * 1000),
                             "status": response.status_code},
                )
        return response


def create_app(config_name: str | None = None, overrides: dict | None = None) -> Flask:
    """
    Application factory: creates and configures the Flask app.
    overrides lets tests and scripts adjust config keys after the class is loaded.
    """
    app = Flask(__name__)

    # Load configuration (reads .env via get_config)
    app.config.from_object(get_config(config_name))
    if overrides:
        app.config.update(overrides)

    if not app.config["DEBUG"] and not app.config["TESTING"] and app.config["JWT_SECRET"] == DEV_JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set to a strong secret outside development")

    logging.getLogger("school_api").setLevel(app.config["LOG_LEVEL"])
    app.logger.setLevel(app.config["LOG_LEVEL"])

    storage.reload(app.config["DATABASE_URL"], echo=app.config["SQL_ECHO"])
    _build_services(app)

    # Cross-Origin Resource Sharing: enable for dev, configurable for prod
    CORS(app, resources={r"/*": {"origins": app.config.get("CORS_ORIGINS", "*")}})

    # Swagger UI and JSON
    Swagger(app, template=SWAGGER_TEMPLATE, config=SWAGGER_CONFIG)

    # Register global error handlers that return the uniform error envelope
    register_error_handlers(app)
    _register_request_hooks(app)

    from .health import bp as health_bp
    from .auth import bp as auth_bp
    from .users import bp as users_bp
    from .audit import bp as audit_bp
    from .cli import register_commands

    # a url_prefix given here replaces the blueprint's own prefix
    app.register_blueprint(health_bp, url_prefix=API_PREFIX)
    app.register_blueprint(auth_bp, url_prefix=f"{API_PREFIX}/auth")
    app.register_blueprint(users_bp, url_prefix=f"{API_PREFIX}/users")
    app.register_blueprint(audit_bp, url_prefix=API_PREFIX)
    register_commands(app)

    # Ensure the DB session is removed at the end of each request/app context
    @app.teardown_appcontext
    def remove_session(exception=None):
        # This calls scoped_session.remove(), preventing connection leaks
        storage.close()

    @app.route("/")
    def root():
        return {
            "message": "School Admin Auth API",
            "docs": "/apidocs/",
            "health": f"{API_PREFIX}/health",
        }, 200

    return app
