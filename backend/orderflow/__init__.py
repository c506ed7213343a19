import os

from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from orderflow.errors import OrderflowError
from orderflow.extensions import cors, db, migrate
from orderflow.integrations.payments.factory import payment_health
from orderflow.segments.segment_orders_api import orders_bp
from orderflow.segments.segment_wallets import wallets_bp
from orderflow.services.container import EXTENSION_KEY, build_collaborators
from orderflow.utils.observability import init_sentry, install_request_observers


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_float(name: str, default):
    """Float env value; ``default`` may be None for optional limits."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _load_config(env: str) -> dict:
    is_production = env in ("prod", "production")
    return {
        "ORDERFLOW_ENV": env,
        "IS_PRODUCTION": is_production,
        "SECRET_KEY": os.getenv("SECRET_KEY", "dev-secret"),
        "CRON_SECRET": (os.getenv("CRON_SECRET") or "").strip(),
        "CURRENCY": (os.getenv("CURRENCY") or "CAD").strip().upper(),
        # Settlement
        "HOLD_EXPIRY_HOURS": _env_int("HOLD_EXPIRY_HOURS", 168, minimum=1, maximum=24 * 31),
        "HOLD_EXPIRY_WARNING_HOURS": _env_int("HOLD_EXPIRY_WARNING_HOURS", 24, minimum=1, maximum=24 * 31),
        "CAPTURE_CLAIM_STALE_SECONDS": _env_int("CAPTURE_CLAIM_STALE_SECONDS", 300, minimum=30, maximum=86400),
        "PLATFORM_FEE_PERCENTAGE": _env_float("PLATFORM_FEE_PERCENTAGE", 10.0),
        "PAYMENT_PROCESSING_FEE": _env_float("PAYMENT_PROCESSING_FEE", 2.9),
        "PAYMENT_PROCESSING_FEE_FIXED": _env_float("PAYMENT_PROCESSING_FEE_FIXED", 0.30),
        "AUTO_CAPTURE_HOURS": _env_int("AUTO_CAPTURE_HOURS", 48, minimum=1, maximum=24 * 31),
        "PAYOUT_TRANSFER_QUEUE": _env_bool("PAYOUT_TRANSFER_QUEUE", False),
        # Delivery
        "DELIVERY_BUFFER_PERCENTAGE": _env_float("DELIVERY_BUFFER_PERCENTAGE", 20.0),
        "DELIVERY_MIN_BUFFER": _env_float("DELIVERY_MIN_BUFFER", 0.0),
        "DELIVERY_MAX_BUFFER": _env_float("DELIVERY_MAX_BUFFER", None),
        "DELIVERY_AUTO_APPROVE_THRESHOLD": _env_float("DELIVERY_AUTO_APPROVE_THRESHOLD", 0.0),
        "DELIVERY_ABSORPTION_LIMIT": _env_float("DELIVERY_ABSORPTION_LIMIT", None),
        "DELIVERY_REFUND_THRESHOLD": _env_float("DELIVERY_REFUND_THRESHOLD", 0.0),
        "ARTISAN_RESPONSE_TIMEOUT_SECONDS": _env_int("ARTISAN_RESPONSE_TIMEOUT_SECONDS", 7200, minimum=60, maximum=86400 * 7),
        # Integrations
        "PAYMENTS_PROVIDER": (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower(),
        "STRIPE_SECRET_KEY": (os.getenv("STRIPE_SECRET_KEY") or "").strip(),
        "COURIER_PROVIDER": (os.getenv("COURIER_PROVIDER") or "mock").strip().lower(),
        "UBER_DIRECT_CLIENT_ID": (os.getenv("UBER_DIRECT_CLIENT_ID") or "").strip(),
        "UBER_DIRECT_CLIENT_SECRET": (os.getenv("UBER_DIRECT_CLIENT_SECRET") or "").strip(),
        "UBER_DIRECT_CUSTOMER_ID": (os.getenv("UBER_DIRECT_CUSTOMER_ID") or "").strip(),
        "UBER_DIRECT_API_URL": (os.getenv("UBER_DIRECT_API_URL") or "").strip(),
        "UBER_DIRECT_AUTH_URL": (os.getenv("UBER_DIRECT_AUTH_URL") or "").strip(),
        "COURIER_WEBHOOK_SECRET": (os.getenv("COURIER_WEBHOOK_SECRET") or "").strip(),
        "NOTIFICATIONS_PROVIDER": (os.getenv("NOTIFICATIONS_PROVIDER") or "log").strip().lower(),
        "NOTIFY_WEBHOOK_URL": (os.getenv("NOTIFY_WEBHOOK_URL") or "").strip(),
        "NOTIFY_WEBHOOK_TOKEN": (os.getenv("NOTIFY_WEBHOOK_TOKEN") or "").strip(),
    }


def _database_url(env: str, instance_dir: str) -> str:
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        if env in ("prod", "production"):
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        database_url = f"sqlite:///{os.path.join(instance_dir, 'orderflow.db').replace(os.sep, '/')}"
    # Heroku-style URLs.
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def create_app(config=None, *, payment_processor=None, courier=None, notifier=None):
    """Build the API app.

    ``config`` overrides env-derived settings. The collaborators, when given,
    replace the env-selected payment processor, courier and notification provider.
    """
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("ORDERFLOW_ENV", "dev") or "dev").strip().lower()

    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")

    app.config.update(_load_config(env))
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = _database_url(env, instance_dir)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s",
            int(engine_options["pool_size"]),
            int(engine_options["max_overflow"]),
            int(engine_options["pool_timeout"]),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    if config:
        app.config.update(config)

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    app.extensions[EXTENSION_KEY] = build_collaborators(
        app.config,
        payment_processor=payment_processor,
        courier=courier,
        notifier=notifier,
    )

    def _trace_payload(payload: dict) -> dict:
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return payload

    @app.errorhandler(OrderflowError)
    def _api_orderflow_error(error: OrderflowError):
        db.session.rollback()
        if error.http_status >= 500:
            app.logger.error("orderflow_error path=%s code=%s message=%s", request.path, error.code, error.message)
        return jsonify(_trace_payload(error.to_dict())), error.http_status

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_trace_payload(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_trace_payload(payload)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(wallets_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "orderflow",
            "env": env,
            "db": db_state,
            "git_sha": (os.getenv("GIT_SHA") or "unknown"),
            "payments": payment_health(app.config),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.before_request
    def _reset_failed_transaction():
        try:
            db.session.rollback()
        except Exception:
            db.session.remove()

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    return app
