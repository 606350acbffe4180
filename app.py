import os, json, logging, time, uuid

from flask import has_request_context
from flask import Flask, request, jsonify, g
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, BadRequest



# ---- Rate limiting (lightweight) ----
# Tiny in-memory limiter; swap for a Redis-backed one in multi-instance deployments.
from collections import defaultdict, deque

# ---- SQLAlchemy Core (no ORM) ----
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from db import create_sqlite_engine
from services.transaction_errors import TransactionError

# ---- Optional: Prometheus metrics ----
try:
    from prometheus_flask_exporter import PrometheusMetrics
    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False


# ----------------------------
# Pull local env
# ----------------------------

if os.path.exists(".env"):
    from dotenv import load_dotenv
    load_dotenv(override=False)  # never override the runtime env


def _env_flag(name, default):
    return os.getenv(name, default).lower() == "true"


# ----------------------------
# Config
# ----------------------------
class Config:
    ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = ENV == "development"
    TESTING = False

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Database URL (mysql+pymysql://... in production, sqlite:///... for local dev)
    DATABASE_URL = os.getenv("DATABASE_URL")

    # DB timeouts. Enforced at the DB level via connection options.
    DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "8000"))  # 8s
    DB_CONNECT_TIMEOUT_S = int(os.getenv("DB_CONNECT_TIMEOUT_S", "5"))

    # SQLAlchemy pool settings
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "5"))
    DB_POOL_RECYCLE_S = int(os.getenv("DB_POOL_RECYCLE_S", "300"))

    # Request / server settings
    REQUEST_MAX_BODY_BYTES = int(os.getenv("REQUEST_MAX_BODY_BYTES", "1048576"))  # 1 MB

    # Rate limiting
    RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "100"))  # per window
    RATE_LIMIT_WINDOW_S = int(os.getenv("RATE_LIMIT_WINDOW_S", "60"))   # seconds

    # Admin session
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

    # League transaction rules
    FA_TRANSACTION_LIMIT = int(os.getenv("FA_TRANSACTION_LIMIT", "6"))
    P2P_TRANSACTION_LIMIT = int(os.getenv("P2P_TRANSACTION_LIMIT", "6"))
    MAX_TRADE_SIDE = int(os.getenv("MAX_TRADE_SIDE", "3"))
    TRADE_LOCK_WEEKS = int(os.getenv("TRADE_LOCK_WEEKS", "2"))
    ENFORCE_TRADE_LOCK = _env_flag("ENFORCE_TRADE_LOCK", "true")
    ENFORCE_BUDGET_FLOOR = _env_flag("ENFORCE_BUDGET_FLOOR", "true")

    # Feature flags
    ENABLE_PROMETHEUS = _env_flag("ENABLE_PROMETHEUS", "true")


# ----------------------------
# Logging (JSON)
# ----------------------------
class JsonFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "pid": os.getpid(),
        }

        # Only touch request/g if we actually have a request context
        if has_request_context():
            payload["path"] = request.path
            payload["method"] = request.method
            rid = getattr(g, "request_id", None)
            if rid:
                payload["request_id"] = rid

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)

def setup_logging():
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    formatter = JsonFormatter()
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        h = logging.StreamHandler()
        h.setFormatter(formatter)
        root.addHandler(h)
    else:
        for h in root.handlers:
            if isinstance(h, logging.StreamHandler):
                h.setFormatter(formatter)
    logging.getLogger("app").info("App boot: PID=%s, PORT=%s, DATABASE_URL set=%s", os.getpid(), os.getenv("PORT"), bool(os.getenv("DATABASE_URL")))


# ----------------------------
# Tiny in-memory rate limiter
# ----------------------------
class SimpleRateLimiter:
    def __init__(self, max_requests, window_s):
        self.max_requests = max_requests
        self.window_s = window_s
        self.buckets = defaultdict(deque)

    def is_allowed(self, key: str) -> bool:
        now = time.time()
        q = self.buckets[key]
        # Drop old timestamps
        while q and q[0] <= now - self.window_s:
            q.popleft()
        if len(q) >= self.max_requests:
            return False
        q.append(now)
        return True


# ----------------------------
# App Factory
# ----------------------------
def create_app(config_object=Config):
    setup_logging()
    log = logging.getLogger("app")
    log.info("stage: flask_start")

    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config["DATABASE_URL"] = app.config.get("DATABASE_URL") or os.getenv("DATABASE_URL")
    log.info("stage: config_loaded")
    log.info("ADMIN_PASSWORD set? %s", bool(app.config.get("ADMIN_PASSWORD")))

    # Register Blueprints
    from transactions import transactions_bp
    from rosters import rosters_bp
    from admin import admin_bp
    app.register_blueprint(transactions_bp, url_prefix="/api/v1")
    app.register_blueprint(rosters_bp, url_prefix="/api/v1")

    # Secure session cookie
    app.secret_key = os.getenv("FLASK_SECRET", os.urandom(32))
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=not (app.debug or app.testing),  # secure cookies in prod
    )
    app.register_blueprint(admin_bp)
    log.info("stage: blueprints_ok")

    @app.get("/")
    def root():
        return jsonify(status="up")

    @app.get("/favicon.ico")
    def favicon():
        return ("", 204)

    # CORS
    CORS(app, resources={r"/*": {"origins": app.config["CORS_ORIGINS"]}})
    log.info("stage: cors_ok")

    # Request ID middleware
    @app.before_request
    def attach_request_id():
        g.request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        # lightweight body size guard
        cl = request.headers.get("Content-Length")
        if cl and int(cl) > app.config["REQUEST_MAX_BODY_BYTES"]:
            raise BadRequest("Request body too large")

    # Simple rate limit
    limiter = SimpleRateLimiter(
        app.config["RATE_LIMIT_REQUESTS"], app.config["RATE_LIMIT_WINDOW_S"]
    )

    @app.before_request
    def apply_rate_limit():
        key = request.headers.get("X-Forwarded-For", request.remote_addr) or "unknown"
        if not limiter.is_allowed(key):
            return jsonify(error="rate_limited", message="Too many requests"), 429

    # Database engine (SQLAlchemy Core)
    if not app.config["DATABASE_URL"]:
        log.warning("DATABASE_URL not set. /readyz will fail.")
    engine = _build_engine(app)
    log.info("stage: engine_ok")

    # make the engine visible to blueprints
    app.engine = engine
    app.extensions["sqlalchemy_engine"] = engine

    # Prometheus metrics
    if app.config["ENABLE_PROMETHEUS"] and PROMETHEUS_AVAILABLE:
        PrometheusMetrics(app, group_by="endpoint")
        log.info("Prometheus metrics enabled at /metrics")

    # -------- Error Handlers --------
    @app.get("/routes")
    def _routes():
        from flask import Response
        lines = []
        for r in sorted(app.url_map.iter_rules(), key=lambda x: x.rule):
            lines.append(f"{','.join(sorted(r.methods))}  {r.rule}  -> {r.endpoint}")
        return Response("\n".join(lines), mimetype="text/plain")

    @app.errorhandler(HTTPException)
    def handle_http_ex(e: HTTPException):
        return jsonify(error=e.name, message=e.description), e.code

    @app.errorhandler(TransactionError)
    def handle_tx_ex(e: TransactionError):
        log.warning("transaction rejected (%s): %s", e.kind, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_db_ex(e):
        log.exception("Database error")
        return jsonify(error="db_error", message="Database error"), 500

    @app.errorhandler(Exception)
    def handle_generic_ex(e):
        log.exception("Unhandled error")
        return jsonify(error="internal_error", message="Something went wrong"), 500

    # -------- Health / Readiness --------
    @app.get("/healthz")
    def healthz():
        return jsonify(status="ok", time=time.time())

    @app.get("/readyz")
    def readyz():
        if engine is None:
            return jsonify(status="degraded", error="no database configured"), 503
        # quick DB ping
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return jsonify(status="ready")
        except SQLAlchemyError as e:
            log.warning("readyz db ping failed: %s", e)
            return jsonify(status="degraded", error=str(e)), 503
    log.info("stage: handlers_ok")

    return app


# ----------------------------
# Helpers
# ----------------------------
def _build_engine(app):
    db_url = app.config.get("DATABASE_URL") or os.getenv("DATABASE_URL")
    if not db_url:
        logging.getLogger("app").warning("DATABASE_URL missing at runtime")
        return None

    if db_url.startswith("sqlite"):
        return create_sqlite_engine(db_url)

    # SAFETY NET: force PyMySQL if someone pasted mysql://
    if db_url.startswith("mysql://"):
        db_url = "mysql+pymysql://" + db_url[len("mysql://"):]
        logging.getLogger("app").info("Normalized DATABASE_URL to PyMySQL")

    connect_args = {}
    if "mysql" in db_url:
        # Add helpful defaults if missing
        if "charset=" not in db_url:
            sep = "&" if "?" in db_url else "?"
            db_url = f"{db_url}{sep}charset=utf8mb4"
        if "connect_timeout=" not in db_url:
            sep = "&" if "?" in db_url else "?"
            db_url = f"{db_url}{sep}connect_timeout={app.config['DB_CONNECT_TIMEOUT_S']}"
        connect_args = {
            "init_command": f"SET SESSION MAX_EXECUTION_TIME={app.config['DB_STATEMENT_TIMEOUT_MS']}",
        }

    if os.getenv("RAILWAY_ENVIRONMENT"):
        connect_args["ssl"] = {}

    engine = create_engine(
        db_url,
        pool_size=app.config["DB_POOL_SIZE"],
        max_overflow=app.config["DB_MAX_OVERFLOW"],
        pool_recycle=app.config["DB_POOL_RECYCLE_S"],
        pool_pre_ping=True,
        connect_args=connect_args,
        future=True,
    )
    return engine


# ----------------------------
# Entrypoint
# ----------------------------
if __name__ == "__main__":
    app = create_app()
    # For local dev only; use gunicorn in production
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
