# admin/__init__.py
import os, logging
from functools import wraps

from flask import Blueprint, request, jsonify, session
from flask import current_app

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _admin_password() -> str:
    return current_app.config.get("ADMIN_PASSWORD") or os.getenv("ADMIN_PASSWORD", "")


def _require_admin():
    # No password configured: local/dev mode, every caller is trusted
    if not _admin_password():
        return None
    if session.get("admin") is True:
        return None
    return jsonify(error="unauthorized", message="Admin session required"), 401


def require_admin(fn):
    """Guard a write endpoint behind the admin session when ADMIN_PASSWORD is set."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        guard = _require_admin()
        if guard:
            return guard
        return fn(*args, **kwargs)
    return wrapper


@admin_bp.post("/login")
def admin_login():
    want = (request.get_json(silent=True) or {}).get("password", "")
    # If ADMIN_PASSWORD is empty: allow login with no password (convenient for local)
    needed = _admin_password()
    if needed and want != needed:
        logging.getLogger("app").warning("admin login rejected")
        return jsonify(ok=False, error="bad_password"), 401
    session["admin"] = True
    return jsonify(ok=True)


@admin_bp.post("/logout")
def admin_logout():
    session.clear()
    return jsonify(ok=True)


@admin_bp.get("/me")
def admin_me():
    return jsonify(
       admin=bool(session.get("admin")),
       password_required=bool(_admin_password()),
       secure=current_app.config.get("SESSION_COOKIE_SECURE"),
       samesite=current_app.config.get("SESSION_COOKIE_SAMESITE"),
    )


@admin_bp.post("/clear-caches")
@require_admin
def admin_clear_caches():
    """
    Drop the reflected table cache so the next request re-reads the schema.

    Use after altering league tables directly in the database.

    Response:
    {
        "ok": true,
        "cleared": {"league_tables": 1}
    }
    """
    from services.league_store import clear_table_cache

    cleared = {"league_tables": clear_table_cache()}
    logging.getLogger("app").info("admin_clear_caches", extra={"cleared": cleared})
    return jsonify(ok=True, cleared=cleared)
