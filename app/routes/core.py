from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from cache_layer import cache_stats
from db import get_pool_stats, ping_db
from utils import iso_utc_now

core_bp = Blueprint("core", __name__)


@core_bp.get("/health")
def health():
    """Lightweight health check (process alive)."""
    cfg = current_app.config["CFG"]
    return jsonify({
        "status": "ok",
        "time": iso_utc_now(),
        "version": cfg.APP_VERSION,
        "db_pool": get_pool_stats(),
        "cache": cache_stats(),
    })


@core_bp.get("/ready")
def ready():
    """Readiness check for load balancers: the database must answer."""
    cfg = current_app.config["CFG"]
    db_ok = ping_db()
    status = 200 if db_ok else 503
    return (
        jsonify({
            "status": "ok" if db_ok else "degraded",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "checks": {"db": "ok" if db_ok else "error"},
        }),
        status,
    )


@core_bp.get("/version")
def version():
    cfg = current_app.config["CFG"]
    return jsonify({"version": cfg.APP_VERSION, "env": cfg.APP_ENV, "time": iso_utc_now()})
