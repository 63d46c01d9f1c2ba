import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


wsgi_app = "app:create_app()"

bind = f"0.0.0.0:{_env_int('PORT', 5000)}"

# gthread: requests block on the database and on outbound mail.
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "gthread").strip() or "gthread"

workers = max(1, _env_int("WEB_CONCURRENCY", 2))
threads = max(1, _env_int("PYTHON_THREADS", 4))

# Preload shares the app across workers. Off by default: create_app() touches the DB,
# and each worker keeps its own in-process stats cache either way.
preload_app = _env_bool("GUNICORN_PRELOAD_APP", False)

timeout = max(10, _env_int("GUNICORN_TIMEOUT", 60))
graceful_timeout = max(5, _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30))

keepalive = max(1, _env_int("GUNICORN_KEEPALIVE", 30))

# Log to stdout/stderr (container friendly).
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info").strip().lower()

# Periodic worker recycling.
max_requests = max(0, _env_int("GUNICORN_MAX_REQUESTS", 1000))
max_requests_jitter = max(0, _env_int("GUNICORN_MAX_REQUESTS_JITTER", 50))

reload = _env_bool("GUNICORN_RELOAD", False)

