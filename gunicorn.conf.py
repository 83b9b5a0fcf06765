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


wsgi_app = "server:create_app()"

bind = f"0.0.0.0:{_env_int('PORT', 5002)}"

# Assessment steps are short DB transactions; gthread keeps a worker responsive during certificate uploads.
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "gthread").strip() or "gthread"

workers = max(1, _env_int("WEB_CONCURRENCY", 2))
threads = max(1, _env_int("PYTHON_THREADS", 4))

# Off by default: create_app() seeds the task catalog and must reach the DB.
preload_app = _env_bool("GUNICORN_PRELOAD_APP", False)

timeout = max(10, _env_int("GUNICORN_TIMEOUT", 60))
graceful_timeout = max(5, _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = max(1, _env_int("GUNICORN_KEEPALIVE", 30))

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info").strip().lower()

max_requests = max(0, _env_int("GUNICORN_MAX_REQUESTS", 1000))
max_requests_jitter = max(0, _env_int("GUNICORN_MAX_REQUESTS_JITTER", 50))
