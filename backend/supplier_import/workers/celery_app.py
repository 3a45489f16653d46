"""Celery application for background supplier imports."""

import ssl

from celery import Celery

from supplier_import.core.config import get_settings
from supplier_import.utils.redis_client import MANAGED_TLS_HOSTS, uses_tls

settings = get_settings()


def _broker_url(url: str) -> str:
    """Switch managed hosts to TLS and pass ``ssl_cert_reqs`` in the URL.

    The Redis result backend reads SSL options while it is constructed, so
    they have to be in the URL rather than only in ``conf``.
    """
    if url.startswith("redis://") and any(host in url for host in MANAGED_TLS_HOSTS):
        url = url.replace("redis://", "rediss://", 1)
    if uses_tls(url) and "ssl_cert_reqs" not in url:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}ssl_cert_reqs=none"
    return url


broker_url = _broker_url(settings.celery_broker_url or settings.redis_url)
backend_url = _broker_url(settings.celery_result_url or settings.redis_url)
is_ssl = uses_tls(broker_url) or uses_tls(backend_url)

celery_app = Celery(
    "supplier_import",
    broker=broker_url,
    backend=backend_url,
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,
    "task_time_limit": 3600,
    "task_soft_time_limit": 3300,
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    "task_default_queue": "imports",
    "task_routes": {
        "supplier_import.workers.tasks.run_chunked_import": {"queue": "imports"},
        "supplier_import.workers.tasks.import_supplier_file": {"queue": "imports"},
    },
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)

celery_app.autodiscover_tasks(["supplier_import.workers.tasks"])

# Tasks register through the decorator; import so the worker sees them.
from supplier_import.workers.tasks import import_jobs  # noqa: E402,F401
