#!/usr/bin/env python3
"""Start the import worker on the ``imports`` queue."""

import sys
import warnings

# Containers run the worker as root; Celery warns about it on every start.
warnings.filterwarnings("ignore", category=UserWarning, message=".*superuser privileges.*")
warnings.filterwarnings("ignore", category=RuntimeWarning, message=".*superuser privileges.*")

from supplier_import.core.config import get_settings  # noqa: E402
from supplier_import.workers.celery_app import celery_app  # noqa: E402


if __name__ == "__main__":
    settings = get_settings()
    celery_app.worker_main(
        [
            "worker",
            f"--loglevel={settings.log_level.lower()}",
            "--queues=imports",
            "--pool=solo",
            "--without-mingle",
            "--without-gossip",
        ]
        + sys.argv[1:]
    )
