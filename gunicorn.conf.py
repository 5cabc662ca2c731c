"""
Gunicorn configuration for the PerfPulse API.

Usage:
    gunicorn perfpulse.main:app -c gunicorn.conf.py

Audits are executed by the queue worker (scripts/run_worker.py), not by
request handlers, so API workers stay short-lived per request.
"""

import multiprocessing
import os

bind = os.getenv("BIND", "0.0.0.0:8000")

workers = int(os.getenv("WEB_CONCURRENCY", str(multiprocessing.cpu_count() * 2 + 1)))
worker_class = "uvicorn.workers.UvicornWorker"

# /internal/run_jobs drains a batch inline; allow a full provider timeout plus margin
timeout = int(os.getenv("GUNICORN_TIMEOUT", "180"))
graceful_timeout = 30
keepalive = 5

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
