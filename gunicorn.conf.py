"""
Production Server Configuration

Uvicorn workers under Gunicorn. Each worker runs its own reservation sweeper;
the sweep is idempotent so concurrent sweepers only compete for the same
compare-and-swap steps.
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("BIND", f"0.0.0.0:{os.getenv('API_PORT', '8000')}")
backlog = 2048

# Worker processes
workers = int(os.getenv("API_WORKERS", multiprocessing.cpu_count() * 2 + 1))
if os.getenv("STORAGE_BACKEND", "sql").lower() == "memory":
    # In-memory state is per process
    workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
# Webhook providers time out around 10-30s; fail fast so they redeliver
timeout = 30
keepalive = 5
graceful_timeout = 30

# Process naming
proc_name = "checkout-inventory-core"

# Server mechanics
daemon = False
pidfile = os.getenv("GUNICORN_PIDFILE", "/tmp/checkout-core.pid")

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = "-"
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)sus req=%({x-request-id}o)s'


def when_ready(server):
    server.log.info("checkout-inventory-core ready on %s with %s workers", bind, workers)


def worker_abort(worker):
    worker.log.warning("worker %s aborted (request exceeded %ss)", worker.pid, timeout)
