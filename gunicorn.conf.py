"""
Production Server Configuration

Run the pipeline API with Uvicorn workers under Gunicorn. Each worker owns
its own ingestion buffer and enrichment pool; deduplication, locks and
realtime metrics are shared through Redis, so multiple workers require
FAST_STORE_BACKEND=redis.
"""

import os

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.getenv("WORKERS", 2))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
timeout = 120
keepalive = 5
# Leaves room for the final buffer flush and enrichment drain on shutdown
graceful_timeout = int(os.getenv("GRACEFUL_TIMEOUT", 60))

# Process naming
proc_name = "event-analytics-pipeline"

# Server mechanics
daemon = False
pidfile = "/tmp/event-pipeline-gunicorn.pid"

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = None


def worker_int(worker):
    """Called when worker receives INT or QUIT signal."""
    worker.log.info("Worker interrupted, lifespan shutdown will flush pending events")
