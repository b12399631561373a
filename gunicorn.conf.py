# gunicorn.conf.py
import multiprocessing

bind = "0.0.0.0:3000"
# rate-limit counters are per process; keep workers low or move the store out of process
workers = min(4, multiprocessing.cpu_count() + 1)
worker_class = "uvicorn.workers.UvicornWorker"
# above the 30s link-verification deadline plus a slow generation call
timeout = 120
keepalive = 5
loglevel = "info"
accesslog = "-"
errorlog = "-"
