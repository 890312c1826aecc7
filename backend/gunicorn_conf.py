# backend/gunicorn_conf.py

# Gunicorn config file: gunicorn -c gunicorn_conf.py shopchat.main:app

bind = "0.0.0.0:8000"
workers = 2
worker_class = "uvicorn.workers.UvicornWorker"

# Dispatchers are cached per process; a request may land on any worker.
timeout = 120

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = "info"
