import os

# Scans, blocks, sessions and rate windows live in the shared store; more
# than one worker needs REDIS_URL, otherwise each keeps its own memory store.
wsgi_app = "passport_scan:create_app()"
workers = int(os.environ.get("WEB_CONCURRENCY", "1"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
worker_class = "gthread"
preload_app = True
bind = ":" + os.environ.get("PORT", "8000")
# Heroku/Render style proxy headers
forwarded_allow_ips = "*"
timeout = 60
keepalive = 75
# Access logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
