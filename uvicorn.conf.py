"""Server settings for running the port broker API under uvicorn.

Values are read from the environment so the same file serves local runs
and containers behind a reverse proxy.
"""

import os

app = os.getenv("PORTBROKER_APP", "portbroker.main:app")
host = os.getenv("HOST", "0.0.0.0")
port = int(os.getenv("PORT", "8080"))
workers = int(os.getenv("UVICORN_WORKERS") or os.cpu_count() or 1)

# trust X-Forwarded-* only from the configured proxies
proxy_headers = True
forwarded_allow_ips = os.getenv("FORWARDED_ALLOW_IPS", "127.0.0.1")
timeout_keep_alive = int(os.getenv("UVICORN_KEEPALIVE", "5"))

log_level = os.getenv("LOG_LEVEL", "info").lower()
