"""Runtime configuration read from environment variables.

Every value has a development default so the service and the test-suite
can start without any environment. Database connection parameters are
assembled into ``DATABASE_URL`` unless that variable is set explicitly.
"""

import os

DB_HOST = os.getenv("DB_HOST", "portbroker-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "portbroker")
DB_USER = os.getenv("DB_USER", "portbroker_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "portbroker-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
DB_ISOLATION_LEVEL = os.getenv("DB_ISOLATION_LEVEL", "SERIALIZABLE")

# Retry policy for transient storage failures (serialization conflicts,
# deadlocks, lock timeouts). Business-rule failures are never retried.
TX_RETRY_MAX = int(os.getenv("TX_RETRY_MAX", "3"))
TX_RETRY_BACKOFF_BASE = float(os.getenv("TX_RETRY_BACKOFF_BASE", "0.05"))
TX_RETRY_MAX_SLEEP = float(os.getenv("TX_RETRY_MAX_SLEEP", "0.5"))

# Seconds to wait for the database at startup
DB_STARTUP_TIMEOUT = float(os.getenv("DB_STARTUP_TIMEOUT", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Request bodies above this size are refused with 413
API_MAX_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))
