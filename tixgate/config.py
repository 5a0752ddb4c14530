import os

# ----------------------------
# Storage
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./tixgate.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "512"))
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "sql").lower()  # 'sql' | 'redis'

# ----------------------------
# Reconciliation policy
# ----------------------------
# pending orders younger than this are left alone (payment may be in flight)
RECONCILE_GRACE_SECONDS = int(os.getenv("RECONCILE_GRACE_SECONDS", 45 * 60))
# pending orders older than this belong to other cleanup paths
RECONCILE_MAX_AGE_SECONDS = int(
    os.getenv("RECONCILE_MAX_AGE_SECONDS", 24 * 3600)
)
AMOUNT_TOLERANCE_MINOR = int(os.getenv("AMOUNT_TOLERANCE_MINOR", "1"))
WEBHOOK_RETENTION_SECONDS = int(
    os.getenv("WEBHOOK_RETENTION_SECONDS", 30 * 24 * 3600)
)

# ----------------------------
# Contention
# ----------------------------
TRANSIENT_RETRY_ATTEMPTS = int(os.getenv("TRANSIENT_RETRY_ATTEMPTS", "3"))
LOCK_TIMEOUT_MS = int(os.getenv("LOCK_TIMEOUT_MS", "3000"))

# ----------------------------
# Offline scanner
# ----------------------------
OFFLINE_DATABASE_URL = os.environ.get(
    "OFFLINE_DATABASE_URL", "sqlite:///./scan-queue.db"
)
OFFLINE_MAX_SYNC_ATTEMPTS = int(os.getenv("OFFLINE_MAX_SYNC_ATTEMPTS", "10"))
OFFLINE_RETENTION_SECONDS = int(
    os.getenv("OFFLINE_RETENTION_SECONDS", 24 * 3600)
)

# ----------------------------
# Mock payment gateway
# ----------------------------
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
