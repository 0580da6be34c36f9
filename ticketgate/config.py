import os


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


# ----------------------------
# Database
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./ticketgate.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
# 0 -> follow the pool size
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0"))

# ----------------------------
# Ticket codes
# ----------------------------
TICKET_CODE_SECRET = os.environ.get(
    "TICKET_CODE_SECRET", "dev-ticket-secret-change-me"
)
TICKET_CODE_PREFIX = os.environ.get("TICKET_CODE_PREFIX", "ENX")

# ----------------------------
# Reservations
# ----------------------------
CHECKOUT_SESSION_TTL_SECONDS = int(
    os.getenv("CHECKOUT_SESSION_TTL_SECONDS", str(30 * 60))
)
# an unpaid reservation gives its unit back once the checkout session
# it was created for can no longer complete
RESERVATION_TTL_SECONDS = int(
    os.getenv("RESERVATION_TTL_SECONDS", str(CHECKOUT_SESSION_TTL_SECONDS))
)

# ----------------------------
# Check-in
# ----------------------------
SCAN_GRACE_SECONDS = int(os.getenv("SCAN_GRACE_SECONDS", str(24 * 3600)))

# ----------------------------
# Payouts & refunds
# ----------------------------
PAYOUT_GRACE_SECONDS = int(os.getenv("PAYOUT_GRACE_SECONDS", str(2 * 24 * 3600)))
PAYOUT_MAX_REFUND_RATE = float(os.getenv("PAYOUT_MAX_REFUND_RATE", "0.2"))
# a sweeper that claimed a payout and did not finish it within this window is
# presumed dead; the payout can be claimed again
PAYOUT_CLAIM_LEASE_SECONDS = int(os.getenv("PAYOUT_CLAIM_LEASE_SECONDS", "900"))

# platform commission by organizer subscription tier
COMMISSION_RATES = {
    "free": 0.05,
    "pro": 0.03,
    "premium": 0.025,
    "enterprise": 0.015,
}

# (min days before event start, refund percent), checked top-down
REFUND_POLICY = (
    (7, 100),
    (3, 50),
)

# ----------------------------
# Background sweeps
# ----------------------------
SWEEPS_ENABLED = _env_bool("SWEEPS_ENABLED", "1")
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "200"))

# ----------------------------
# Payment processor (mock) & notifications
# ----------------------------
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
NOTIFY_URL = os.environ.get("NOTIFY_URL", "")

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "dev-admin-token")

# 'sql' | 'redis'
WEBHOOK_SEEN_BACKEND = os.getenv("WEBHOOK_SEEN_BACKEND", "sql").lower()
WEBHOOK_SEEN_TTL_SECONDS = int(os.getenv("WEBHOOK_SEEN_TTL_SECONDS", "86400"))
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
