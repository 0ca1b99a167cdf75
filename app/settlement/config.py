"""
Settlement core configuration constants.

Redis keys, retry bounds and batch sizes used by the reconciler,
polling engine and background tasks.
"""

from app.config import settings

# Compare-and-set retries before giving up with ReconcileContention
MAX_CAS_RETRIES = 5

# Redis key prefix for the cross-instance poll lock
POLL_LOCK_PREFIX = "poll:lock:"

# Lock outlives the poll budget by this much so a crashed holder still expires
POLL_LOCK_GRACE_SECONDS = 30

# Sweep — orders not polled within this window are picked up again
SWEEP_STALE_MINUTES = settings.POLL_SWEEP_STALE_MINUTES
SWEEP_BATCH_SIZE = 50

# Webhook replay — how far back failed deliveries are retried automatically
REPLAY_WINDOW_HOURS = 24
REPLAY_BATCH_SIZE = 100
REPLAY_INTERVAL_SECONDS = 600
