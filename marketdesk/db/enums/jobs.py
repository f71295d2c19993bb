"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    MARKETPLACE_POLL = "marketplace_poll"  # Delta sync for one tenant
    MARKETPLACE_BACKFILL = "marketplace_backfill"  # Historical pull for one tenant
    MARKETPLACE_MISSING_ITEMS = "marketplace_missing_items"  # Self-healing item sweep
    OUTBOUND_SEND = "outbound_send"  # Deliver one queued outbound message


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    RETRY = "retry"
    DONE = "done"
    FAILED = "failed"


CLAIMABLE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RETRY.value)
