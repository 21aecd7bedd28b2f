from enum import Enum


class DataCategory(str, Enum):
    MINT_ACTIVITY = "MINT_ACTIVITY"
    PROGRAM_INTERACTIONS = "PROGRAM_INTERACTIONS"


class JobStatus(str, Enum):
    active = "active"
    paused = "paused"
    error = "error"
    pending = "pending"


class QueueItemStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    processed = "processed"
    failed = "failed"


class SslMode(str, Enum):
    disable = "disable"
    allow = "allow"
    prefer = "prefer"
    require = "require"
