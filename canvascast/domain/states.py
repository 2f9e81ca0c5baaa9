from enum import StrEnum, auto


class JobStatus(StrEnum):
    QUEUED = "QUEUED"                  # Created or requeued, waiting for a worker
    CLAIMED = "CLAIMED"                # Leased by a worker, no stage finished yet
    SCRIPTING = "SCRIPTING"
    VOICE_GEN = "VOICE_GEN"
    ALIGNMENT = "ALIGNMENT"
    VISUAL_PLAN = "VISUAL_PLAN"
    IMAGE_GEN = "IMAGE_GEN"
    TIMELINE_BUILD = "TIMELINE_BUILD"
    RENDERING = "RENDERING"
    PACKAGING = "PACKAGING"
    READY = "READY"                    # Completed successfully
    FAILED = "FAILED"                  # Retries exhausted, parked in the DLQ
    CANCELED = "CANCELED"              # User canceled


TERMINAL_STATUSES = frozenset({JobStatus.READY, JobStatus.FAILED, JobStatus.CANCELED})


class JobEvent(StrEnum):
    CREATED = auto()
    CLAIMED = auto()
    RESUMED = auto()
    STEP_COMPLETED = auto()
    FAILED = auto()
    RETRIED = auto()
    DLQ_ROUTED = auto()
    DLQ_RETRIED = auto()
    CANCEL_REQUESTED = auto()
    CANCELED = auto()
    COMPLETED = auto()
    CREDITS_RESERVED = auto()
    CREDITS_REFUNDED = auto()
    CREDITS_SPENT = auto()


class CreditState(StrEnum):
    NONE = auto()        # Nothing reserved (free job or not yet reserved)
    RESERVED = auto()    # Reservation outstanding
    REFUNDED = auto()    # Reservation returned to the user
    SPENT = auto()       # Reservation converted to spend


class LedgerType(StrEnum):
    RESERVE = auto()
    RELEASE = auto()
    REFUND = auto()
    SPEND = auto()
    PURCHASE = auto()
    ADMIN_ADJUST = auto()


class ProjectStatus(StrEnum):
    DRAFT = auto()
    GENERATING = auto()
    READY = auto()
    FAILED = auto()


class ErrorCode(StrEnum):
    INPUT_FETCH = "ERR_INPUT_FETCH"
    SCRIPT_GEN = "ERR_SCRIPT_GEN"
    TTS = "ERR_TTS"
    WHISPER = "ERR_WHISPER"
    VISUAL_PLAN = "ERR_VISUAL_PLAN"
    IMAGE_GEN = "ERR_IMAGE_GEN"
    TIMELINE = "ERR_TIMELINE"
    PREVIEW = "ERR_PREVIEW"
    RENDER = "ERR_RENDER"
    PACKAGING = "ERR_PACKAGING"
    CREDITS = "ERR_CREDITS"
    MODERATION = "ERR_MODERATION"
    UNKNOWN = "ERR_UNKNOWN"
