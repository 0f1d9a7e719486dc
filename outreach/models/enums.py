from enum import Enum


class JobType(str, Enum):
    OUTBOUND_CALL = "OUTBOUND_CALL"


class CallOutcome(str, Enum):
    MEETING_SCHEDULED = "MEETING_SCHEDULED"
    DECLINED = "DECLINED"
    VOICEMAIL = "VOICEMAIL"
    NO_ANSWER = "NO_ANSWER"
    FAILED = "FAILED"


class CallState(str, Enum):
    INITIALIZING = "INITIALIZING"
    DIALING = "DIALING"
    NAVIGATING_MENU = "NAVIGATING_MENU"
    SPEAKING = "SPEAKING"
    SCHEDULING = "SCHEDULING"
    LEAVING_VOICEMAIL = "LEAVING_VOICEMAIL"
    CLOSING = "CLOSING"
    ENDED = "ENDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.ENDED, CallState.FAILED)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class WorkerState(str, Enum):
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


class CampaignStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobEvent(str, Enum):
    PROGRESS = "JOB_PROGRESS"
    COMPLETED = "JOB_COMPLETED"
    RETRYING = "JOB_RETRYING"
    FAILED = "JOB_FAILED"
