"""Constants and enums for the flow engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    EXPIRED = "EXPIRED"

    @classmethod
    def active(cls) -> tuple["ExecutionStatus", ...]:
        return (cls.RUNNING, cls.WAITING)

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR, ExecutionStatus.EXPIRED)


class NodeType(str, Enum):
    """Workflow node kinds understood by the executor."""

    TRIGGER_MESSAGE = "TRIGGER_MESSAGE"
    TRIGGER_SCHEDULE = "TRIGGER_SCHEDULE"
    TRIGGER_MANUAL = "TRIGGER_MANUAL"
    SEND_MESSAGE = "SEND_MESSAGE"
    SEND_MEDIA = "SEND_MEDIA"
    SEND_BUTTONS = "SEND_BUTTONS"
    SEND_LIST = "SEND_LIST"
    CONDITION = "CONDITION"
    SWITCH = "SWITCH"
    WAIT_REPLY = "WAIT_REPLY"
    WAIT = "WAIT"
    LOOP = "LOOP"
    SET_VARIABLE = "SET_VARIABLE"
    PAYMENT_CONFIRMATION = "PAYMENT_CONFIRMATION"
    END = "END"


TRIGGER_NODE_TYPES = (
    NodeType.TRIGGER_MESSAGE,
    NodeType.TRIGGER_SCHEDULE,
    NodeType.TRIGGER_MANUAL,
)


class EdgeCondition(str, Enum):
    """Well-known edge tags used for branching."""

    TRUE = "true"
    FALSE = "false"
    DEFAULT = "default"
    LOOP = "loop"
    DONE = "done"
    CONFIRMED = "confirmed"


class OnTimeout(str, Enum):
    """What a reply wait does when its timeout elapses."""

    END = "END"
    GOTO_NODE = "GOTO_NODE"


class MatchType(str, Enum):
    """Trigger pattern match modes."""

    EXACT = "exact"
    STARTS_WITH = "starts_with"
    CONTAINS = "contains"
    REGEX = "regex"


class EventType(str, Enum):
    """Execution lifecycle events."""

    STARTED = "execution.started"
    NODE_EXECUTED = "execution.node_executed"
    WAITING = "execution.waiting"
    RESUMED = "execution.resumed"
    COMPLETED = "execution.completed"
    ERROR = "execution.error"
    EXPIRED = "execution.expired"


class LogLevel(str, Enum):
    """Severity for journal entries."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
