from enum import Enum


class RunState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    MATRIX_COMPUTED = "matrix_computed"
    SKIPPED = "skipped"
    FANNING_OUT = "fanning_out"
    AGGREGATING = "aggregating"
    DONE = "done"


class RunStatus(str, Enum):
    """Final outcome of a pipeline run"""
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ALL_FAILED = "all_failed"
    FAILED = "failed"  # run-level abort, no unit was spawned


class FailureKind(str, Enum):
    DESCRIPTOR_NOT_FOUND = "descriptor_not_found"
    BUILD_FAILED = "build_failed"
    PUSH_CONFLICT = "push_conflict"
    PUSH_FAILED = "push_failed"
    CANCELLED = "cancelled"
    NOT_STARTED = "not_started"
    INTERNAL_ERROR = "internal_error"


class PushConflictPolicy(str, Enum):
    FAIL = "fail"
    WARN = "warn"


class FailurePolicy(str, Enum):
    CONTINUE = "continue"
    HALT = "halt"
