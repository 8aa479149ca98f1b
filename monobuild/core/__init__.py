from .enums import RunState, RunStatus, FailureKind, PushConflictPolicy, FailurePolicy
from .errors import (
    MonobuildError,
    ConfigurationError,
    HistoryUnavailable,
    RegistryAuthFailure,
    UnitError,
    DescriptorNotFound,
    BuildFailed,
    PushConflict,
    PushFailed,
)
from .models import (
    ServiceDescriptor,
    ChangeSet,
    BuildMatrix,
    BuildDescriptor,
    ImageTags,
    BuiltImage,
    BuildResult,
    PipelineReport,
)
