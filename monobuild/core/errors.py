"""
Error taxonomy for pipeline runs.

Run-level errors abort before any build unit is spawned. Unit-level errors
carry the service they belong to and only fail that unit's BuildResult.
"""
from __future__ import annotations

from typing import Optional

from .enums import FailureKind


class MonobuildError(Exception):
    """Base exception for every pipeline failure."""


class ConfigurationError(MonobuildError):
    """Raised when configuration or registry credentials are missing or invalid."""


class HistoryUnavailable(MonobuildError):
    """Raised when the repository history needed to diff two refs is not available."""


class RegistryAuthFailure(MonobuildError):
    """Raised when the registry rejects the configured credentials."""


class UnitError(MonobuildError):
    """Base class for failures that are contained to one service's build unit."""

    kind: FailureKind = FailureKind.INTERNAL_ERROR

    def __init__(self, service: str, message: str):
        super().__init__(message)
        self.service = service
        self.message = message

    def __str__(self) -> str:
        return f"{self.service}: {self.message}"


class DescriptorNotFound(UnitError):
    kind = FailureKind.DESCRIPTOR_NOT_FOUND

    def __init__(self, service: str, searched: Optional[list] = None):
        self.searched = list(searched or [])
        locations = ", ".join(self.searched) if self.searched else "no locations"
        super().__init__(service, f"Dockerfile not found (searched: {locations})")


class BuildFailed(UnitError):
    kind = FailureKind.BUILD_FAILED

    def __init__(self, service: str, cause: str):
        self.cause = cause
        super().__init__(service, f"image build failed: {cause}")


class PushConflict(UnitError):
    """The immutable tag already points at a different image in the registry."""

    kind = FailureKind.PUSH_CONFLICT

    def __init__(
        self,
        service: str,
        tag: str,
        remote_digest: Optional[str] = None,
        local_digest: Optional[str] = None,
    ):
        self.tag = tag
        self.remote_digest = remote_digest
        self.local_digest = local_digest
        super().__init__(
            service,
            f"tag {tag} already exists with digest {remote_digest}, "
            f"refusing to overwrite with {local_digest}",
        )


class PushFailed(UnitError):
    kind = FailureKind.PUSH_FAILED

    def __init__(self, service: str, tag: str, cause: str):
        self.tag = tag
        self.cause = cause
        super().__init__(service, f"push of {tag} failed: {cause}")
