"""
Models for the build-and-publish pipeline domain.
"""
import json
import posixpath
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Any, FrozenSet, Tuple, Iterator

import click

from .enums import RunState, RunStatus, FailureKind


SHORT_REF_LENGTH = 7
STABLE_TAG = "latest"

DOCKER_HUB_HOST = "registry-1.docker.io"
DOCKER_HUB_ALIASES = (DOCKER_HUB_HOST, "docker.io", "index.docker.io")


def registry_host_of(name: str) -> Optional[str]:
    """
    Registry host an image name points at, or None for Docker Hub shorthand.

    The first path segment is a host when it contains a dot or a port, or is
    ``localhost``; ``acme/frontend`` therefore has no host.
    """
    first, _, rest = name.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        return first
    return None


@dataclass(frozen=True)
class ServiceDescriptor:
    """Identity and monorepo location of one independently buildable service"""
    name: str
    path: str

    @classmethod
    def from_path(cls, path: str) -> 'ServiceDescriptor':
        """Create a descriptor whose name is the final segment of path"""
        normalized = posixpath.normpath(path.strip().replace("\\", "/")).rstrip("/")
        if normalized in ("", ".", "/") or normalized.startswith("../"):
            raise ValueError(f"Invalid service path: {path!r}")
        return cls(name=posixpath.basename(normalized), path=normalized)

    @property
    def prefix(self) -> str:
        """Path prefix a changed file must start with to belong to this service"""
        return self.path + "/"

    def to_dict(self) -> Dict[str, str]:
        """Convert to the fan-out matrix entry shape"""
        return {'service': self.path, 'name': self.name}


@dataclass(frozen=True)
class ChangeSet:
    """Paths that differ between two commit references"""
    base: str
    head: str
    changed_paths: FrozenSet[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.changed_paths


@dataclass(frozen=True)
class BuildMatrix:
    """Ordered list of services requiring a build for the current run"""
    services: Tuple[ServiceDescriptor, ...] = ()

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self.services)

    def __len__(self) -> int:
        return len(self.services)

    @property
    def is_empty(self) -> bool:
        return not self.services

    def names(self) -> List[str]:
        return [service.name for service in self.services]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the GitHub Actions matrix shape"""
        return {'include': [service.to_dict() for service in self.services]}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BuildMatrix':
        entries = data.get('include') or []
        services = []
        for entry in entries:
            descriptor = ServiceDescriptor.from_path(entry['service'])
            if entry.get('name') and entry['name'] != descriptor.name:
                descriptor = ServiceDescriptor(name=entry['name'], path=descriptor.path)
            services.append(descriptor)
        return cls(services=tuple(services))

    @classmethod
    def from_json(cls, payload: str) -> 'BuildMatrix':
        return cls.from_dict(json.loads(payload))


@dataclass(frozen=True)
class BuildDescriptor:
    """Resolved Dockerfile location and build context for one service"""
    dockerfile_path: str
    context_path: str


@dataclass(frozen=True)
class ImageTags:
    """Stable and immutable tags for one service image"""
    stable: str
    immutable: str

    @classmethod
    def for_service(cls, namespace: str, service_name: str, head_ref: str) -> 'ImageTags':
        """
        Derive tags from (namespace, service name, head ref) only.

        Args:
            namespace: Registry namespace (e.g. the Docker Hub user)
            service_name: Service name, used as the repository name
            head_ref: Full head commit reference

        Returns:
            ImageTags with ``latest`` and the short commit tag
        """
        if not namespace:
            raise ValueError("Registry namespace is not configured")
        if len(head_ref) < SHORT_REF_LENGTH:
            raise ValueError(f"Head ref too short to derive a tag: {head_ref!r}")
        repository = f"{namespace}/{service_name}"
        return cls(
            stable=f"{repository}:{STABLE_TAG}",
            immutable=f"{repository}:{head_ref[:SHORT_REF_LENGTH]}",
        )

    def as_set(self) -> FrozenSet[str]:
        return frozenset((self.stable, self.immutable))

    def as_list(self) -> List[str]:
        return [self.stable, self.immutable]


@dataclass(frozen=True)
class BuiltImage:
    """Image produced by ImageBuilder, ready for publishing"""
    service: ServiceDescriptor
    tags: ImageTags
    digest: Optional[str] = None


@dataclass
class BuildResult:
    """Result of one service's build unit"""
    service: ServiceDescriptor
    success: bool
    tags: List[str] = field(default_factory=list)
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    digest: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        data = asdict(self)
        data['failure_kind'] = self.failure_kind.value if self.failure_kind else None
        return data


@dataclass
class PipelineReport:
    """Aggregated outcome of one pipeline run"""
    base: str
    head: str
    state: RunState = RunState.IDLE
    status: Optional[RunStatus] = None
    matrix: BuildMatrix = field(default_factory=BuildMatrix)
    results: List[BuildResult] = field(default_factory=list)
    error: Optional[str] = None
    transitions: List[str] = field(default_factory=list)

    @property
    def successful(self) -> List[BuildResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[BuildResult]:
        return [r for r in self.results if not r.success]

    @property
    def skipped(self) -> bool:
        return RunState.SKIPPED.value in self.transitions

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome"""
        return {
            RunStatus.SUCCESS: 0,
            RunStatus.PARTIAL_FAILURE: 1,
            RunStatus.ALL_FAILED: 2,
            RunStatus.FAILED: 3,
        }.get(self.status, 3)

    def print_summary(self):
        """Print human-readable summary"""
        click.echo(f"\n{'='*80}")
        click.echo(f"PIPELINE REPORT {self.base[:7] or '-'}..{self.head[:7]}")
        click.echo(f"{'='*80}")

        if self.error:
            click.echo(f"❌ Run aborted: {self.error}")
            click.echo(f"{'='*80}\n")
            return

        if self.matrix.is_empty:
            click.echo("⏭️  No watched service changed, nothing to build")
            click.echo(f"{'='*80}\n")
            return

        click.echo(f"✅ Built and pushed: {len(self.successful)} service(s)")
        for result in self.successful:
            click.echo(f"   - {result.service.name}: {', '.join(result.tags)}")
            for warning in result.warnings:
                click.echo(f"     ⚠️  {warning}")

        if self.failed:
            click.echo(f"\n❌ Failed: {len(self.failed)} service(s)")
            for result in self.failed:
                kind = result.failure_kind.value if result.failure_kind else "unknown"
                click.echo(f"   - {result.service.name} [{kind}]: {result.error}")

        click.echo(f"\nStatus: {self.status.value if self.status else 'unknown'}")
        click.echo(f"{'='*80}\n")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            'base': self.base,
            'head': self.head,
            'state': self.state.value,
            'status': self.status.value if self.status else None,
            'matrix': self.matrix.to_dict(),
            'results': [r.to_dict() for r in self.results],
            'error': self.error,
            'transitions': list(self.transitions),
        }
