import os
import yaml
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, asdict

from ..core.enums import PushConflictPolicy, FailurePolicy
from ..core.errors import ConfigurationError
from ..core.models import DOCKER_HUB_ALIASES, registry_host_of


DEFAULT_SERVICES = [
    "src/frontend",
    "src/cartservice",
    "src/checkoutservice",
    "src/currencyservice",
    "src/emailservice",
    "src/adservice",
    "src/loadgenerator",
    "src/paymentservice",
    "src/productcatalogservice",
    "src/recommendservice",
    "src/shippingservice",
    "src/shoppingassistantservice",
]

DEFAULT_SHARED_PATHS = ["release"]


@dataclass
class RepositoryConfig:
    """Monorepo checkout configuration"""
    root: str = "."
    git_binary: str = "git"
    git_timeout: int = 120


@dataclass
class BuildConfig:
    """Image build configuration"""
    descriptor_file: str = "Dockerfile"
    docker_binary: str = "docker"
    timeout_seconds: int = 1800
    platform: Optional[str] = None
    os_identifier: str = "Linux"
    reproducible: bool = True


@dataclass
class CacheConfig:
    """Layer cache configuration"""
    root: str = "/tmp/.buildx-cache"
    keep_per_service: int = 3


@dataclass
class RegistryConfig:
    """Container registry configuration"""
    host: str = "registry-1.docker.io"
    auth_host: Optional[str] = None  # host used for `docker login`, defaults to Docker Hub
    namespace: Optional[str] = None  # defaults to the registry username
    username_env: str = "DOCKER_USERNAME"
    password_env: str = "CICD_DOCKERHUB"
    push_conflict_policy: str = "fail"  # "fail" | "warn"
    push_retries: int = 3
    retry_backoff_seconds: float = 2.0
    push_timeout_seconds: int = 600
    http_timeout_seconds: float = 10.0
    scheme: str = "https"

    def resolve_credentials(self, environ: Optional[Dict[str, str]] = None) -> Dict[str, Optional[str]]:
        """Read username and secret from the configured environment variables"""
        env = os.environ if environ is None else environ
        return {
            'username': env.get(self.username_env) or None,
            'password': env.get(self.password_env) or None,
        }


@dataclass
class FanoutConfig:
    """Fan-out configuration"""
    max_parallel: int = 0  # 0 means one concurrent unit per matrix entry
    failure_policy: str = "continue"  # "continue" | "halt"


@dataclass
class GlobalConfig:
    """Global configuration for a pipeline run"""
    repository: RepositoryConfig
    build: BuildConfig
    cache: CacheConfig
    registry: RegistryConfig
    fanout: FanoutConfig
    services: List[str] = field(default_factory=lambda: list(DEFAULT_SERVICES))
    shared_paths: List[str] = field(default_factory=lambda: list(DEFAULT_SHARED_PATHS))

    def __post_init__(self):
        self.validate()

    def validate(self):
        """
        Validate enumerated and numeric settings.

        Raises:
            ConfigurationError: If any setting is out of range
        """
        try:
            PushConflictPolicy(self.registry.push_conflict_policy)
        except ValueError:
            raise ConfigurationError(
                f"registry.push_conflict_policy must be one of "
                f"{[p.value for p in PushConflictPolicy]}, got {self.registry.push_conflict_policy!r}"
            )
        try:
            FailurePolicy(self.fanout.failure_policy)
        except ValueError:
            raise ConfigurationError(
                f"fanout.failure_policy must be one of "
                f"{[p.value for p in FailurePolicy]}, got {self.fanout.failure_policy!r}"
            )
        if self.fanout.max_parallel < 0:
            raise ConfigurationError("fanout.max_parallel must be >= 0")
        if self.registry.push_retries < 1:
            raise ConfigurationError("registry.push_retries must be >= 1")
        if self.cache.keep_per_service < 1:
            raise ConfigurationError("cache.keep_per_service must be >= 1")
        if not self.build.descriptor_file:
            raise ConfigurationError("build.descriptor_file must not be empty")
        self._validate_namespace()

    def _validate_namespace(self):
        # pushes go wherever the namespace points, so it must name registry.host
        namespace = self.registry.namespace
        if not namespace:
            return
        namespace_host = registry_host_of(namespace)
        if self.registry.host in DOCKER_HUB_ALIASES:
            if namespace_host is not None and namespace_host not in DOCKER_HUB_ALIASES:
                raise ConfigurationError(
                    f"registry.namespace {namespace!r} points at {namespace_host}, "
                    f"but registry.host is {self.registry.host}"
                )
        elif namespace_host != self.registry.host:
            raise ConfigurationError(
                f"registry.namespace {namespace!r} must start with registry.host "
                f"({self.registry.host}/...)"
            )

    @property
    def push_conflict_policy(self) -> PushConflictPolicy:
        return PushConflictPolicy(self.registry.push_conflict_policy)

    @property
    def failure_policy(self) -> FailurePolicy:
        return FailurePolicy(self.fanout.failure_policy)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GlobalConfig':
        """Create GlobalConfig from dictionary"""
        try:
            return cls(
                repository=RepositoryConfig(**data.get('repository', {})),
                build=BuildConfig(**data.get('build', {})),
                cache=CacheConfig(**data.get('cache', {})),
                registry=RegistryConfig(**data.get('registry', {})),
                fanout=FanoutConfig(**data.get('fanout', {})),
                services=list(data.get('services', DEFAULT_SERVICES)),
                shared_paths=list(data.get('shared_paths', DEFAULT_SHARED_PATHS)),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'GlobalConfig':
        """Load GlobalConfig from YAML file"""
        path = Path(yaml_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {yaml_path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f)

        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {yaml_path}")

        return cls.from_dict(data or {})

    @classmethod
    def default(cls) -> 'GlobalConfig':
        """Return default configuration"""
        return cls(
            repository=RepositoryConfig(),
            build=BuildConfig(),
            cache=CacheConfig(),
            registry=RegistryConfig(),
            fanout=FanoutConfig(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)


def load_global_config(config_path: Optional[str] = None) -> GlobalConfig:
    """
    Load global configuration from YAML file.
    If no path provided, looks for monobuild.yaml in standard locations.
    """
    if config_path:
        return GlobalConfig.from_yaml(config_path)

    search_paths = [
        Path("./monobuild.yaml"),
        Path("./config/monobuild.yaml"),
        Path("/etc/monobuild/monobuild.yaml"),
    ]

    for path in search_paths:
        if path.exists():
            return GlobalConfig.from_yaml(str(path))

    return GlobalConfig.default()
