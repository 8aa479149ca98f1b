"""
Registry of watched service directories.

The same registry feeds the trigger path filter and the matrix builder so the
two lists cannot drift apart.
"""
import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..core.errors import ConfigurationError
from ..core.models import ServiceDescriptor


class PathRegistry:
    """Ordered mapping of service names to monorepo subtree paths"""

    def __init__(
        self,
        services: Sequence[ServiceDescriptor],
        shared_paths: Optional[Sequence[str]] = None
    ):
        """
        Initialize path registry.

        Args:
            services: Service descriptors in build order
            shared_paths: Extra directories that trigger the pipeline but own no image

        Raises:
            ConfigurationError: If two services share a path or a name
        """
        self.logger = logging.getLogger(__name__)
        self._services: Tuple[ServiceDescriptor, ...] = tuple(services)
        self.shared_paths: Tuple[str, ...] = tuple(
            p.strip().rstrip("/") for p in (shared_paths or []) if p.strip()
        )

        seen_paths: Dict[str, str] = {}
        seen_names: Dict[str, str] = {}
        for service in self._services:
            if service.path in seen_paths:
                raise ConfigurationError(f"Duplicate service path in registry: {service.path}")
            if service.name in seen_names:
                raise ConfigurationError(
                    f"Services {seen_names[service.name]} and {service.path} "
                    f"both map to image name {service.name!r}"
                )
            seen_paths[service.path] = service.name
            seen_names[service.name] = service.path

    @classmethod
    def from_paths(
        cls,
        paths: Sequence[str],
        shared_paths: Optional[Sequence[str]] = None
    ) -> 'PathRegistry':
        """Build a registry from plain directory paths"""
        try:
            services = [ServiceDescriptor.from_path(p) for p in paths]
        except ValueError as e:
            raise ConfigurationError(str(e))
        return cls(services, shared_paths)

    @classmethod
    def from_config(cls, config) -> 'PathRegistry':
        """Build a registry from a GlobalConfig"""
        return cls.from_paths(config.services, config.shared_paths)

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._services)

    def __len__(self) -> int:
        return len(self._services)

    @property
    def services(self) -> Tuple[ServiceDescriptor, ...]:
        return self._services

    def get(self, name_or_path: str) -> Optional[ServiceDescriptor]:
        """Look up a service by name or by path"""
        wanted = name_or_path.rstrip("/")
        for service in self._services:
            if service.name == wanted or service.path == wanted:
                return service
        return None

    def trigger_paths(self) -> List[str]:
        """
        Path filters for the upstream trigger, in registry order.

        Returns:
            Glob patterns such as ``src/frontend/**``
        """
        return [f"{service.path}/**" for service in self._services] + [
            f"{path}/**" for path in self.shared_paths
        ]
