"""
Locates the Dockerfile and build context of a service.
"""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.errors import DescriptorNotFound
from ..core.models import BuildDescriptor, ServiceDescriptor


class DescriptorStrategy(ABC):
    """One candidate layout for a service's build descriptor"""

    @abstractmethod
    def candidate(self, service_dir: Path, descriptor_file: str) -> BuildDescriptor:
        """
        Return the descriptor this layout would use for a service.

        Args:
            service_dir: Absolute path of the service directory
            descriptor_file: Descriptor file name (e.g. ``Dockerfile``)

        Returns:
            BuildDescriptor whose dockerfile may or may not exist
        """
        pass


class RootDescriptorStrategy(DescriptorStrategy):
    """Descriptor at the service root, built with the service root as context"""

    def candidate(self, service_dir: Path, descriptor_file: str) -> BuildDescriptor:
        return BuildDescriptor(
            dockerfile_path=str(service_dir / descriptor_file),
            context_path=str(service_dir),
        )


class NestedSrcDescriptorStrategy(DescriptorStrategy):
    """Descriptor under ``src/``, built with ``src/`` as context"""

    def candidate(self, service_dir: Path, descriptor_file: str) -> BuildDescriptor:
        nested = service_dir / "src"
        return BuildDescriptor(
            dockerfile_path=str(nested / descriptor_file),
            context_path=str(nested),
        )


DEFAULT_STRATEGIES = (RootDescriptorStrategy(), NestedSrcDescriptorStrategy())


class BuildDescriptorResolver:
    """Tries each layout strategy in order; the first existing descriptor wins"""

    def __init__(
        self,
        repo_root: Path,
        descriptor_file: str = "Dockerfile",
        strategies: Optional[Sequence[DescriptorStrategy]] = None
    ):
        self.repo_root = Path(repo_root)
        self.descriptor_file = descriptor_file
        self.strategies: List[DescriptorStrategy] = list(strategies or DEFAULT_STRATEGIES)
        self.logger = logging.getLogger(__name__)

    def resolve(self, service: ServiceDescriptor) -> BuildDescriptor:
        """
        Resolve the build descriptor for a service.

        Raises:
            DescriptorNotFound: If no strategy finds a descriptor file
        """
        service_dir = self.repo_root / service.path
        searched = []

        for strategy in self.strategies:
            descriptor = strategy.candidate(service_dir, self.descriptor_file)
            if Path(descriptor.dockerfile_path).is_file():
                self.logger.info(
                    f"{service.name}: using {self._relative(descriptor.dockerfile_path)} "
                    f"with context {self._relative(descriptor.context_path)}"
                )
                return descriptor
            searched.append(self._relative(descriptor.dockerfile_path))

        self.logger.error(f"❌ {self.descriptor_file} not found for {service.path}")
        raise DescriptorNotFound(service.name, searched)

    def _relative(self, path: str) -> str:
        try:
            return str(Path(path).relative_to(self.repo_root))
        except ValueError:
            return path
