"""
Builds the work list of services affected by a change set.
"""
import logging

from ..config.path_registry import PathRegistry
from ..core.models import BuildMatrix, ChangeSet


class MatrixBuilder:
    """Intersects detected changes with the path registry"""

    def __init__(self, registry: PathRegistry):
        self.registry = registry
        self.logger = logging.getLogger(__name__)

    def build(self, change_set: ChangeSet) -> BuildMatrix:
        """
        Select the registry entries touched by the change set.

        A service matches only when a changed path starts with its path
        followed by a separator, so ``src/cartservice2/x`` never selects
        ``src/cartservice``. Output follows registry order.

        Args:
            change_set: Paths changed between base and head

        Returns:
            BuildMatrix, possibly empty
        """
        if change_set.base == change_set.head or change_set.is_empty:
            self.logger.info("Detected services: none")
            return BuildMatrix()

        selected = [
            service for service in self.registry
            if any(path.startswith(service.prefix) for path in change_set.changed_paths)
        ]

        matrix = BuildMatrix(services=tuple(selected))
        self.logger.info(f"Detected services: {', '.join(matrix.names()) or 'none'}")
        self.logger.debug(f"Matrix: {matrix.to_json()}")
        return matrix
