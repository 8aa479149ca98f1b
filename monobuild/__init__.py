"""
Monobuild - selective build-and-publish pipeline for service monorepos

Main modules:
- core: Data models, enums and the error taxonomy
- config: Global configuration and the watched-path registry
- build: Change detection, matrix building, Dockerfile resolution, layer cache, image builds
- publish: Registry lookups and image pushes
- orchestrator: Run state machine and parallel fan-out
"""

from .core.models import (
    ServiceDescriptor,
    ChangeSet,
    BuildMatrix,
    BuildDescriptor,
    ImageTags,
    BuildResult,
    PipelineReport,
)
from .config.global_config_loader import GlobalConfig, load_global_config
from .config.path_registry import PathRegistry
from .orchestrator import PipelineOrchestrator

__version__ = "1.0.0"
__all__ = [
    'ServiceDescriptor',
    'ChangeSet',
    'BuildMatrix',
    'BuildDescriptor',
    'ImageTags',
    'BuildResult',
    'PipelineReport',
    'GlobalConfig',
    'load_global_config',
    'PathRegistry',
    'PipelineOrchestrator',
]
