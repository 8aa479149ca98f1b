"""
Build stage of the pipeline.
Handles change detection, matrix building, Dockerfile resolution and cached image builds.
"""

from .change_detector import ChangeDetector
from .matrix import MatrixBuilder
from .descriptor import (
    BuildDescriptorResolver,
    DescriptorStrategy,
    RootDescriptorStrategy,
    NestedSrcDescriptorStrategy,
)
from .cache import LayerCache, StagingCache, CacheEntryMetadata
from .image_builder import ImageBuilder

__all__ = [
    'ChangeDetector',
    'MatrixBuilder',
    'BuildDescriptorResolver',
    'DescriptorStrategy',
    'RootDescriptorStrategy',
    'NestedSrcDescriptorStrategy',
    'LayerCache',
    'StagingCache',
    'CacheEntryMetadata',
    'ImageBuilder',
]
