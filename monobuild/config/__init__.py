from .global_config_loader import GlobalConfig, load_global_config
from .path_registry import PathRegistry
