from .registry_client import RegistryClient, RegistryError, split_reference
from .publisher import Publisher
