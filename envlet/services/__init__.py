from .materializer import Materializer, create_or_purge_dir, purge_path
from .forge_api import ForgeAPIClient, ModuleQuery
from .forge_cache import ForgeCacheManager
from .git import GitMirrorService
from .environments import Environment, EnvironmentDriver

__all__ = [
    "Materializer",
    "create_or_purge_dir",
    "purge_path",
    "ForgeAPIClient",
    "ModuleQuery",
    "ForgeCacheManager",
    "GitMirrorService",
    "Environment",
    "EnvironmentDriver",
]
