"""
envlet: deploy Puppetfile module trees from Git and the Forge into environments.
"""

__version__ = "0.1.0"

from .interfaces.api import EnvironmentDeployer  # noqa: E402

__all__ = ["EnvironmentDeployer", "__version__"]
