"""
meshdeploy - blue/green cutover for gRPC services on App Mesh

Provisions a new mesh-routed ECS generation, waits for it to become healthy,
moves all traffic to it and reclaims what earlier cutovers left behind.

Example:
    >>> from meshdeploy import DeploymentSpec, deploy
    >>> spec = DeploymentSpec.from_file("echo.yaml")
    >>> result = await deploy(spec)
"""

__version__ = "1.0.0"

from .config import Config, get_config
from .errors import DeploymentError, ConfigurationError, LockConflict, HealthTimeout
from .spec import DeploymentSpec, EnvironmentTable
from .deployment import Orchestrator, DeploymentResult, deploy

__all__ = [
    "__version__",
    "Config",
    "get_config",
    "DeploymentError",
    "ConfigurationError",
    "LockConflict",
    "HealthTimeout",
    "DeploymentSpec",
    "EnvironmentTable",
    "Orchestrator",
    "DeploymentResult",
    "deploy",
]
