"""
Exceptions raised by a deployment run.
"""

from typing import Any, Dict, Optional


class DeploymentError(Exception):
    """Base exception for deployment errors."""
    pass


class ConfigurationError(DeploymentError):
    """A referenced resource is missing or misconfigured; needs an operator."""
    pass


class LockConflict(DeploymentError):
    """Another run holds the lock for this deployment key."""

    def __init__(self, key: str, record: Optional[Dict[str, Any]] = None):
        self.key = key
        self.record = record or {}
        super().__init__(f"Deployment key '{key}' is already locked: {self.record}")


class HealthTimeout(DeploymentError):
    """Health gate did not converge within its deadline or poll budget."""
    pass
