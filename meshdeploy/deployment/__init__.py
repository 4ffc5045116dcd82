"""
Blue/green deployment of gRPC services on ECS behind App Mesh.

Key Features:
- Per-key locking so two runs never cut over the same service at once
- Cleanup of mesh nodes and task sets the live route no longer uses
- Health gating on ECS task status and Cloud Map instance health
- Hard 100% cutover of the mesh route to the new generation
"""

from .lock import LockManager
from .lookup import ResourceLookup
from .provisioner import ResourceProvisioner, mesh_node_name
from .health import HealthGate, PollPolicy
from .traffic import TrafficSwitch
from .collector import GarbageCollector, CollectionPlan, CollectionReport
from .pipeline import PipelineReporter
from .orchestrator import (
    Orchestrator,
    DeploymentState,
    DeploymentResult,
    DeployOptions,
    deploy,
)

__all__ = [
    # Lock
    "LockManager",
    # Provisioning
    "ResourceLookup",
    "ResourceProvisioner",
    "mesh_node_name",
    # Health
    "HealthGate",
    "PollPolicy",
    # Traffic
    "TrafficSwitch",
    # Cleanup
    "GarbageCollector",
    "CollectionPlan",
    "CollectionReport",
    # Orchestration
    "PipelineReporter",
    "Orchestrator",
    "DeploymentState",
    "DeploymentResult",
    "DeployOptions",
    "deploy",
]
