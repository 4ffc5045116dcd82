"""
Deployment specs and the table of known environments.

A DeploymentSpec describes one gRPC service running on ECS behind App Mesh.
Specs arrive either inline (JSON/YAML payload, camelCase or snake_case keys)
or by name from an environments file:

    environments:
      echo_server:prod:
        mesh_name: echo-mesh
        cluster_name: echo
        ...
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SIDECAR_CONTAINER = "envoy"
DEFAULT_NODE_ENV_VAR = "APPMESH_VIRTUAL_NODE_NAME"
TASK_SET_SUFFIX = "-task-set"


class DeploymentSpec(BaseModel):
    """Immutable description of one deployable service."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    key: Optional[str] = Field(default=None, description="Lock key for this deployment")
    mesh_name: str = Field(..., alias="meshName", min_length=1)
    namespace_name: str = Field(..., alias="namespaceName", min_length=1)
    service_name: str = Field(..., alias="serviceName", min_length=1)
    port: int = Field(..., ge=1, le=65535)
    virtual_router_name: str = Field(..., alias="virtualRouterName", min_length=1)
    route_name: str = Field(..., alias="routeName", min_length=1)
    cluster_name: str = Field(..., alias="clusterName", min_length=1)
    ecs_service_name: Optional[str] = Field(default=None, alias="ecsServiceName")
    task_definition_family: str = Field(..., alias="taskDefinitionName", min_length=1)
    private_subnets: List[str] = Field(default_factory=list, alias="privateSubnets")
    security_groups: List[str] = Field(default_factory=list, alias="securityGroups")
    parameter_name: Optional[str] = Field(default=None, alias="virtualNodeSSMParameterName")
    sidecar_container: str = Field(default=DEFAULT_SIDECAR_CONTAINER, alias="sidecarContainerName")
    node_env_var: str = Field(default=DEFAULT_NODE_ENV_VAR, alias="nodeEnvVar")
    launch_type: str = Field(default="FARGATE", alias="launchType")

    @field_validator("private_subnets", "security_groups")
    @classmethod
    def _no_blank_ids(cls, value: List[str]) -> List[str]:
        if any(not item for item in value):
            raise ValueError("network identifiers must be non-empty")
        return value

    @property
    def lock_key(self) -> str:
        """Key used for locking; derived when the spec does not set one."""
        return self.key or f"{self.service_name}:{self.cluster_name}"

    @property
    def compute_service_name(self) -> str:
        """Service name as known to ECS."""
        return self.ecs_service_name or self.service_name

    @property
    def node_name_pattern(self) -> "re.Pattern[str]":
        return re.compile(rf"^{re.escape(self.service_name)}-([0-9]+)$")

    def node_path(self, node_name: str) -> str:
        """Qualified path the sidecar uses to identify itself to the mesh."""
        return f"mesh/{self.mesh_name}/virtualNode/{node_name}"

    def external_id(self, node_name: str) -> str:
        return f"{node_name}{TASK_SET_SUFFIX}"

    def node_from_external_id(self, external_id: Optional[str]) -> Optional[str]:
        """Recover the mesh node name a task set was created for."""
        if not external_id or not external_id.endswith(TASK_SET_SUFFIX):
            return None
        node_name = external_id[: -len(TASK_SET_SUFFIX)]
        if not self.node_name_pattern.match(node_name):
            return None
        return node_name

    def to_dict(self) -> dict:
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentSpec":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid deployment spec: {e}") from e

    @classmethod
    def from_file(cls, path: Path) -> "DeploymentSpec":
        """Load an inline spec from a JSON or YAML file."""
        text = Path(path).read_text()
        if Path(path).suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ConfigurationError(f"Spec file {path} does not contain a mapping")
        return cls.from_dict(data)


class EnvironmentTable:
    """
    Static table of known deployment specs, keyed by environment name.

    Usage:
        table = EnvironmentTable.load(Path("environments.yaml"))
        spec = table.get("echo_server:prod")
    """

    def __init__(self, specs: Optional[Dict[str, DeploymentSpec]] = None):
        self._specs: Dict[str, DeploymentSpec] = dict(specs or {})

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def names(self) -> List[str]:
        return sorted(self._specs)

    def get(self, name: str) -> DeploymentSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise ConfigurationError(
                f"Unknown environment '{name}'. Known: {', '.join(self.names()) or 'none'}"
            )
        return spec

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentTable":
        specs = {}
        for name, entry in (data.get("environments") or {}).items():
            entry = dict(entry or {})
            # The table name doubles as the lock key unless overridden
            entry.setdefault("key", name)
            specs[name] = DeploymentSpec.from_dict(entry)
        return cls(specs)

    @classmethod
    def load(cls, path: Path) -> "EnvironmentTable":
        path = Path(path)
        if not path.exists():
            logger.debug(f"No environments file at {path}")
            return cls()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        table = cls.from_dict(data)
        logger.debug(f"Loaded {len(table)} environments from {path}")
        return table
