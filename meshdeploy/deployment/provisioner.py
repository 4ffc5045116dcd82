"""
Resource Provisioner.

Creates the resources of one deployable generation:
- the ECS service (once, externally controlled)
- an App Mesh virtual node named after the service and the current time
- a task definition revision whose sidecar is bound to that node
- a task set running the revision, promoted to primary
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .. import aws
from ..aws import AwsClients
from ..errors import ConfigurationError, DeploymentError
from ..spec import DeploymentSpec
from .lookup import ResourceLookup

logger = logging.getLogger(__name__)

NODE_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

# Listener health check for the gRPC port
HEALTHY_THRESHOLD = 2
UNHEALTHY_THRESHOLD = 3
HEALTH_INTERVAL_MILLIS = 5000
HEALTH_TIMEOUT_MILLIS = 2000

# Server-assigned fields rejected by RegisterTaskDefinition
READ_ONLY_TASK_FIELDS = (
    "status",
    "compatibilities",
    "taskDefinitionArn",
    "requiresAttributes",
    "revision",
    "registeredAt",
    "registeredBy",
    "deregisteredAt",
)

EXTERNAL_ID_ATTRIBUTE = "ECS_TASK_SET_EXTERNAL_ID"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mesh_node_name(service_name: str, now: datetime) -> str:
    """Name of the mesh node for `service_name` created at `now` (second resolution)."""
    return f"{service_name}-{now.strftime(NODE_TIMESTAMP_FORMAT)}"


def bind_sidecar(
    definition: Dict[str, Any],
    sidecar: str,
    env_var: str,
    node_path: str,
) -> Dict[str, Any]:
    """
    Derive a registrable task definition from `definition` with the sidecar
    bound to `node_path`.

    The input is left untouched. Raises ConfigurationError when the sidecar
    container is missing.
    """
    request = copy.deepcopy(definition)
    for name in READ_ONLY_TASK_FIELDS:
        request.pop(name, None)

    containers = request.get("containerDefinitions") or []
    container = next((c for c in containers if c.get("name") == sidecar), None)
    if container is None:
        raise ConfigurationError(f"Missing '{sidecar}' container definition")

    environment = container.setdefault("environment", [])
    for entry in environment:
        if entry.get("name") == env_var:
            entry["value"] = node_path
            break
    else:
        environment.append({"name": env_var, "value": node_path})

    return request


class ResourceProvisioner:
    """
    Provisions the ECS and App Mesh resources for one deployment run.

    Usage:
        provisioner = ResourceProvisioner(clients, spec)
        await provisioner.ensure_service()
        node = await provisioner.create_mesh_node()
        await provisioner.register_revision(node)
        await provisioner.create_task_set(node)
    """

    def __init__(
        self,
        clients: AwsClients,
        spec: DeploymentSpec,
        lookup: Optional[ResourceLookup] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.clients = clients
        self.spec = spec
        self.lookup = lookup or ResourceLookup(clients, spec)
        self.clock = clock

        # Effective network placement; may be replaced by discover_network()
        self.subnets: List[str] = list(spec.private_subnets)
        self.security_groups: List[str] = list(spec.security_groups)

    # ==================== Service ====================

    async def ensure_service(self) -> Dict[str, Any]:
        """Create the ECS service unless an ACTIVE one already exists."""
        service = await self.lookup.find_service()
        if service and service.get("status") == "ACTIVE":
            logger.info(f"Found service '{service.get('serviceArn')}'")
            return service

        if not self.subnets:
            raise ConfigurationError(
                f"Cannot create service '{self.spec.compute_service_name}' without subnets"
            )

        request = {
            "cluster": self.spec.cluster_name,
            "serviceName": self.spec.compute_service_name,
            "desiredCount": len(self.subnets),
            "deploymentConfiguration": {
                "maximumPercent": 200,
                "minimumHealthyPercent": 100,
            },
            "schedulingStrategy": "REPLICA",
            "deploymentController": {"type": "EXTERNAL"},
        }
        logger.info(f"Missing service '{self.spec.compute_service_name}'. Creating...")
        logger.debug(f"CreateService request: {request}")
        response = await aws.call(self.clients.ecs, "create_service", **request)
        service = response.get("service") or {}
        logger.info(f"Successfully created service {service.get('serviceArn')}")
        return service

    async def discover_network(self) -> Tuple[List[str], List[str]]:
        """
        Fill in subnets and security groups from the running service when the
        spec does not pin them.
        """
        if self.subnets and self.security_groups:
            return self.subnets, self.security_groups

        service = await self.lookup.active_service()
        placement = _awsvpc_configuration(service)
        if placement is None:
            raise ConfigurationError(
                f"No network configuration found on service '{self.spec.compute_service_name}'"
            )

        if not self.subnets:
            self.subnets = list(placement.get("subnets") or [])
        if not self.security_groups:
            self.security_groups = list(placement.get("securityGroups") or [])
        logger.info(f"Discovered subnets={self.subnets} security_groups={self.security_groups}")
        return self.subnets, self.security_groups

    # ==================== Mesh node ====================

    async def create_mesh_node(self) -> Dict[str, Any]:
        """Create a new timestamped virtual node bound to the Cloud Map service."""
        # Fail before touching the mesh if discovery is not set up
        await self.lookup.registry_service()

        now = self.clock()
        node_name = mesh_node_name(self.spec.service_name, now)
        port = self.spec.port
        request = {
            "meshName": self.spec.mesh_name,
            "virtualNodeName": node_name,
            "spec": {
                "serviceDiscovery": {
                    "awsCloudMap": {
                        "namespaceName": self.spec.namespace_name,
                        "serviceName": self.spec.service_name,
                        "attributes": [
                            {"key": EXTERNAL_ID_ATTRIBUTE, "value": self.spec.external_id(node_name)},
                        ],
                    }
                },
                "listeners": [
                    {
                        "healthCheck": {
                            "healthyThreshold": HEALTHY_THRESHOLD,
                            "unhealthyThreshold": UNHEALTHY_THRESHOLD,
                            "intervalMillis": HEALTH_INTERVAL_MILLIS,
                            "timeoutMillis": HEALTH_TIMEOUT_MILLIS,
                            "port": port,
                            "protocol": "grpc",
                        },
                        "portMapping": {"port": port, "protocol": "grpc"},
                    }
                ],
            },
            "tags": [
                {"key": "meshdeploy:service", "value": self.spec.service_name},
                {"key": "meshdeploy:created", "value": now.strftime(NODE_TIMESTAMP_FORMAT)},
            ],
        }
        logger.info(f"Creating virtual node {node_name}")
        logger.debug(f"CreateVirtualNode request: {request}")
        response = await aws.call(self.clients.appmesh, "create_virtual_node", **request)
        node = response.get("virtualNode") or {}
        logger.info(f"Successfully created virtual node {node.get('virtualNodeName', node_name)}")
        return node

    # ==================== Task definition ====================

    async def register_revision(self, node: Dict[str, Any]) -> Dict[str, Any]:
        """Register a new revision of the family with the sidecar bound to `node`."""
        node_name = node["virtualNodeName"]
        arn = await self.lookup.latest_task_definition_arn()
        current = await self.lookup.task_definition(arn)

        request = bind_sidecar(
            current,
            sidecar=self.spec.sidecar_container,
            env_var=self.spec.node_env_var,
            node_path=self.spec.node_path(node_name),
        )
        logger.info(f"Registering new task definition from {arn} for {node_name}")
        logger.debug(f"RegisterTaskDefinition request: {request}")
        response = await aws.call(self.clients.ecs, "register_task_definition", **request)
        definition = response.get("taskDefinition")
        if not definition:
            raise DeploymentError("Error while registering new task definition")
        logger.info(f"Successfully registered {definition.get('taskDefinitionArn')}")
        return definition

    # ==================== Task set ====================

    async def create_task_set(self, node: Dict[str, Any]) -> Dict[str, Any]:
        """Create the task set serving `node` and promote it to primary."""
        node_name = node["virtualNodeName"]
        service = await self.lookup.active_service()
        task_definition_arn = await self.lookup.latest_task_definition_arn()
        registry = await self.lookup.registry_service()

        request = {
            "service": service["serviceArn"],
            "cluster": self.spec.cluster_name,
            "externalId": self.spec.external_id(node_name),
            "taskDefinition": task_definition_arn,
            "serviceRegistries": [{"registryArn": registry["Arn"]}],
            "scale": {"unit": "PERCENT", "value": 100.0},
            "launchType": self.spec.launch_type,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": self.subnets,
                    "securityGroups": self.security_groups,
                    "assignPublicIp": "DISABLED",
                }
            },
        }
        logger.info(f"Creating task set {request['externalId']}")
        logger.debug(f"CreateTaskSet request: {request}")
        response = await aws.call(self.clients.ecs, "create_task_set", **request)
        task_set = response.get("taskSet")
        if not task_set:
            raise DeploymentError("Failed to create Task Set")
        logger.info(f"Successfully created task set {task_set.get('taskSetArn')}")

        logger.info(f"Updating primary task set of {service['serviceName']}")
        await aws.call(
            self.clients.ecs, "update_service_primary_task_set",
            cluster=self.spec.cluster_name,
            service=service["serviceName"],
            primaryTaskSet=task_set["taskSetArn"],
        )
        logger.info(f"Primary task set is now {task_set.get('taskSetArn')}")
        return task_set


def _awsvpc_configuration(service: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Network placement of a service, falling back to its primary task set."""
    config = (service.get("networkConfiguration") or {}).get("awsvpcConfiguration")
    if config:
        return config
    for task_set in service.get("taskSets") or []:
        if task_set.get("status") == "PRIMARY":
            config = (task_set.get("networkConfiguration") or {}).get("awsvpcConfiguration")
            if config:
                return config
    return None
