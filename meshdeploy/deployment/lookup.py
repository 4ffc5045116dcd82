"""
Read-only lookups shared by the deployment components.

Every miss here is an operator problem (a namespace, service or task
definition family that was never created), so it raises ConfigurationError.
"""

import logging
from typing import Any, Dict, List, Optional

from .. import aws
from ..aws import AwsClients
from ..errors import ConfigurationError
from ..spec import DeploymentSpec

logger = logging.getLogger(__name__)


def task_definition_family(arn: str) -> str:
    """Family of a task definition ARN (`...:task-definition/<family>:<rev>`)."""
    name = arn.rsplit("/", 1)[-1]
    return name.rsplit(":", 1)[0]


class ResourceLookup:
    """Resolves the platform resources a DeploymentSpec refers to."""

    def __init__(self, clients: AwsClients, spec: DeploymentSpec):
        self.clients = clients
        self.spec = spec

    async def find_service(self) -> Optional[Dict[str, Any]]:
        """The ECS service, whatever its status, or None if it was never created."""
        response = await aws.call(
            self.clients.ecs, "describe_services",
            cluster=self.spec.cluster_name,
            services=[self.spec.compute_service_name],
        )
        services = response.get("services") or []
        return services[0] if services else None

    async def active_service(self) -> Dict[str, Any]:
        service = await self.find_service()
        if not service or service.get("status") != "ACTIVE":
            raise ConfigurationError(
                f"Missing active service with name '{self.spec.compute_service_name}'. "
                f"Make sure you have this defined"
            )
        return service

    async def latest_task_definition_arn(self) -> str:
        """Latest registered ACTIVE revision whose family matches exactly."""
        family = self.spec.task_definition_family
        arns: List[str] = await aws.paginate(
            self.clients.ecs, "list_task_definitions", "taskDefinitionArns",
            familyPrefix=family,
            status="ACTIVE",
        )
        matches = [arn for arn in arns if task_definition_family(arn) == family]
        if not matches:
            raise ConfigurationError(
                f"Missing Task Def with name '{family}' in ECS. Make sure you have this defined."
            )
        return matches[-1]

    async def task_definition(self, arn: str) -> Dict[str, Any]:
        response = await aws.call(
            self.clients.ecs, "describe_task_definition",
            taskDefinition=arn,
        )
        definition = response.get("taskDefinition")
        if not definition or not definition.get("containerDefinitions"):
            raise ConfigurationError(f"Missing container definition for '{arn}'.")
        return definition

    async def registry_service(self) -> Dict[str, Any]:
        """The Cloud Map service (Id, Arn, Name) backing the mesh node."""
        namespaces = await aws.paginate(
            self.clients.servicediscovery, "list_namespaces", "Namespaces",
        )
        namespace = next(
            (n for n in namespaces if n.get("Name") == self.spec.namespace_name), None
        )
        if not namespace:
            raise ConfigurationError(
                f"Missing namespace '{self.spec.namespace_name}' in ServiceDiscovery. "
                f"Make sure you have it defined in Cloud Map"
            )

        services = await aws.paginate(
            self.clients.servicediscovery, "list_services", "Services",
            Filters=[{"Name": "NAMESPACE_ID", "Condition": "EQ", "Values": [namespace["Id"]]}],
        )
        service = next((s for s in services if s.get("Name") == self.spec.service_name), None)
        if not service or not service.get("Arn"):
            raise ConfigurationError(
                f"Missing service '{self.spec.service_name}' in namespace "
                f"'{self.spec.namespace_name}'. Make sure you have it defined in Cloud Map"
            )
        return service

    async def describe_route(self) -> Dict[str, Any]:
        response = await aws.call(
            self.clients.appmesh, "describe_route",
            meshName=self.spec.mesh_name,
            virtualRouterName=self.spec.virtual_router_name,
            routeName=self.spec.route_name,
        )
        return response.get("route") or {}


def weighted_targets(route: Dict[str, Any]) -> List[Dict[str, Any]]:
    """The gRPC weighted-target list of a described route (may be empty)."""
    action = ((route.get("spec") or {}).get("grpcRoute") or {}).get("action") or {}
    return action.get("weightedTargets") or []
