"""
Garbage Collector.

Runs before provisioning, against the route as it stands before this run's
cutover. Virtual nodes of the service that the route no longer sends traffic
to are unused; task sets bound to any of the service's nodes off the route
are deleted first, then the unused nodes themselves. Every delete is best-effort.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .. import aws
from ..aws import AwsClients
from ..spec import DeploymentSpec
from .lookup import ResourceLookup, weighted_targets

logger = logging.getLogger(__name__)


@dataclass
class CollectionPlan:
    """What a collection pass would delete."""
    used_nodes: List[str] = field(default_factory=list)
    unused_nodes: List[str] = field(default_factory=list)
    task_sets: List[Dict[str, Any]] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "used_nodes": self.used_nodes,
            "unused_nodes": self.unused_nodes,
            "task_sets": [ts.get("taskSetArn") for ts in self.task_sets],
            "skipped": self.skipped,
        }


@dataclass
class CollectionReport:
    """What a collection pass actually deleted."""
    plan: CollectionPlan
    deleted_task_sets: List[str] = field(default_factory=list)
    deleted_nodes: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


class GarbageCollector:
    """
    Reclaims mesh nodes and task sets left behind by earlier cutovers.

    Usage:
        collector = GarbageCollector(clients, spec)
        plan = await collector.plan()      # dry run
        report = await collector.collect()
    """

    def __init__(self, clients: AwsClients, spec: DeploymentSpec, lookup: Optional[ResourceLookup] = None):
        self.clients = clients
        self.spec = spec
        self.lookup = lookup or ResourceLookup(clients, spec)

    async def list_nodes(self) -> List[str]:
        """Names of the mesh's virtual nodes generated for this service."""
        nodes = await aws.paginate(
            self.clients.appmesh, "list_virtual_nodes", "virtualNodes",
            meshName=self.spec.mesh_name,
        )
        pattern = self.spec.node_name_pattern
        return [n["virtualNodeName"] for n in nodes if pattern.match(n.get("virtualNodeName", ""))]

    async def bound_node(self, task_set: Dict[str, Any]) -> Optional[str]:
        """
        The mesh node a task set serves.

        Task sets created by this tool carry it in their externalId; older ones
        are identified through the sidecar environment of their task definition.
        """
        node_name = self.spec.node_from_external_id(task_set.get("externalId"))
        if node_name:
            return node_name

        if not task_set.get("taskDefinition"):
            return None
        try:
            response = await aws.call(
                self.clients.ecs, "describe_task_definition",
                taskDefinition=task_set["taskDefinition"],
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Cannot inspect {task_set['taskDefinition']}: {e}")
            return None
        containers = (response.get("taskDefinition") or {}).get("containerDefinitions") or []
        sidecar = next((c for c in containers if c.get("name") == self.spec.sidecar_container), None)
        if not sidecar:
            logger.warning(f"Missing {self.spec.sidecar_container} container definition")
            return None

        env = next(
            (e for e in sidecar.get("environment") or [] if e.get("name") == self.spec.node_env_var),
            None,
        )
        if not env:
            logger.warning(f"Missing env with {self.spec.node_env_var}")
            return None

        prefix = self.spec.node_path("")
        value = env.get("value") or ""
        if not value.startswith(prefix):
            return None
        return value[len(prefix):]

    async def plan(self) -> CollectionPlan:
        """Partition nodes into used/unused and select task sets to delete."""
        node_names = await self.list_nodes()

        route = await self.lookup.describe_route()
        live = {t.get("virtualNode") for t in weighted_targets(route) if t.get("weight", 0) > 0}
        if not live:
            logger.warning("Missing valid weightedTargets, skipping cleanup")
            return CollectionPlan(skipped=True)

        plan = CollectionPlan(
            used_nodes=[n for n in node_names if n in live],
            unused_nodes=[n for n in node_names if n not in live],
        )
        logger.info(f"Used virtual nodes: {plan.used_nodes}")
        logger.info(f"Unused virtual nodes: {plan.unused_nodes}")

        service = await self.lookup.find_service()
        task_sets = (service or {}).get("taskSets") or []
        if not task_sets:
            logger.warning("Missing taskSets")

        # Any generation of this service off the route, including nodes an
        # earlier pass already deleted while their task set delete failed
        pattern = self.spec.node_name_pattern
        for task_set in task_sets:
            node_name = await self.bound_node(task_set)
            if node_name and node_name not in live and pattern.match(node_name):
                plan.task_sets.append(task_set)
            else:
                logger.debug(f"Keeping task set {task_set.get('taskSetArn')} ({node_name})")

        return plan

    async def collect(self) -> CollectionReport:
        """Delete everything the current plan selects, logging and skipping failures."""
        logger.info("Deleting unused resources")
        plan = await self.plan()
        report = CollectionReport(plan=plan)
        if plan.skipped:
            return report

        for task_set in plan.task_sets:
            arn = task_set.get("taskSetArn")
            logger.info(f"Removing task set {arn}")
            try:
                await aws.call(
                    self.clients.ecs, "delete_task_set",
                    cluster=self.spec.cluster_name,
                    service=self.spec.compute_service_name,
                    taskSet=arn,
                    force=True,
                )
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Failed to remove task set {arn}: {e}")
                report.failures.append(arn)
                continue
            report.deleted_task_sets.append(arn)
            logger.info(f"Successfully removed task set {arn}")

        for node_name in plan.unused_nodes:
            logger.info(f"Removing virtual node {node_name}")
            try:
                await aws.call(
                    self.clients.appmesh, "delete_virtual_node",
                    meshName=self.spec.mesh_name,
                    virtualNodeName=node_name,
                )
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Failed to remove virtual node {node_name}: {e}")
                report.failures.append(node_name)
                continue
            report.deleted_nodes.append(node_name)
            logger.info(f"Successfully removed virtual node {node_name}")

        return report
