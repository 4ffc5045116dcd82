"""
Traffic Switch.

Hard cutover: the route's whole weighted-target list is replaced with the new
virtual node at weight 1. There is no intermediate split.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from .. import aws
from ..aws import AwsClients
from ..errors import ConfigurationError
from ..spec import DeploymentSpec
from .lookup import ResourceLookup, weighted_targets

logger = logging.getLogger(__name__)


class TrafficSwitch:
    """Repoints the App Mesh route of a DeploymentSpec."""

    def __init__(self, clients: AwsClients, spec: DeploymentSpec, lookup: Optional[ResourceLookup] = None):
        self.clients = clients
        self.spec = spec
        self.lookup = lookup or ResourceLookup(clients, spec)

    async def current_targets(self) -> List[Dict[str, Any]]:
        route = await self.lookup.describe_route()
        return weighted_targets(route)

    async def switch(self, node_name: str) -> Dict[str, Any]:
        """Send all traffic to `node_name`; returns the updated route."""
        route = await self.lookup.describe_route()
        if not weighted_targets(route):
            raise ConfigurationError(
                f"No weighted targets found on route '{self.spec.route_name}' "
                f"of router '{self.spec.virtual_router_name}'"
            )

        spec = copy.deepcopy(route["spec"])
        spec["grpcRoute"]["action"]["weightedTargets"] = [
            {"virtualNode": node_name, "weight": 1}
        ]
        request = {
            "meshName": self.spec.mesh_name,
            "virtualRouterName": self.spec.virtual_router_name,
            "routeName": self.spec.route_name,
            "spec": spec,
        }
        logger.info(f"Switching traffic route {self.spec.route_name} to {node_name}")
        logger.debug(f"UpdateRoute request: {request}")
        response = await aws.call(self.clients.appmesh, "update_route", **request)
        logger.info(f"Successfully switched traffic route to {node_name}")
        return response.get("route") or {}
