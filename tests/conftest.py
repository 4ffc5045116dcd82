"""
In-memory stand-ins for the boto3 clients a deployment run uses.

Each fake keeps just enough state to behave like the real service for the
calls meshdeploy makes, and records every call for assertions.
"""

import copy
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

from meshdeploy.aws import AwsClients
from meshdeploy.config import Config, PollConfig
from meshdeploy.deployment import PollPolicy
from meshdeploy.spec import DeploymentSpec

ACCOUNT = "arn:aws:ecs:us-east-1:123456789012"
OLD_NODE = "echo_server-20230101000000"


def client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakePaginator:
    def __init__(self, client, operation):
        self.client = client
        self.operation = operation

    def paginate(self, **kwargs):
        yield getattr(self.client, self.operation)(**kwargs)


class FakeClient:
    """Records calls and raises queued failures per operation."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}

    def _record(self, operation: str, kwargs: Dict[str, Any]) -> None:
        self.calls.append((operation, copy.deepcopy(kwargs)))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def called(self, operation: str) -> List[Dict[str, Any]]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    def fail_next(self, operation: str, error: Exception) -> None:
        self.failures.setdefault(operation, []).append(error)

    def get_paginator(self, operation: str) -> FakePaginator:
        return FakePaginator(self, operation)


class FakeECS(FakeClient):
    def __init__(self):
        super().__init__()
        self.services: Dict[str, Dict[str, Any]] = {}
        self.task_definitions: List[Dict[str, Any]] = []
        self.task_script: List[List[str]] = []
        self.tasks: List[Dict[str, Any]] = []

    # Services

    def describe_services(self, cluster, services):
        self._record("describe_services", {"cluster": cluster, "services": services})
        found = [copy.deepcopy(self.services[n]) for n in services if n in self.services]
        return {"services": found, "failures": []}

    def create_service(self, **kwargs):
        self._record("create_service", kwargs)
        name = kwargs["serviceName"]
        service = dict(kwargs)
        service.update({
            "serviceArn": f"{ACCOUNT}:service/{kwargs['cluster']}/{name}",
            "status": "ACTIVE",
            "taskSets": [],
        })
        self.services[name] = service
        return {"service": copy.deepcopy(service)}

    # Task definitions

    def register_task_definition(self, **kwargs):
        self._record("register_task_definition", kwargs)
        family = kwargs["family"]
        revision = 1 + sum(1 for d in self.task_definitions if d["family"] == family)
        definition = copy.deepcopy(kwargs)
        definition.update({
            "taskDefinitionArn": f"{ACCOUNT}:task-definition/{family}:{revision}",
            "revision": revision,
            "status": "ACTIVE",
            "compatibilities": ["EC2", "FARGATE"],
            "requiresAttributes": [{"name": "com.amazonaws.ecs.capability.docker-remote-api.1.18"}],
        })
        self.task_definitions.append(definition)
        return {"taskDefinition": copy.deepcopy(definition)}

    def list_task_definitions(self, familyPrefix=None, status=None):
        self._record("list_task_definitions", {"familyPrefix": familyPrefix, "status": status})
        arns = [
            d["taskDefinitionArn"] for d in self.task_definitions
            if (not familyPrefix or d["family"].startswith(familyPrefix))
            and (not status or d["status"] == status)
        ]
        return {"taskDefinitionArns": arns}

    def describe_task_definition(self, taskDefinition):
        self._record("describe_task_definition", {"taskDefinition": taskDefinition})
        for definition in self.task_definitions:
            if definition["taskDefinitionArn"] == taskDefinition:
                return {"taskDefinition": copy.deepcopy(definition)}
        raise client_error("ClientException", "DescribeTaskDefinition", "Unable to describe task definition.")

    # Task sets

    def _service_by_arn(self, arn_or_name):
        for service in self.services.values():
            if arn_or_name in (service["serviceArn"], service["serviceName"]):
                return service
        raise client_error("ServiceNotFoundException", "TaskSet")

    def create_task_set(self, **kwargs):
        self._record("create_task_set", kwargs)
        service = self._service_by_arn(kwargs["service"])
        task_set = {
            "taskSetArn": f"{ACCOUNT}:task-set/{kwargs['cluster']}/{service['serviceName']}/ecs-svc/{len(self.calls)}",
            "externalId": kwargs.get("externalId"),
            "taskDefinition": kwargs["taskDefinition"],
            "status": "ACTIVE",
            "networkConfiguration": kwargs.get("networkConfiguration"),
        }
        service["taskSets"].append(task_set)
        return {"taskSet": copy.deepcopy(task_set)}

    def update_service_primary_task_set(self, cluster, service, primaryTaskSet):
        self._record("update_service_primary_task_set", {
            "cluster": cluster, "service": service, "primaryTaskSet": primaryTaskSet,
        })
        svc = self._service_by_arn(service)
        for task_set in svc["taskSets"]:
            task_set["status"] = "PRIMARY" if task_set["taskSetArn"] == primaryTaskSet else "ACTIVE"
        return {"taskSet": {"taskSetArn": primaryTaskSet, "status": "PRIMARY"}}

    def delete_task_set(self, cluster, service, taskSet, force=False):
        self._record("delete_task_set", {"cluster": cluster, "service": service, "taskSet": taskSet})
        svc = self._service_by_arn(service)
        svc["taskSets"] = [ts for ts in svc["taskSets"] if ts["taskSetArn"] != taskSet]
        return {"taskSet": {"taskSetArn": taskSet, "status": "DRAINING"}}

    # Tasks

    def list_tasks(self, cluster, serviceName):
        self._record("list_tasks", {"cluster": cluster, "serviceName": serviceName})
        if self.task_script:
            statuses = self.task_script.pop(0) if len(self.task_script) > 1 else self.task_script[0]
            self.tasks = [
                {
                    "taskArn": f"{ACCOUNT}:task/{cluster}/{i}",
                    "taskDefinitionArn": f"{ACCOUNT}:task-definition/echo_server:2",
                    "lastStatus": status,
                }
                for i, status in enumerate(statuses)
            ]
        return {"taskArns": [t["taskArn"] for t in self.tasks]}

    def describe_tasks(self, cluster, tasks):
        self._record("describe_tasks", {"cluster": cluster, "tasks": tasks})
        return {"tasks": [copy.deepcopy(t) for t in self.tasks if t["taskArn"] in tasks]}


class FakeAppMesh(FakeClient):
    def __init__(self):
        super().__init__()
        self.nodes: Dict[str, Dict[str, Any]] = {}
        self.route: Dict[str, Any] = {}

    def list_virtual_nodes(self, meshName):
        self._record("list_virtual_nodes", {"meshName": meshName})
        return {"virtualNodes": [{"meshName": meshName, "virtualNodeName": n} for n in self.nodes]}

    def create_virtual_node(self, meshName, virtualNodeName, spec, tags=None):
        self._record("create_virtual_node", {
            "meshName": meshName, "virtualNodeName": virtualNodeName, "spec": spec, "tags": tags,
        })
        if virtualNodeName in self.nodes:
            raise client_error("ConflictException", "CreateVirtualNode", "Virtual node already exists")
        node = {"meshName": meshName, "virtualNodeName": virtualNodeName, "spec": copy.deepcopy(spec)}
        self.nodes[virtualNodeName] = node
        return {"virtualNode": copy.deepcopy(node)}

    def delete_virtual_node(self, meshName, virtualNodeName):
        self._record("delete_virtual_node", {"meshName": meshName, "virtualNodeName": virtualNodeName})
        if virtualNodeName not in self.nodes:
            raise client_error("NotFoundException", "DeleteVirtualNode")
        return {"virtualNode": self.nodes.pop(virtualNodeName)}

    def describe_route(self, meshName, virtualRouterName, routeName):
        self._record("describe_route", {
            "meshName": meshName, "virtualRouterName": virtualRouterName, "routeName": routeName,
        })
        return {"route": copy.deepcopy(self.route)}

    def update_route(self, meshName, virtualRouterName, routeName, spec):
        self._record("update_route", {
            "meshName": meshName, "virtualRouterName": virtualRouterName,
            "routeName": routeName, "spec": spec,
        })
        self.route["spec"] = copy.deepcopy(spec)
        return {"route": copy.deepcopy(self.route)}

    def live_targets(self) -> List[Dict[str, Any]]:
        return self.route["spec"]["grpcRoute"]["action"]["weightedTargets"]


class FakeServiceDiscovery(FakeClient):
    def __init__(self):
        super().__init__()
        self.namespaces: List[Dict[str, Any]] = []
        self.services: List[Dict[str, Any]] = []
        self.health_script: List[Any] = []

    def list_namespaces(self):
        self._record("list_namespaces", {})
        return {"Namespaces": copy.deepcopy(self.namespaces)}

    def list_services(self, Filters=None):
        self._record("list_services", {"Filters": Filters})
        namespace_ids = set()
        for f in Filters or []:
            if f["Name"] == "NAMESPACE_ID":
                namespace_ids.update(f["Values"])
        return {"Services": [
            copy.deepcopy(s) for s in self.services
            if not namespace_ids or s["NamespaceId"] in namespace_ids
        ]}

    def get_instances_health_status(self, ServiceId, NextToken=None):
        self._record("get_instances_health_status", {"ServiceId": ServiceId})
        step = self.health_script.pop(0) if len(self.health_script) > 1 else self.health_script[0]
        if isinstance(step, Exception):
            raise step
        return {"Status": dict(step)}


class FakeDynamoDB(FakeClient):
    def __init__(self):
        super().__init__()
        self.items: Dict[str, Dict[str, Any]] = {}
        self.before_put = None

    def get_item(self, TableName, Key, ConsistentRead=False):
        self._record("get_item", {"TableName": TableName, "Key": Key})
        item = self.items.get(Key["key"]["S"])
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, TableName, Item, ConditionExpression=None, ExpressionAttributeNames=None):
        self._record("put_item", {
            "TableName": TableName, "Item": Item, "ConditionExpression": ConditionExpression,
        })
        if self.before_put:
            self.before_put()
        key = Item["key"]["S"]
        if ConditionExpression and key in self.items:
            raise client_error("ConditionalCheckFailedException", "PutItem")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def delete_item(self, TableName, Key):
        self._record("delete_item", {"TableName": TableName, "Key": Key})
        self.items.pop(Key["key"]["S"], None)
        return {}


class FakeSSM(FakeClient):
    def __init__(self):
        super().__init__()
        self.parameters: Dict[str, str] = {}

    def put_parameter(self, Name, Value, Type, Overwrite=False):
        self._record("put_parameter", {"Name": Name, "Value": Value, "Type": Type})
        self.parameters[Name] = Value
        return {"Version": 1}


class FakeCodePipeline(FakeClient):
    def put_job_success_result(self, **kwargs):
        self._record("put_job_success_result", kwargs)
        return {}

    def put_job_failure_result(self, **kwargs):
        self._record("put_job_failure_result", kwargs)
        return {}


def make_clients() -> AwsClients:
    return AwsClients(
        ecs=FakeECS(),
        appmesh=FakeAppMesh(),
        servicediscovery=FakeServiceDiscovery(),
        dynamodb=FakeDynamoDB(),
        ssm=FakeSSM(),
        codepipeline=FakeCodePipeline(),
    )


def envoy_definition(family: str, node_path: str) -> Dict[str, Any]:
    """A task definition registration request with an app and an envoy sidecar."""
    return {
        "family": family,
        "networkMode": "awsvpc",
        "requiresCompatibilities": ["FARGATE"],
        "cpu": "256",
        "memory": "512",
        "containerDefinitions": [
            {"name": "app", "image": "echo:latest", "environment": [{"name": "PORT", "value": "8080"}]},
            {
                "name": "envoy",
                "image": "envoy:v1",
                "environment": [
                    {"name": "APPMESH_VIRTUAL_NODE_NAME", "value": node_path},
                    {"name": "ENVOY_LOG_LEVEL", "value": "info"},
                ],
            },
        ],
    }


def seed_world(clients: AwsClients, spec: DeploymentSpec, with_service: bool = True) -> None:
    """
    Seed the fakes with one live generation (OLD_NODE) serving all traffic.
    """
    sd = clients.servicediscovery
    sd.namespaces = [{"Id": "ns-1", "Name": spec.namespace_name}]
    sd.services = [{
        "Id": "srv-1",
        "Arn": "arn:aws:servicediscovery:us-east-1:123456789012:service/srv-1",
        "Name": spec.service_name,
        "NamespaceId": "ns-1",
    }]
    sd.health_script = [{"i-1": "UNHEALTHY"}, {"i-1": "HEALTHY"}]

    ecs = clients.ecs
    definition = ecs.register_task_definition(
        **envoy_definition(spec.task_definition_family, spec.node_path(OLD_NODE))
    )["taskDefinition"]
    ecs.task_script = [["PENDING", "RUNNING"], ["RUNNING", "RUNNING"]]

    if with_service:
        ecs.create_service(
            cluster=spec.cluster_name,
            serviceName=spec.compute_service_name,
            desiredCount=2,
        )
        service = ecs.services[spec.compute_service_name]
        service["taskSets"].append({
            "taskSetArn": f"{ACCOUNT}:task-set/{spec.cluster_name}/old",
            "externalId": spec.external_id(OLD_NODE),
            "taskDefinition": definition["taskDefinitionArn"],
            "status": "PRIMARY",
            "networkConfiguration": {"awsvpcConfiguration": {
                "subnets": ["subnet-a", "subnet-b"],
                "securityGroups": ["sg-1"],
                "assignPublicIp": "DISABLED",
            }},
        })

    mesh = clients.appmesh
    mesh.nodes[OLD_NODE] = {"meshName": spec.mesh_name, "virtualNodeName": OLD_NODE, "spec": {}}
    mesh.route = {
        "meshName": spec.mesh_name,
        "virtualRouterName": spec.virtual_router_name,
        "routeName": spec.route_name,
        "spec": {
            "grpcRoute": {
                "match": {"serviceName": "echo.EchoService"},
                "action": {"weightedTargets": [{"virtualNode": OLD_NODE, "weight": 1}]},
            }
        },
    }

    # Seeding is not part of what the tests observe
    for client in (ecs, mesh, sd):
        client.calls.clear()


@pytest.fixture
def spec() -> DeploymentSpec:
    return DeploymentSpec(
        key="echo_server:prod",
        mesh_name="echo-mesh",
        namespace_name="echo.local",
        service_name="echo_server",
        port=8080,
        virtual_router_name="virtual-router",
        route_name="route",
        cluster_name="echo",
        ecs_service_name="echo_server-service",
        task_definition_family="echo_server",
        private_subnets=["subnet-a", "subnet-b"],
        security_groups=["sg-1"],
        parameter_name="/echo/params/APPMESH_VIRTUAL_NODE_NAME",
    )


@pytest.fixture
def clients() -> AwsClients:
    return make_clients()


@pytest.fixture
def world(clients, spec) -> AwsClients:
    seed_world(clients, spec)
    return clients


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        data_dir=tmp_path,
        lock_table="locks",
        poll=PollConfig(interval=0, backoff=1.0, timeout=None, max_polls=50),
    )


@pytest.fixture
def fast_policy() -> PollPolicy:
    return PollPolicy(interval=0, backoff=1.0, max_polls=50)
