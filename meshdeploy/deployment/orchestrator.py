"""
Deployment Orchestrator.

One run walks a fixed sequence of states:

    LOCKED -> CLEANED -> SERVICE_ENSURED -> NODE_CREATED -> REVISION_REGISTERED
      -> TASK_SET_PROMOTED -> HEALTH_CONVERGED -> TRAFFIC_SWITCHED
      -> PARAMETER_PUBLISHED -> UNLOCKED

Locking and parameter publishing are optional capabilities. A fatal error
aborts the run where it happens; anything half-provisioned is swept up by the
next run's garbage collection.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .. import aws
from ..aws import AwsClients
from ..config import Config, get_config
from ..spec import DeploymentSpec
from .collector import CollectionReport, GarbageCollector
from .health import HealthGate, PollPolicy
from .lock import LockManager
from .lookup import ResourceLookup
from .pipeline import PipelineReporter
from .provisioner import ResourceProvisioner
from .traffic import TrafficSwitch

logger = logging.getLogger(__name__)


class DeploymentState(Enum):
    """Milestones of a deployment run, in order."""
    PENDING = "pending"
    LOCKED = "locked"
    CLEANED = "cleaned"
    SERVICE_ENSURED = "service_ensured"
    NODE_CREATED = "node_created"
    REVISION_REGISTERED = "revision_registered"
    TASK_SET_PROMOTED = "task_set_promoted"
    HEALTH_CONVERGED = "health_converged"
    TRAFFIC_SWITCHED = "traffic_switched"
    PARAMETER_PUBLISHED = "parameter_published"
    UNLOCKED = "unlocked"


@dataclass
class DeployOptions:
    """Capability flags for a run."""
    use_lock: bool = True
    publish_parameter: bool = True
    discover_network: bool = False
    release_lock_on_failure: bool = False

    @classmethod
    def from_config(cls, config: Config) -> "DeployOptions":
        caps = config.capabilities
        return cls(
            use_lock=caps.use_lock,
            publish_parameter=caps.publish_parameter,
            discover_network=caps.discover_network,
            release_lock_on_failure=caps.release_lock_on_failure,
        )


@dataclass
class DeploymentResult:
    """Outcome of one run."""
    key: str
    states: List[DeploymentState] = field(default_factory=list)
    node_name: Optional[str] = None
    task_definition_arn: Optional[str] = None
    task_set_arn: Optional[str] = None
    cleanup: Optional[CollectionReport] = None
    succeeded: bool = False
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def state(self) -> DeploymentState:
        return self.states[-1] if self.states else DeploymentState.PENDING

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "state": self.state.value,
            "states": [s.value for s in self.states],
            "node_name": self.node_name,
            "task_definition_arn": self.task_definition_arn,
            "task_set_arn": self.task_set_arn,
            "succeeded": self.succeeded,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class Orchestrator:
    """
    Drives one blue/green cutover for a DeploymentSpec.

    Usage:
        orchestrator = Orchestrator(spec, clients)
        result = await orchestrator.run()
    """

    def __init__(
        self,
        spec: DeploymentSpec,
        clients: AwsClients,
        config: Optional[Config] = None,
        options: Optional[DeployOptions] = None,
        policy: Optional[PollPolicy] = None,
        reporter: Optional[PipelineReporter] = None,
        provisioner: Optional[ResourceProvisioner] = None,
    ):
        self.spec = spec
        self.clients = clients
        self.config = config or get_config()
        self.options = options or DeployOptions.from_config(self.config)
        self.reporter = reporter

        lookup = ResourceLookup(clients, spec)
        self.locks = LockManager(clients.dynamodb, self.config.lock_table)
        self.collector = GarbageCollector(clients, spec, lookup)
        self.provisioner = provisioner or ResourceProvisioner(clients, spec, lookup)
        self.gate = HealthGate(
            clients, spec, policy or PollPolicy.from_config(self.config.poll), lookup
        )
        self.switch = TrafficSwitch(clients, spec, lookup)

        # Events
        self.on_state: Optional[Callable[[DeploymentState], None]] = None

    def _advance(self, result: DeploymentResult, state: DeploymentState) -> None:
        result.states.append(state)
        logger.info(f"[{result.key}] {state.value}")
        if self.on_state:
            self.on_state(state)

    async def run(self) -> DeploymentResult:
        """Run the deployment; re-raises the first fatal error after reporting it."""
        spec = self.spec
        result = DeploymentResult(key=spec.lock_key)
        locked = False
        logger.info(f"Deploying {spec.service_name} to {spec.cluster_name} ({spec.lock_key})")
        logger.debug(f"Deploy properties: {spec.to_dict()}")

        try:
            if self.options.use_lock:
                await self.locks.acquire(spec.lock_key)
                locked = True
                self._advance(result, DeploymentState.LOCKED)

            result.cleanup = await self.collector.collect()
            self._advance(result, DeploymentState.CLEANED)

            await self.provisioner.ensure_service()
            if self.options.discover_network:
                await self.provisioner.discover_network()
            self._advance(result, DeploymentState.SERVICE_ENSURED)

            node = await self.provisioner.create_mesh_node()
            result.node_name = node["virtualNodeName"]
            self._advance(result, DeploymentState.NODE_CREATED)

            definition = await self.provisioner.register_revision(node)
            result.task_definition_arn = definition.get("taskDefinitionArn")
            self._advance(result, DeploymentState.REVISION_REGISTERED)

            task_set = await self.provisioner.create_task_set(node)
            result.task_set_arn = task_set.get("taskSetArn")
            self._advance(result, DeploymentState.TASK_SET_PROMOTED)

            await self.gate.wait()
            self._advance(result, DeploymentState.HEALTH_CONVERGED)

            await self.switch.switch(result.node_name)
            self._advance(result, DeploymentState.TRAFFIC_SWITCHED)

            if self.options.publish_parameter and spec.parameter_name:
                await self.publish_parameter(result.node_name)
                self._advance(result, DeploymentState.PARAMETER_PUBLISHED)

            if locked:
                await self.locks.release(spec.lock_key)
                locked = False
                self._advance(result, DeploymentState.UNLOCKED)

        except (Exception, asyncio.CancelledError) as e:
            result.error = str(e) or type(e).__name__
            result.completed_at = datetime.now(timezone.utc)
            logger.error(f"Deployment of {spec.lock_key} failed at {result.state.value}: {e}")

            if locked and self.options.release_lock_on_failure:
                await self._release_quietly(spec.lock_key)

            if self.reporter:
                await self._report_failure_quietly(e, result.node_name)
            raise

        result.succeeded = True
        result.completed_at = datetime.now(timezone.utc)
        logger.info(f"Deployment of {spec.lock_key} completed: traffic on {result.node_name}")

        if self.reporter:
            await self.reporter.succeeded(f"Traffic switched to {result.node_name}")
        return result

    async def publish_parameter(self, node_name: str) -> None:
        """Publish the active node path for consumers outside the mesh."""
        value = self.spec.node_path(node_name)
        logger.info(f"Publishing {value} to {self.spec.parameter_name}")
        await aws.call(
            self.clients.ssm, "put_parameter",
            Name=self.spec.parameter_name,
            Value=value,
            Type="String",
            Overwrite=True,
        )

    async def _report_failure_quietly(self, error: BaseException, execution_id: Optional[str]) -> None:
        try:
            await self.reporter.failed(error, execution_id=execution_id)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to report failure to pipeline job {self.reporter.job_id}: {e}")

    async def _release_quietly(self, key: str) -> None:
        try:
            await self.locks.release(key)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to release lock {key} after failure: {e}")


async def deploy(
    spec: DeploymentSpec,
    clients: Optional[AwsClients] = None,
    config: Optional[Config] = None,
    options: Optional[DeployOptions] = None,
    job_id: Optional[str] = None,
) -> DeploymentResult:
    """Deploy `spec` once, optionally reporting to a CodePipeline job."""
    config = config or get_config()
    clients = clients or AwsClients.create(region=config.region, profile=config.profile)
    reporter = PipelineReporter(clients.codepipeline, job_id) if job_id else None
    orchestrator = Orchestrator(spec, clients, config=config, options=options, reporter=reporter)
    return await orchestrator.run()
