"""
Health Gate.

Waits for a new task set to converge, in two stages:
1. ECS tasks of the service: wait until some task is not RUNNING (the new
   tasks have appeared), then until every task is RUNNING.
2. Cloud Map instances of the service: the same appear-then-settle wait on
   instances that are not HEALTHY.

Polling follows a PollPolicy. With no timeout and no poll cap the gate waits
forever; cancelling the awaiting task aborts it between polls.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .. import aws
from ..aws import AwsClients
from ..config import PollConfig
from ..errors import HealthTimeout
from ..spec import DeploymentSpec
from .lookup import ResourceLookup

logger = logging.getLogger(__name__)

DESCRIBE_TASKS_BATCH = 100

Probe = Callable[[], Awaitable[int]]


@dataclass
class PollPolicy:
    """Interval, backoff and limits for one convergence wait."""
    interval: float = 5.0
    backoff: float = 1.0
    max_interval: float = 30.0
    timeout: Optional[float] = None
    max_polls: Optional[int] = None

    @classmethod
    def from_config(cls, config: PollConfig) -> "PollPolicy":
        return cls(
            interval=config.interval,
            backoff=config.backoff,
            max_interval=config.max_interval,
            timeout=config.timeout,
            max_polls=config.max_polls,
        )

    def next_interval(self, current: float) -> float:
        return min(current * self.backoff, self.max_interval)


class _Budget:
    """Deadline and poll count shared by every phase of one gate run."""

    def __init__(self, policy: PollPolicy):
        self.policy = policy
        self.polls = 0
        self.deadline = (
            time.monotonic() + policy.timeout if policy.timeout is not None else None
        )

    def check(self, what: str) -> None:
        if self.policy.max_polls is not None and self.polls >= self.policy.max_polls:
            raise HealthTimeout(f"{what}: gave up after {self.polls} polls")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise HealthTimeout(f"{what}: deadline of {self.policy.timeout}s exceeded")

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)


class HealthGate:
    """
    Polls ECS task status and Cloud Map instance health until convergence.

    Usage:
        gate = HealthGate(clients, spec, PollPolicy(timeout=900))
        await gate.wait()
    """

    def __init__(
        self,
        clients: AwsClients,
        spec: DeploymentSpec,
        policy: Optional[PollPolicy] = None,
        lookup: Optional[ResourceLookup] = None,
    ):
        self.clients = clients
        self.spec = spec
        self.policy = policy or PollPolicy()
        self.lookup = lookup or ResourceLookup(clients, spec)

    # ==================== Probes ====================

    async def count_unready_tasks(self) -> int:
        """Number of the service's tasks whose last status is not RUNNING."""
        task_arns: List[str] = await aws.paginate(
            self.clients.ecs, "list_tasks", "taskArns",
            cluster=self.spec.cluster_name,
            serviceName=self.spec.compute_service_name,
        )
        if not task_arns:
            logger.warning(
                f"No tasks found for {self.spec.cluster_name}/{self.spec.compute_service_name}"
            )
            return 0

        tasks: List[Dict[str, Any]] = []
        for start in range(0, len(task_arns), DESCRIBE_TASKS_BATCH):
            response = await aws.call(
                self.clients.ecs, "describe_tasks",
                cluster=self.spec.cluster_name,
                tasks=task_arns[start:start + DESCRIBE_TASKS_BATCH],
            )
            tasks.extend(response.get("tasks") or [])

        states = {
            f"{_arn_id(t.get('taskArn'))}-{_arn_id(t.get('taskDefinitionArn'))}": t.get("lastStatus")
            for t in tasks
        }
        logger.info(f"Tasks: {states}")
        return sum(1 for t in tasks if t.get("lastStatus") != "RUNNING")

    async def count_unhealthy_instances(self, service_id: str) -> int:
        """
        Number of Cloud Map instances not reported HEALTHY.

        A failing lookup counts as zero for this poll.
        """
        status: Dict[str, str] = {}
        kwargs: Dict[str, Any] = {"ServiceId": service_id}
        try:
            while True:
                response = await aws.call(
                    self.clients.servicediscovery, "get_instances_health_status", **kwargs
                )
                status.update(response.get("Status") or {})
                token = response.get("NextToken")
                if not token:
                    break
                kwargs["NextToken"] = token
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Instance health lookup failed, counting as healthy: {e}")
            return 0

        logger.info(f"Instance status: {status}")
        return sum(1 for value in status.values() if value != "HEALTHY")

    # ==================== Convergence ====================

    async def _poll_until(
        self,
        probe: Probe,
        done: Callable[[int], bool],
        waiting_message: str,
        budget: _Budget,
    ) -> None:
        interval = self.policy.interval
        while True:
            budget.check(waiting_message)
            count = await probe()
            budget.polls += 1
            if done(count):
                return

            logger.info(f"{waiting_message} ({count} pending)")
            delay = interval
            remaining = budget.remaining()
            if remaining is not None:
                delay = min(delay, remaining)
            await asyncio.sleep(delay)
            interval = self.policy.next_interval(interval)

    async def converge(self, probe: Probe, subject: str, budget: Optional[_Budget] = None) -> None:
        """Wait for `probe` to report pending units, then for it to drop to zero."""
        budget = budget or _Budget(self.policy)
        await self._poll_until(
            probe, lambda n: n > 0, f"Waiting for unhealthy {subject}", budget
        )
        await self._poll_until(
            probe, lambda n: n == 0, f"Waiting for all unhealthy {subject} to settle", budget
        )

    async def wait(self) -> None:
        """Block until both the tasks and the registry instances have converged."""
        registry = await self.lookup.registry_service()
        budget = _Budget(self.policy)

        await self.converge(self.count_unready_tasks, "tasks", budget)
        logger.info("All tasks are RUNNING")

        await self.converge(
            lambda: self.count_unhealthy_instances(registry["Id"]), "instances", budget
        )
        logger.info("All instances are HEALTHY")


def _arn_id(arn: Optional[str]) -> str:
    return (arn or "").rsplit("/", 1)[-1]
