"""
AWS client bundle.

boto3 clients are blocking; every call is pushed to the default executor so a
deployment run stays a single cooperative asyncio task where each API call is
a suspension point.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3

logger = logging.getLogger(__name__)


@dataclass
class AwsClients:
    """The AWS services a deployment run talks to."""
    ecs: Any
    appmesh: Any
    servicediscovery: Any
    dynamodb: Any
    ssm: Any
    codepipeline: Any

    @classmethod
    def create(cls, region: Optional[str] = None, profile: Optional[str] = None) -> "AwsClients":
        """Build clients from the ambient boto3 credential chain."""
        session = boto3.Session(region_name=region, profile_name=profile)
        return cls(
            ecs=session.client("ecs"),
            appmesh=session.client("appmesh"),
            servicediscovery=session.client("servicediscovery"),
            dynamodb=session.client("dynamodb"),
            ssm=session.client("ssm"),
            codepipeline=session.client("codepipeline"),
        )


async def call(client: Any, operation: str, **kwargs) -> Dict[str, Any]:
    """Invoke one API operation without blocking the event loop."""
    method = getattr(client, operation)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(method, **kwargs))


async def paginate(client: Any, operation: str, result_key: str, **kwargs) -> List[Any]:
    """Run a paginated operation to completion and concatenate `result_key`."""

    def _collect() -> List[Any]:
        items: List[Any] = []
        paginator = client.get_paginator(operation)
        for page in paginator.paginate(**kwargs):
            items.extend(page.get(result_key) or [])
        return items

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _collect)
