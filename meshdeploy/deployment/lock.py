"""
Lock Manager.

One DynamoDB item per deployment key; absence of the item means unlocked.
The write is conditional on the key not existing, so two runs racing past the
initial read cannot both win.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .. import aws
from ..errors import LockConflict

logger = logging.getLogger(__name__)


def _decode(item: Dict[str, Any]) -> Dict[str, str]:
    return {name: value.get("S", "") for name, value in item.items()}


class LockManager:
    """
    Best-effort mutual exclusion per deployment key.

    Usage:
        locks = LockManager(clients.dynamodb, table_name="deploy-locks")
        await locks.acquire("echo_server:prod")
        ...
        await locks.release("echo_server:prod")
    """

    def __init__(self, dynamodb: Any, table_name: str):
        self.dynamodb = dynamodb
        self.table_name = table_name

    def _key(self, key: str) -> Dict[str, Any]:
        return {"key": {"S": key}}

    async def status(self, key: str) -> Optional[Dict[str, str]]:
        """Return the lock record for `key`, or None when unlocked."""
        response = await aws.call(
            self.dynamodb, "get_item",
            TableName=self.table_name,
            Key=self._key(key),
            ConsistentRead=True,
        )
        item = response.get("Item")
        return _decode(item) if item else None

    async def acquire(self, key: str) -> Dict[str, str]:
        """Take the lock or raise LockConflict with the holder's record."""
        existing = await self.status(key)
        if existing:
            raise LockConflict(key, existing)

        comment = f"Began creating at {datetime.now(timezone.utc).isoformat()}"
        logger.info(f"Attempting to lock {key}")
        try:
            await aws.call(
                self.dynamodb, "put_item",
                TableName=self.table_name,
                Item={"key": {"S": key}, "comment": {"S": comment}},
                ConditionExpression="attribute_not_exists(#k)",
                ExpressionAttributeNames={"#k": "key"},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise
            # Lost the race between our read and write
            raise LockConflict(key, await self.status(key)) from e

        logger.info(f"Successfully locked {key}")
        return {"key": key, "comment": comment}

    async def release(self, key: str) -> None:
        """Delete the lock record; a no-op when it is already gone."""
        logger.info(f"Attempting to unlock {key}")
        await aws.call(
            self.dynamodb, "delete_item",
            TableName=self.table_name,
            Key=self._key(key),
        )
        logger.info(f"Successfully unlocked {key}")
