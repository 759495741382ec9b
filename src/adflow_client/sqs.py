"""
Amazon SQS queue adapter.

boto3 is synchronous; every call is pushed to a worker thread with
``asyncio.to_thread`` so the event loop keeps serving other loops while a
worker sits in a 20s long poll.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from adflow.coordinator.types import SQS_BATCH_LIMIT, QueueMessage, WriteResult
from adflow.errors import QueueError, TransientQueueError

# error codes that no amount of retrying will clear
PERMANENT_ERROR_CODES = frozenset(
    {
        "AWS.SimpleQueueService.NonExistentQueue",
        "QueueDoesNotExist",
        "AccessDenied",
        "AccessDeniedException",
        "InvalidClientTokenId",
        "UnrecognizedClientException",
        "ReceiptHandleIsInvalid",
        "InvalidParameterValue",
        "InvalidAddress",
    }
)


def create_sqs_client(
    *, region: Optional[str] = None, endpoint_url: Optional[str] = None, profile: Optional[str] = None
) -> Any:
    """Create a boto3 SQS client (``endpoint_url`` for localstack/elasticmq)."""
    session_kwargs: dict[str, str] = {}
    if profile:
        session_kwargs["profile_name"] = profile
    if region:
        session_kwargs["region_name"] = region
    session = boto3.session.Session(**session_kwargs)
    return session.client("sqs", endpoint_url=endpoint_url)


class SqsQueueClient:
    """QueueClient over one SQS queue URL.

    Example:
        queue = SqsQueueClient(settings.queue_url, client=create_sqs_client(region="eu-west-1"))
        await queue.publish('{"source": "meta", "payload": {}}')
    """

    def __init__(self, queue_url: str, *, client: Any = None, region: Optional[str] = None):
        if not queue_url:
            raise ValueError("queue_url required")
        self.queue_url = queue_url
        self._client = client if client is not None else create_sqs_client(region=region)

    async def _call(self, operation: str, **kwargs: Any) -> dict:
        fn = getattr(self._client, operation)
        try:
            return await asyncio.to_thread(fn, QueueUrl=self.queue_url, **kwargs)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in PERMANENT_ERROR_CODES:
                raise QueueError(f"sqs {operation} failed permanently ({code}): {exc}", cause=exc) from exc
            raise TransientQueueError(f"sqs {operation} failed: {exc}", cause=exc) from exc
        except BotoCoreError as exc:
            raise TransientQueueError(f"sqs {operation} failed: {exc}", cause=exc) from exc

    async def publish(self, body: str) -> str:
        resp = await self._call("send_message", MessageBody=body)
        return resp["MessageId"]

    async def publish_batch(self, bodies: Sequence[str]) -> list[WriteResult]:
        """One SendMessageBatch call; results are returned in input order."""
        if not bodies:
            return []
        if len(bodies) > SQS_BATCH_LIMIT:
            raise ValueError(f"SQS batches are limited to {SQS_BATCH_LIMIT} entries, got {len(bodies)}")

        entries = [{"Id": str(i), "MessageBody": b} for i, b in enumerate(bodies)]
        resp = await self._call("send_message_batch", Entries=entries)

        results: list[WriteResult] = [WriteResult.failed("no result returned by SQS")] * len(bodies)
        for ok in resp.get("Successful", []):
            results[int(ok["Id"])] = WriteResult.ok(ok["MessageId"])
        for bad in resp.get("Failed", []):
            results[int(bad["Id"])] = WriteResult.failed(
                f"{bad.get('Code', 'Unknown')}: {bad.get('Message', '')}".strip()
            )
            logger.warning(
                f"sqs: entry {bad['Id']} rejected ({bad.get('Code')}, "
                f"sender_fault={bad.get('SenderFault')})"
            )
        return results

    async def receive_batch(
        self, max_messages: int, wait_seconds: int, visibility_timeout: int
    ) -> list[QueueMessage]:
        resp = await self._call(
            "receive_message",
            MaxNumberOfMessages=max(1, min(max_messages, SQS_BATCH_LIMIT)),
            WaitTimeSeconds=wait_seconds,
            VisibilityTimeout=visibility_timeout,
            MessageAttributeNames=["All"],
        )
        return [
            QueueMessage(message_id=m["MessageId"], ack_token=m["ReceiptHandle"], body=m["Body"])
            for m in resp.get("Messages", [])
        ]

    async def delete(self, ack_token: str) -> None:
        await self._call("delete_message", ReceiptHandle=ack_token)
