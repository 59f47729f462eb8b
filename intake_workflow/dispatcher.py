"""Stage dispatcher: MongoDB-backed channels with at-least-once delivery.

Messages live in ``workflow_messages`` until acknowledged. A consumer leases
the next due message with one ``find_one_and_update``; a lease that is never
acked expires and the message becomes claimable again. Retryable failures are
re-queued with exponential backoff, everything else (and anything past
``max_attempts``) is copied to ``dead_letters``.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from intake_workflow.constants import Channel, DeliveryStatus
from intake_workflow.exceptions import DeliveryFailure, RecordNotFound
from intake_workflow.schemas import WorkflowMessage
from intake_workflow.utils import mask_id, utc_now

if TYPE_CHECKING:
    from intake_workflow.stages.base import Stage, StageResult


@dataclass
class Delivery:
    """A leased message; ``attempts`` counts this delivery."""
    message: WorkflowMessage
    attempts: int


class StageDispatcher:
    MESSAGES_COLLECTION = "workflow_messages"
    DEAD_LETTERS_COLLECTION = "dead_letters"

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        max_attempts: int = 5,
        lease_seconds: int = 300,
        publish_timeout_seconds: float = 10,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 300.0,
    ):
        self.db = db
        self.messages = db[self.MESSAGES_COLLECTION]
        self.dead_letters = db[self.DEAD_LETTERS_COLLECTION]
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.publish_timeout_seconds = publish_timeout_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._indexes_ensured = False

    async def ensure_indexes(self):
        if self._indexes_ensured:
            return
        try:
            await self.messages.create_index([("channel", 1), ("status", 1), ("available_at", 1)])
            await self.messages.create_index([("channel", 1), ("status", 1), ("lease_expires_at", 1)])
            await self.messages.create_index("record_id")
            await self.dead_letters.create_index([("channel", 1), ("dead_lettered_at", -1)])
            self._indexes_ensured = True
        except Exception as e:
            logger.warning(f"Dispatcher index creation warning: {e}")

    async def publish(self, channel: str, message: WorkflowMessage) -> str:
        """
        Durably enqueue ``message`` on ``channel``.

        Raises:
            DeliveryFailure: the insert failed or did not finish within the publish timeout
        """
        channel = Channel(channel).value
        if message.channel != channel:
            message = message.model_copy(update={"channel": channel})

        now = utc_now()
        doc = {
            "_id": message.message_id,
            "channel": channel,
            "record_id": message.record_id,
            "correlation_id": message.correlation_id,
            "payload": message.payload,
            "created_at": message.created_at,
            "status": DeliveryStatus.QUEUED.value,
            "attempts": 0,
            "available_at": now,
            "lease_expires_at": None,
            "last_error": None,
        }

        try:
            await asyncio.wait_for(self.messages.insert_one(doc), timeout=self.publish_timeout_seconds)
        except DuplicateKeyError:
            logger.debug(f"Message {message.message_id} already published on {channel}")
            return message.message_id
        except asyncio.TimeoutError as e:
            raise DeliveryFailure(
                f"Publish to {channel} timed out after {self.publish_timeout_seconds}s",
                details={"channel": channel, "record_id": message.record_id},
            ) from e
        except Exception as e:
            raise DeliveryFailure(
                f"Publish to {channel} failed: {e}",
                details={"channel": channel, "record_id": message.record_id},
            ) from e

        logger.debug(f"Published {message.message_id} on {channel} (record {mask_id(message.record_id)})")
        return message.message_id

    async def claim(self, channel: str) -> Optional[Delivery]:
        now = utc_now()
        doc = await self.messages.find_one_and_update(
            {
                "channel": channel,
                "$or": [
                    {"status": DeliveryStatus.QUEUED.value, "available_at": {"$lte": now}},
                    {"status": DeliveryStatus.IN_FLIGHT.value, "lease_expires_at": {"$lte": now}},
                ],
            },
            {
                "$set": {
                    "status": DeliveryStatus.IN_FLIGHT.value,
                    "lease_expires_at": now + timedelta(seconds=self.lease_seconds),
                    "claimed_at": now,
                },
                "$inc": {"attempts": 1},
            },
            sort=[("available_at", 1)],
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None

        message = WorkflowMessage(
            message_id=doc["_id"],
            channel=doc["channel"],
            record_id=doc.get("record_id"),
            correlation_id=doc["correlation_id"],
            payload=doc.get("payload") or {},
            created_at=doc["created_at"],
        )
        return Delivery(message=message, attempts=doc["attempts"])

    def _lease_filter(self, delivery: Delivery) -> Dict[str, Any]:
        # attempts is bumped on every claim, so it identifies the lease this consumer holds
        return {
            "_id": delivery.message.message_id,
            "status": DeliveryStatus.IN_FLIGHT.value,
            "attempts": delivery.attempts,
        }

    def _lease_lost(self, delivery: Delivery, action: str) -> None:
        logger.warning(
            f"Lease on {delivery.message.message_id} (attempt {delivery.attempts}) expired before {action}; "
            f"a newer delivery owns the message"
        )

    async def ack(self, delivery: Delivery) -> bool:
        result = await self.messages.update_one(
            self._lease_filter(delivery),
            {"$set": {
                "status": DeliveryStatus.DELIVERED.value,
                "delivered_at": utc_now(),
                "lease_expires_at": None,
            }},
        )
        if result.matched_count == 0:
            self._lease_lost(delivery, "ack")
            return False
        return True

    def backoff_seconds(self, attempts: int) -> float:
        return min(self.backoff_base_seconds * (2 ** max(attempts - 1, 0)), self.backoff_max_seconds)

    async def nack(self, delivery: Delivery, error: Optional[str], retryable: bool = True) -> bool:
        """
        Return a failed delivery to its channel.

        Returns:
            bool: True if this call dead-lettered the message; False if it was
            re-queued or the lease had already passed to another delivery
        """
        if not retryable or delivery.attempts >= self.max_attempts:
            return await self._dead_letter(delivery, error)

        delay = self.backoff_seconds(delivery.attempts)
        result = await self.messages.update_one(
            self._lease_filter(delivery),
            {"$set": {
                "status": DeliveryStatus.QUEUED.value,
                "available_at": utc_now() + timedelta(seconds=delay),
                "lease_expires_at": None,
                "last_error": error,
            }},
        )
        if result.matched_count == 0:
            self._lease_lost(delivery, "nack")
            return False
        logger.info(
            f"Message {delivery.message.message_id} on {delivery.message.channel} re-queued "
            f"(attempt {delivery.attempts}/{self.max_attempts}, retry in {delay:.0f}s)"
        )
        return False

    async def _dead_letter(self, delivery: Delivery, error: Optional[str]) -> bool:
        message = delivery.message
        now = utc_now()
        result = await self.messages.update_one(
            self._lease_filter(delivery),
            {"$set": {
                "status": DeliveryStatus.DEAD_LETTERED.value,
                "lease_expires_at": None,
                "last_error": error,
                "dead_lettered_at": now,
            }},
        )
        if result.matched_count == 0:
            self._lease_lost(delivery, "dead-lettering")
            return False

        await self.dead_letters.replace_one(
            {"_id": message.message_id},
            {
                "channel": message.channel,
                "record_id": message.record_id,
                "correlation_id": message.correlation_id,
                "payload": message.payload,
                "attempts": delivery.attempts,
                "error": error,
                "dead_lettered_at": now,
                "requeued": False,
            },
            upsert=True,
        )
        logger.warning(
            f"Message {message.message_id} on {message.channel} dead-lettered after "
            f"{delivery.attempts} attempt(s): {error}"
        )
        return True

    async def deliver_once(self, stage: "Stage") -> Optional["StageResult"]:
        """Claim one message for ``stage`` and settle it. Returns None when the channel is idle."""
        delivery = await self.claim(stage.channel)
        if delivery is None:
            return None

        try:
            result = await stage.run(delivery.message)
        except Exception as e:
            # Stage.run classifies its own failures; this only sees faults in that bookkeeping
            logger.exception(f"Stage {stage.name} crashed on {delivery.message.message_id}: {e}")
            if await self.nack(delivery, str(e), retryable=True):
                try:
                    await stage.on_exhausted(delivery.message, str(e))
                except Exception as exhausted_error:
                    logger.exception(f"Stage {stage.name} could not settle exhausted delivery: {exhausted_error}")
            return None

        if result.should_retry:
            exhausted = await self.nack(delivery, result.error, retryable=True)
            if exhausted:
                await stage.on_exhausted(delivery.message, result.error)
        elif result.failed:
            await self.nack(delivery, result.error, retryable=False)
        else:
            await self.ack(delivery)
        return result

    async def drain(self, stage: "Stage", max_messages: Optional[int] = None) -> List["StageResult"]:
        """Deliver due messages for ``stage`` until its channel is idle."""
        results = []
        while max_messages is None or len(results) < max_messages:
            result = await self.deliver_once(stage)
            if result is None:
                break
            results.append(result)
        return results

    async def consume(self, stage: "Stage", stop_event: asyncio.Event, poll_interval: float = 5.0):
        logger.info(f"Consumer started: {stage.name} on {stage.channel}")
        while not stop_event.is_set():
            try:
                result = await self.deliver_once(stage)
            except Exception as e:
                logger.error(f"Consumer {stage.name} delivery loop error: {e}")
                result = None

            if result is None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Consumer stopped: {stage.name}")

    async def list_dead_letters(self, channel: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = {"channel": channel} if channel else {}
        cursor = self.dead_letters.find(query).sort("dead_lettered_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def requeue_dead_letter(self, dead_letter_id: str) -> str:
        """Publish a fresh copy of a dead-lettered message; returns the new message id."""
        doc = await self.dead_letters.find_one({"_id": dead_letter_id})
        if doc is None:
            raise RecordNotFound(f"Dead letter {dead_letter_id} not found")

        message = WorkflowMessage(
            channel=doc["channel"],
            record_id=doc.get("record_id"),
            correlation_id=doc["correlation_id"],
            payload=doc.get("payload") or {},
        )
        new_id = await self.publish(doc["channel"], message)
        await self.dead_letters.update_one(
            {"_id": dead_letter_id},
            {"$set": {"requeued": True, "requeued_at": utc_now(), "requeued_as": new_id}},
        )
        logger.info(f"Dead letter {dead_letter_id} requeued as {new_id}")
        return new_id

    async def channel_depths(self) -> Dict[str, Dict[str, int]]:
        depths = {}
        for channel in Channel:
            depths[channel.value] = {
                "queued": await self.messages.count_documents(
                    {"channel": channel.value, "status": DeliveryStatus.QUEUED.value}
                ),
                "in_flight": await self.messages.count_documents(
                    {"channel": channel.value, "status": DeliveryStatus.IN_FLIGHT.value}
                ),
                "dead_lettered": await self.dead_letters.count_documents(
                    {"channel": channel.value, "requeued": False}
                ),
            }
        return depths
