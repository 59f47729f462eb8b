from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase

from intake_workflow.exceptions import describe_error
from intake_workflow.utils import mask_id, utc_now


class ErrorLog:
    """Append-only error records. Nothing here is ever updated or deleted."""

    COLLECTION = "errors"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.errors = db[self.COLLECTION]

    async def ensure_indexes(self):
        try:
            await self.errors.create_index([("record_id", 1), ("timestamp", -1)])
            await self.errors.create_index([("type", 1), ("timestamp", -1)])
        except Exception as e:
            logger.warning(f"Index creation warning: {e}")

    async def record(
        self,
        stage: str,
        error: BaseException,
        record_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Write an ErrorRecord for a stage failure.

        Args:
            stage: Stage name (patient_creation, appointment_booking, ...)
            error: The exception raised inside the stage
            record_id: Originating IntakeRecord id, when there is one
            correlation_id: Tracing id of the failing message
            context: Request/response context to keep alongside the error

        Returns:
            Inserted error id, or None if the write itself failed
        """
        described = describe_error(error)
        entry = {
            "type": stage,
            "record_id": record_id,
            "correlation_id": correlation_id,
            "error": described["error"],
            "error_type": described["error_type"],
            "retryable": described["retryable"],
            "details": {**described["details"], **(context or {})},
            "timestamp": utc_now(),
        }
        try:
            result = await self.errors.insert_one(entry)
            logger.debug(f"Error recorded: {stage} for record {mask_id(record_id)}")
            return str(result.inserted_id)
        except Exception as e:
            logger.error(f"Failed to write error record for {stage}: {e} (original error: {described['error']})")
            return None

    async def find_for_record(self, record_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.errors.find({"record_id": record_id}).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def recent(self, since_hours: int = 24, limit: int = 100) -> List[Dict[str, Any]]:
        cutoff = utc_now() - timedelta(hours=since_hours)
        cursor = self.errors.find({"timestamp": {"$gte": cutoff}}).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)


class FailedCallLog:
    """Calls that reached the webhook but could not become an intake record."""

    COLLECTION = "failed_calls"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.failed_calls = db[self.COLLECTION]

    async def log(
        self,
        call_id: Optional[str],
        status: Optional[str],
        reason: str,
        pathway_id: Optional[str] = None,
        errors: Optional[List[str]] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> str:
        result = await self.failed_calls.insert_one({
            "call_id": call_id,
            "pathway_id": pathway_id,
            "status": status,
            "reason": reason,
            "errors": errors or [],
            "variables": variables or {},
            "timestamp": utc_now(),
        })
        logger.info(f"Failed call logged: {mask_id(call_id)} ({reason})")
        return str(result.inserted_id)

    async def count(self) -> int:
        return await self.failed_calls.count_documents({})
