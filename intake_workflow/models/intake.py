import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from intake_workflow.constants import IntakeStatus
from intake_workflow.exceptions import RecordNotFound, ValidationError
from intake_workflow.normalizer import parse_date, validate_intake_minimum
from intake_workflow.schemas import IntakePayload, IntakeRecord
from intake_workflow.utils import mask_id, to_object_id, utc_now


class IntakeQueue:
    """
    Durable intake queue; the system of record for workflow progress.

    Every status change is a single conditional write against the current
    status, so concurrent stage instances cannot double-process a record.
    """

    COLLECTION = "patient_intake_queue"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.records = db[self.COLLECTION]
        self._indexes_ensured = False

    async def ensure_indexes(self):
        if self._indexes_ensured:
            return
        try:
            await self.records.create_index([("status", 1), ("created_at", 1)])
            await self.records.create_index([("status", 1), ("processing_started", 1)])
            await self.records.create_index("call_id", unique=True, sparse=True)
            self._indexes_ensured = True
        except Exception as e:
            logger.warning(f"Index creation warning: {e}")

    async def enqueue(self, payload: IntakePayload) -> str:
        """
        Create a pending IntakeRecord and return its id.

        Raises:
            ValidationError: name pair empty or birth date unparseable.
        """
        errors = validate_intake_minimum(payload.first_name, payload.last_name, payload.date_of_birth)
        if errors:
            raise ValidationError("Intake rejected: " + "; ".join(errors), errors=errors)

        await self.ensure_indexes()

        payload = payload.model_copy(update={"date_of_birth": parse_date(payload.date_of_birth)})
        now = utc_now()
        doc = {
            "payload": payload.model_dump(),
            "status": IntakeStatus.PENDING.value,
            "correlation_id": payload.call_id or uuid.uuid4().hex,
            "retry_count": 0,
            "reconcile_exhausted": False,
            "created_at": now,
            "updated_at": now,
            "processing_started": None,
            "completed_at": None,
            "error_at": None,
            "error": None,
        }
        if payload.call_id:
            doc["call_id"] = payload.call_id

        try:
            result = await self.records.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.records.find_one({"call_id": payload.call_id}, {"_id": 1})
            if existing is None:
                raise
            logger.warning(f"Duplicate intake for call {mask_id(payload.call_id)}, returning existing record")
            return str(existing["_id"])

        record_id = str(result.inserted_id)
        logger.info(f"Intake queued: {mask_id(record_id)}")
        return record_id

    async def get(self, record_id: str) -> Optional[IntakeRecord]:
        oid = to_object_id(record_id)
        if oid is None:
            return None
        doc = await self.records.find_one({"_id": oid})
        return IntakeRecord.from_document(doc) if doc else None

    async def require(self, record_id: str) -> IntakeRecord:
        record = await self.get(record_id)
        if record is None:
            raise RecordNotFound(f"Intake record {record_id} not found")
        return record

    async def claim_batch(self, limit: int) -> List[IntakeRecord]:
        """Atomically move up to ``limit`` pending records to processing, oldest first."""
        claimed = []
        for _ in range(max(limit, 0)):
            now = utc_now()
            doc = await self.records.find_one_and_update(
                {"status": IntakeStatus.PENDING.value},
                {"$set": {
                    "status": IntakeStatus.PROCESSING.value,
                    "processing_started": now,
                    "updated_at": now,
                }},
                sort=[("created_at", 1)],
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                break
            claimed.append(IntakeRecord.from_document(doc))

        if claimed:
            logger.info(f"Claimed {len(claimed)} intake record(s)")
        return claimed

    async def mark_creation_started(self, record_id: str) -> bool:
        """Stamp a processing record that has no remote patient yet, just before the upstream create."""
        result = await self.records.update_one(
            {"_id": to_object_id(record_id), "status": IntakeStatus.PROCESSING.value, "remote_patient_id": None},
            {"$set": {"patient_creation_started_at": utc_now(), "updated_at": utc_now()}},
        )
        return result.matched_count > 0

    async def clear_creation_started(self, record_id: str) -> None:
        await self.records.update_one(
            {"_id": to_object_id(record_id)},
            {"$unset": {"patient_creation_started_at": ""}},
        )

    async def set_remote_patient_id(self, record_id: str, remote_patient_id: str) -> bool:
        """
        Link the record to its remote patient whatever its status; a created patient must never be forgotten.

        Returns False when the record is gone or already linked to a different patient.
        """
        remote_patient_id = str(remote_patient_id)
        result = await self.records.update_one(
            {
                "_id": to_object_id(record_id),
                "$or": [{"remote_patient_id": None}, {"remote_patient_id": remote_patient_id}],
            },
            {
                "$set": {"remote_patient_id": remote_patient_id, "updated_at": utc_now()},
                "$unset": {"patient_creation_started_at": ""},
            },
        )
        return result.matched_count > 0

    async def mark_completed(self, record_id: str, remote_ids: Optional[Dict] = None) -> bool:
        """processing → completed. Returns False when the record was already completed."""
        now = utc_now()
        fields = {
            "status": IntakeStatus.COMPLETED.value,
            "completed_at": now,
            "updated_at": now,
            "processing_started": None,
            "error": None,
            "error_at": None,
        }
        fields.update(remote_ids or {})

        oid = to_object_id(record_id)
        result = await self.records.update_one(
            {"_id": oid, "status": IntakeStatus.PROCESSING.value},
            {"$set": fields},
        )
        if result.modified_count > 0:
            logger.info(f"Intake {mask_id(record_id)} completed")
            return True

        return await self._explain_noop(oid, IntakeStatus.COMPLETED)

    async def mark_error(self, record_id: str, error_info: Union[str, Dict]) -> bool:
        """processing → error. Returns False when the record was already in error."""
        message = error_info if isinstance(error_info, str) else error_info.get("error", "unknown error")
        now = utc_now()

        oid = to_object_id(record_id)
        result = await self.records.update_one(
            {"_id": oid, "status": IntakeStatus.PROCESSING.value},
            {"$set": {
                "status": IntakeStatus.ERROR.value,
                "error": message,
                "error_at": now,
                "updated_at": now,
                "processing_started": None,
                "completed_at": None,
            }},
        )
        if result.modified_count > 0:
            logger.warning(f"Intake {mask_id(record_id)} marked error: {message}")
            return True

        return await self._explain_noop(oid, IntakeStatus.ERROR)

    async def _explain_noop(self, oid, target: IntakeStatus) -> bool:
        doc = await self.records.find_one({"_id": oid}, {"status": 1})
        if doc is None:
            raise RecordNotFound(f"Intake record {oid} not found")
        if doc["status"] != target.value:
            logger.warning(
                f"Intake {mask_id(str(oid))} is {doc['status']}, not processing; {target.value} transition skipped"
            )
        return False

    async def find_stuck(self, older_than: timedelta = timedelta(minutes=15)) -> List[IntakeRecord]:
        cutoff = utc_now() - older_than
        cursor = self.records.find({
            "status": IntakeStatus.PROCESSING.value,
            "processing_started": {"$lt": cutoff},
        })
        return [IntakeRecord.from_document(doc) for doc in await cursor.to_list(length=None)]

    async def find_errored(self) -> List[IntakeRecord]:
        cursor = self.records.find({
            "status": IntakeStatus.ERROR.value,
            "reconcile_exhausted": {"$ne": True},
        })
        return [IntakeRecord.from_document(doc) for doc in await cursor.to_list(length=None)]

    async def requeue(self, record_id: str, expected_status: IntakeStatus,
                      started_before: Optional[datetime] = None) -> bool:
        """Reconciliation transition back to pending; the only way a record moves backwards."""
        query = {"_id": to_object_id(record_id), "status": expected_status.value}
        if started_before is not None:
            query["processing_started"] = {"$lt": started_before}

        result = await self.records.update_one(
            query,
            {
                "$set": {
                    "status": IntakeStatus.PENDING.value,
                    "processing_started": None,
                    "error": None,
                    "error_at": None,
                    "updated_at": utc_now(),
                },
                "$inc": {"retry_count": 1},
            },
        )
        return result.modified_count > 0

    async def mark_exhausted(self, record_id: str) -> bool:
        result = await self.records.update_one(
            {"_id": to_object_id(record_id), "status": IntakeStatus.ERROR.value},
            {"$set": {"reconcile_exhausted": True, "updated_at": utc_now()}},
        )
        return result.modified_count > 0

    async def count_by_status(self) -> Dict[str, int]:
        counts = {}
        for status in IntakeStatus:
            counts[status.value] = await self.records.count_documents({"status": status.value})
        return counts
