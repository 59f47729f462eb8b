from typing import Any, Dict, List, Optional

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from intake_workflow.utils import mask_id, utc_now


class ActivityLog:
    """Append-only patient activity trail plus a per-patient rollup."""

    LOG_COLLECTION = "patient_activity_log"
    SUMMARY_COLLECTION = "patient_summary"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.activity_log = db[self.LOG_COLLECTION]
        self.summary = db[self.SUMMARY_COLLECTION]

    async def log_activity(
        self,
        activity_id: str,
        patient_id: str,
        activity_type: str,
        status: str,
        last_name: Optional[str] = None,
        record_id: Optional[str] = None,
        appointment_id: Optional[str] = None,
        appointment_date_time: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record one activity for a patient.

        Args:
            activity_id: Idempotency key (the delivering message id)
            patient_id: Remote (athenahealth) patient id
            activity_type: PATIENT_CREATED or APPOINTMENT_BOOKED
            status: Outcome reported by the publishing stage
            last_name: Patient last name, for the summary view
            record_id: Originating intake record id
            appointment_id: Booked appointment, when there is one
            appointment_date_time: Appointment slot, when known
            details: Call metadata (call length, last pathway node, ...)

        Returns:
            bool: True if logged, False if this activity was already recorded
        """
        now = utc_now()
        details = details or {}
        try:
            await self.activity_log.insert_one({
                "_id": activity_id,
                "patient_id": patient_id,
                "last_name": last_name,
                "record_id": record_id,
                "activity_type": activity_type,
                "appointment_id": appointment_id,
                "appointment_date_time": appointment_date_time,
                "status": status,
                "details": details,
                "timestamp": now,
            })
        except DuplicateKeyError:
            logger.debug(f"Activity {activity_id} already logged, skipping")
            return False

        summary_fields = {
            "patient_id": patient_id,
            "last_activity": now,
            "last_activity_type": activity_type,
        }
        if last_name:
            summary_fields["last_name"] = last_name
        if appointment_id:
            summary_fields["appointment_id"] = appointment_id
            summary_fields["booked_appt"] = True
        if appointment_date_time:
            summary_fields["appointment_date_time"] = appointment_date_time
        if activity_type == "PATIENT_CREATED":
            summary_fields["patient_record_created"] = True
        for key in ("call_length", "last_node_id"):
            if details.get(key) is not None:
                summary_fields[key] = details[key]

        await self.summary.update_one(
            {"_id": patient_id},
            {"$set": summary_fields, "$inc": {"total_activities": 1}},
            upsert=True,
        )
        logger.info(f"Logged {activity_type} for patient {mask_id(patient_id)}")
        return True

    async def get_patient_trail(self, patient_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.activity_log.find({"patient_id": patient_id}).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def get_summary(self, patient_id: str) -> Optional[Dict[str, Any]]:
        return await self.summary.find_one({"_id": patient_id})

    async def ensure_indexes(self):
        """Indexes for trail queries. No TTL: the trail is retained for audit."""
        try:
            await self.activity_log.create_index([("patient_id", 1), ("timestamp", -1)])
            await self.activity_log.create_index("record_id")
            return True
        except Exception as e:
            logger.warning(f"Error creating activity indexes: {e}")
            return False
