from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from intake_workflow.utils import utc_now


class AppointmentLedger:
    """Booking confirmations, one per originating intake record."""

    COLLECTION = "appointments"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.appointments = db[self.COLLECTION]

    async def record_booking(
        self,
        record_id: str,
        remote_patient_id: str,
        appointment_id: str,
        appointment_type_id: str,
        confirmation: Any,
    ) -> None:
        now = utc_now()
        await self.appointments.update_one(
            {"original_record_id": record_id},
            {
                "$set": {
                    "remote_patient_id": remote_patient_id,
                    "appointment_id": appointment_id,
                    "appointment_type_id": appointment_type_id,
                    "status": "booked",
                    "confirmation": confirmation,
                    "last_modified": now,
                },
                "$setOnInsert": {"booked_at": now},
            },
            upsert=True,
        )

    async def find_by_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        return await self.appointments.find_one({"original_record_id": record_id})
