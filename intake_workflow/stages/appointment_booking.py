from typing import Any, Dict, Optional

from loguru import logger

from intake_workflow.athena import AthenaClient
from intake_workflow.constants import ActivityType, Channel, ErrorType, IntakeStatus
from intake_workflow.exceptions import DeliveryFailure, ValidationError
from intake_workflow.models import AppointmentLedger, TokenStore
from intake_workflow.schemas import WorkflowMessage
from intake_workflow.stages.base import StageResult
from intake_workflow.stages.token_refresh import TokenRefreshStage
from intake_workflow.stages.upstream import UpstreamStage, persist_after_upstream
from intake_workflow.utils import mask_id, utc_now


class AppointmentBookingStage(UpstreamStage):
    """
    Books the selected slot for a patient created earlier in the workflow.

    The ledger is written before the record is completed. A redelivery that
    finds a confirmation for the same appointment completes the record from
    it instead of booking the slot a second time.
    """

    name = ErrorType.APPOINTMENT_BOOKING.value
    channel = Channel.BOOK_APPOINTMENT.value

    def __init__(self, intake, dispatcher, error_log, token_store: TokenStore, athena: AthenaClient,
                 ledger: AppointmentLedger, default_appointment_type_id: str,
                 credentials: Optional[TokenRefreshStage] = None):
        super().__init__(intake, dispatcher, error_log, token_store, credentials)
        self.athena = athena
        self.ledger = ledger
        self.default_appointment_type_id = default_appointment_type_id

    async def process(self, message: WorkflowMessage) -> StageResult:
        record = await self.intake.require(message.record_id)

        if record.status == IntakeStatus.COMPLETED or record.appointment_booked:
            return StageResult.skipped(record.id, "already booked")
        if record.status != IntakeStatus.PROCESSING:
            return StageResult.skipped(record.id, f"record is {record.status.value}")

        remote_patient_id = message.payload.get("remote_patient_id") or record.remote_patient_id
        appointment_id = message.payload.get("appointment_id")
        appointment_type_id = message.payload.get("appointment_type_id") or self.default_appointment_type_id

        errors = []
        if not remote_patient_id:
            errors.append("remote_patient_id is required")
        if not appointment_id:
            errors.append("appointment_id is required")
        if errors:
            raise ValidationError("Booking request incomplete: " + "; ".join(errors), errors=errors)

        booking = await self.ledger.find_by_record(record.id)
        if booking and booking.get("appointment_id") == appointment_id:
            logger.info(f"Appointment {appointment_id} already booked for {mask_id(record.id)}, completing from ledger")
            confirmation = booking.get("confirmation") or {}
        else:
            confirmation = await self.call_upstream(
                self.athena.book_appointment, appointment_id, remote_patient_id, appointment_type_id
            )
            await self._record_booking(record.id, remote_patient_id, appointment_id, appointment_type_id, confirmation)

        await self.intake.mark_completed(record.id, {
            "remote_patient_id": remote_patient_id,
            "appointment_id": appointment_id,
            "appointment_booked": True,
            "appointment_booked_at": utc_now(),
            "booking_confirmation": confirmation,
        })

        appointment_date_time = None
        if confirmation.get("date") and confirmation.get("starttime"):
            appointment_date_time = f"{confirmation['date']} {confirmation['starttime']}"

        try:
            await self.publish(message, Channel.PATIENT_ACTIVITY.value, {
                "activity_type": ActivityType.APPOINTMENT_BOOKED.value,
                "patient_id": remote_patient_id,
                "last_name": record.payload.last_name,
                "appointment_id": appointment_id,
                "appointment_date_time": appointment_date_time,
                "status": "booked",
                "details": {
                    "call_id": record.payload.call_id,
                    "call_length": record.payload.call_length,
                    "last_node_id": record.payload.last_node_id,
                },
            })
        except DeliveryFailure as e:
            logger.error(f"Booking activity for {mask_id(record.id)} not published: {e}")

        return StageResult.succeeded(record.id, appointment_id=appointment_id)

    @persist_after_upstream
    async def _record_booking(self, record_id: str, remote_patient_id: str, appointment_id: str,
                              appointment_type_id: str, confirmation: Dict[str, Any]):
        await self.ledger.record_booking(
            record_id=record_id,
            remote_patient_id=remote_patient_id,
            appointment_id=appointment_id,
            appointment_type_id=appointment_type_id,
            confirmation=confirmation,
        )
