from typing import Optional, Tuple

from loguru import logger

from intake_workflow.athena import AthenaClient
from intake_workflow.constants import ActivityType, Channel, ErrorType, IntakeStatus
from intake_workflow.exceptions import DeliveryFailure, WorkflowError
from intake_workflow.models import TokenStore
from intake_workflow.normalizer import parse_date, parse_time, prepare_patient_fields
from intake_workflow.schemas import IntakeRecord, WorkflowMessage
from intake_workflow.stages.base import StageResult
from intake_workflow.stages.token_refresh import TokenRefreshStage
from intake_workflow.stages.upstream import UpstreamStage, persist_after_upstream
from intake_workflow.utils import mask_id


class PatientCreationStage(UpstreamStage):
    """
    Creates the remote patient for a claimed intake record.

    Re-delivery is safe: a record that already carries ``remote_patient_id``
    skips creation and only repeats the hand-off to booking or completion.
    The record is stamped before the upstream create; a stamp without a
    patient id means an earlier create returned but its id was never saved,
    and the record goes to error rather than risk a duplicate patient.
    """

    name = ErrorType.PATIENT_CREATION.value
    channel = Channel.CREATE_PATIENT.value

    def __init__(self, intake, dispatcher, error_log, token_store: TokenStore, athena: AthenaClient,
                 department_id: str, default_appointment_type_id: str,
                 credentials: Optional[TokenRefreshStage] = None):
        super().__init__(intake, dispatcher, error_log, token_store, credentials)
        self.athena = athena
        self.department_id = department_id
        self.default_appointment_type_id = default_appointment_type_id

    async def process(self, message: WorkflowMessage) -> StageResult:
        record = await self.intake.require(message.record_id)

        if record.status == IntakeStatus.COMPLETED:
            return StageResult.skipped(record.id, "already completed")
        if record.status != IntakeStatus.PROCESSING:
            logger.info(f"Skipping stale create-patient for {mask_id(record.id)} ({record.status.value})")
            return StageResult.skipped(record.id, f"record is {record.status.value}")

        fields = prepare_patient_fields(record.payload.model_dump(), self.department_id)

        remote_patient_id = record.remote_patient_id
        if remote_patient_id:
            logger.info(f"Intake {mask_id(record.id)} already linked to patient {mask_id(remote_patient_id)}")
        elif record.patient_creation_started_at:
            raise WorkflowError(
                "Patient creation already attempted for this intake but no patient id was saved; "
                "manual review required",
                details={"creation_started_at": record.patient_creation_started_at.isoformat()},
            )
        else:
            remote_patient_id = await self._create_patient(message, record, fields)

        appointment_id, appointment_type_id = await self._select_appointment(record)

        if appointment_id:
            await self.publish(message, Channel.BOOK_APPOINTMENT.value, {
                "remote_patient_id": remote_patient_id,
                "appointment_id": appointment_id,
                "appointment_type_id": appointment_type_id,
            })
            return StageResult.succeeded(record.id, remote_patient_id=remote_patient_id, next="book-appointment")

        await self.intake.mark_completed(record.id, {"remote_patient_id": remote_patient_id})
        return StageResult.succeeded(record.id, remote_patient_id=remote_patient_id)

    async def _create_patient(self, message: WorkflowMessage, record: IntakeRecord, fields) -> str:
        if not await self.intake.mark_creation_started(record.id):
            raise WorkflowError(f"Intake {mask_id(record.id)} changed before patient creation")

        try:
            remote_patient_id = await self.call_upstream(self.athena.create_patient, fields)
        except Exception:
            # The create call failed, so nothing exists upstream to protect
            await self.intake.clear_creation_started(record.id)
            raise

        await self._link_patient(record.id, remote_patient_id)
        await self._publish_activity(message, record, remote_patient_id)
        return remote_patient_id

    @persist_after_upstream
    async def _link_patient(self, record_id: str, remote_patient_id: str):
        if not await self.intake.set_remote_patient_id(record_id, remote_patient_id):
            raise WorkflowError(
                f"Created patient {mask_id(remote_patient_id)} could not be linked to intake {mask_id(record_id)}",
                details={"remote_patient_id": remote_patient_id},
            )

    async def _select_appointment(self, record: IntakeRecord) -> Tuple[Optional[str], str]:
        payload = record.payload
        appointment_type_id = payload.appointment_type_id or self.default_appointment_type_id

        if payload.appointment_id:
            return payload.appointment_id, appointment_type_id

        preferred_date = parse_date(payload.preferred_date)
        preferred_time = parse_time(payload.preferred_time)
        if not (preferred_date and preferred_time):
            return None, appointment_type_id

        match = await self.call_upstream(self.athena.find_matching_appointment, preferred_date, preferred_time)
        if not match or not match.get("appointmentid"):
            logger.info(f"No open slot near {preferred_date} {preferred_time} for {mask_id(record.id)}")
            return None, appointment_type_id

        return str(match["appointmentid"]), str(match.get("appointmenttypeid") or appointment_type_id)

    async def _publish_activity(self, message: WorkflowMessage, record: IntakeRecord, remote_patient_id: str):
        try:
            await self.publish(message, Channel.PATIENT_ACTIVITY.value, {
                "activity_type": ActivityType.PATIENT_CREATED.value,
                "patient_id": remote_patient_id,
                "last_name": record.payload.last_name,
                "status": "created",
                "details": {
                    "call_id": record.payload.call_id,
                    "call_length": record.payload.call_length,
                    "last_node_id": record.payload.last_node_id,
                },
            })
        except DeliveryFailure as e:
            logger.error(f"Activity for patient {mask_id(remote_patient_id)} not published: {e}")
