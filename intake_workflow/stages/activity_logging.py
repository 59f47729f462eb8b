from intake_workflow.constants import Channel, ErrorType
from intake_workflow.exceptions import ValidationError
from intake_workflow.models import ActivityLog
from intake_workflow.schemas import WorkflowMessage
from intake_workflow.stages.base import Stage, StageResult


class ActivityLoggingStage(Stage):
    """Side channel: a failure here never changes the intake record's status."""

    name = ErrorType.ACTIVITY_LOGGING.value
    channel = Channel.PATIENT_ACTIVITY.value
    marks_record_on_failure = False

    def __init__(self, intake, dispatcher, error_log, activity_log: ActivityLog):
        super().__init__(intake, dispatcher, error_log)
        self.activity_log = activity_log

    async def process(self, message: WorkflowMessage) -> StageResult:
        payload = message.payload
        if not payload.get("patient_id") or not payload.get("activity_type"):
            raise ValidationError("Activity message needs patient_id and activity_type")

        logged = await self.activity_log.log_activity(
            activity_id=message.message_id,
            patient_id=str(payload["patient_id"]),
            activity_type=payload["activity_type"],
            status=payload.get("status", "success"),
            last_name=payload.get("last_name"),
            record_id=message.record_id,
            appointment_id=payload.get("appointment_id"),
            appointment_date_time=payload.get("appointment_date_time"),
            details=payload.get("details"),
        )
        if not logged:
            return StageResult.skipped(message.record_id, "activity already logged")
        return StageResult.succeeded(message.record_id, activity_type=payload["activity_type"])
