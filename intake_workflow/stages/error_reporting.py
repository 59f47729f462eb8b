from intake_workflow.alerts import EmailAlerter
from intake_workflow.constants import Channel, ErrorType
from intake_workflow.schemas import WorkflowMessage
from intake_workflow.stages.base import Stage, StageResult


class ErrorReportingStage(Stage):
    """Turns error notifications into operator email alerts."""

    name = ErrorType.ERROR_REPORTING.value
    channel = Channel.ERROR_NOTIFICATIONS.value
    marks_record_on_failure = False
    # Reporting a failed report would loop on this channel
    notifies_on_failure = False

    def __init__(self, intake, dispatcher, error_log, alerter: EmailAlerter):
        super().__init__(intake, dispatcher, error_log)
        self.alerter = alerter

    async def process(self, message: WorkflowMessage) -> StageResult:
        payload = message.payload
        sent = await self.alerter.alert_workflow_error(
            stage=payload.get("stage", "unknown"),
            error=payload.get("error", "unknown error"),
            record_id=message.record_id,
            context={
                "error_type": payload.get("error_type"),
                "correlation_id": message.correlation_id,
            },
        )
        return StageResult.succeeded(message.record_id, sent=sent)
