from typing import List, Optional

from loguru import logger

from intake_workflow.constants import Channel, ErrorType
from intake_workflow.exceptions import DeliveryFailure
from intake_workflow.schemas import IntakeRecord, WorkflowMessage
from intake_workflow.stages.base import Stage, StageResult
from intake_workflow.utils import mask_id


class IntakeProcessorStage(Stage):
    """Claims pending intake records and hands each one to patient creation."""

    name = ErrorType.INTAKE_PROCESSING.value
    channel = Channel.PROCESS_QUEUE.value
    marks_record_on_failure = False

    def __init__(self, intake, dispatcher, error_log, batch_size: int = 10):
        super().__init__(intake, dispatcher, error_log)
        self.batch_size = batch_size

    async def process(self, message: WorkflowMessage) -> StageResult:
        claimed = await self.run_cycle()
        return StageResult.succeeded(claimed=len(claimed))

    async def run_cycle(self, limit: Optional[int] = None) -> List[IntakeRecord]:
        """Claim a batch and publish one create-patient message per record."""
        records = await self.intake.claim_batch(limit or self.batch_size)

        for record in records:
            message = WorkflowMessage(
                channel=Channel.CREATE_PATIENT.value,
                record_id=record.id,
                correlation_id=record.correlation_id,
            )
            try:
                await self.dispatcher.publish(Channel.CREATE_PATIENT.value, message)
            except DeliveryFailure as e:
                # The claim stands; the reconciler re-queues the record once it is stuck
                await self.error_log.record(
                    stage=self.name, error=e, record_id=record.id, correlation_id=record.correlation_id
                )
                logger.error(f"Could not hand off intake {mask_id(record.id)}: {e}")

        return records
