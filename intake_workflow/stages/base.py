from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from intake_workflow.constants import Channel
from intake_workflow.dispatcher import StageDispatcher
from intake_workflow.exceptions import DeliveryFailure, WorkflowError, describe_error, is_retryable
from intake_workflow.models import ErrorLog, IntakeQueue
from intake_workflow.schemas import WorkflowMessage
from intake_workflow.utils import mask_id


class StageOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    RETRY = "retry"


@dataclass
class StageResult:
    outcome: StageOutcome
    record_id: Optional[str] = None
    error: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def should_retry(self) -> bool:
        return self.outcome == StageOutcome.RETRY

    @property
    def failed(self) -> bool:
        return self.outcome == StageOutcome.FAILED

    @classmethod
    def succeeded(cls, record_id: Optional[str] = None, **detail) -> "StageResult":
        return cls(StageOutcome.SUCCEEDED, record_id=record_id, detail=detail)

    @classmethod
    def skipped(cls, record_id: Optional[str], reason: str) -> "StageResult":
        return cls(StageOutcome.SKIPPED, record_id=record_id, detail={"reason": reason})


class Stage:
    """
    One processing step bound to a dispatcher channel.

    Subclasses implement ``process``. ``run`` is the boundary: it never raises,
    it writes an ErrorRecord for every failure and turns the exception into a
    StageResult the dispatcher can settle.
    """

    name: str = "stage"
    channel: str = ""
    # Whether a final failure moves the originating intake record to error
    marks_record_on_failure: bool = True
    notifies_on_failure: bool = True

    def __init__(self, intake: IntakeQueue, dispatcher: StageDispatcher, error_log: ErrorLog):
        self.intake = intake
        self.dispatcher = dispatcher
        self.error_log = error_log

    async def process(self, message: WorkflowMessage) -> StageResult:
        raise NotImplementedError

    async def run(self, message: WorkflowMessage) -> StageResult:
        log = logger.bind(stage=self.name, record_id=mask_id(message.record_id), correlation_id=message.correlation_id)
        try:
            return await self.process(message)
        except Exception as e:
            retryable = is_retryable(e)
            await self.error_log.record(
                stage=self.name,
                error=e,
                record_id=message.record_id,
                correlation_id=message.correlation_id,
                context={"channel": message.channel, "message_id": message.message_id},
            )

            if retryable:
                log.warning(f"{self.name} failed (retryable): {e}")
                return StageResult(StageOutcome.RETRY, record_id=message.record_id, error=str(e))

            log.error(f"{self.name} failed: {e}")
            await self.on_failure(message, e)
            return StageResult(StageOutcome.FAILED, record_id=message.record_id, error=str(e))

    async def on_failure(self, message: WorkflowMessage, error: BaseException):
        described = describe_error(error)
        await self._finish_with_error(message, described)

    async def on_exhausted(self, message: WorkflowMessage, error: Optional[str]):
        """Called by the dispatcher once a retryable failure has run out of attempts."""
        described = {
            "error": f"Delivery attempts exhausted: {error}",
            "error_type": "DeliveryExhausted",
            "retryable": False,
            "details": {},
        }
        await self._finish_with_error(message, described)

    async def _finish_with_error(self, message: WorkflowMessage, described: Dict[str, Any]):
        if self.marks_record_on_failure and message.record_id:
            try:
                await self.intake.mark_error(message.record_id, described)
            except WorkflowError as e:
                logger.warning(f"Could not mark record {mask_id(message.record_id)} as error: {e}")

        if self.notifies_on_failure:
            await self.notify(message, described)

    async def notify(self, message: WorkflowMessage, described: Dict[str, Any]):
        notification = message.follow_up(Channel.ERROR_NOTIFICATIONS.value, {
            "stage": self.name,
            "error": described["error"],
            "error_type": described["error_type"],
        })
        try:
            await self.dispatcher.publish(Channel.ERROR_NOTIFICATIONS.value, notification)
        except DeliveryFailure as e:
            logger.error(f"Error notification for {self.name} could not be published: {e}")

    async def publish(self, message: WorkflowMessage, channel: str, payload: Dict[str, Any]) -> str:
        return await self.dispatcher.publish(channel, message.follow_up(channel, payload))
