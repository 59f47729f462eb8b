"""Periodic sweep that re-admits stuck and failed intake records."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from loguru import logger

from intake_workflow.constants import Channel, ErrorType, IntakeStatus
from intake_workflow.dispatcher import StageDispatcher
from intake_workflow.exceptions import DeliveryFailure, WorkflowError
from intake_workflow.models import ErrorLog, IntakeQueue
from intake_workflow.schemas import IntakeRecord, WorkflowMessage
from intake_workflow.utils import mask_id, utc_now


@dataclass
class ReconcileReport:
    stuck_found: int = 0
    errored_found: int = 0
    requeued: List[str] = field(default_factory=list)
    exhausted: List[str] = field(default_factory=list)
    triggered: bool = False

    def to_dict(self) -> dict:
        return {
            "stuck_found": self.stuck_found,
            "errored_found": self.errored_found,
            "requeued": len(self.requeued),
            "exhausted": len(self.exhausted),
            "triggered": self.triggered,
        }


class Reconciler:
    """
    Re-queues records stuck in ``processing`` or sitting in ``error``.

    Each re-queue increments ``retry_count``; at ``max_attempts`` the record is
    left in ``error`` with ``reconcile_exhausted`` set and is not swept again.
    """

    name = ErrorType.RECONCILIATION.value

    def __init__(self, intake: IntakeQueue, dispatcher: StageDispatcher, error_log: ErrorLog,
                 stuck_timeout_minutes: int = 15, max_attempts: int = 3):
        self.intake = intake
        self.dispatcher = dispatcher
        self.error_log = error_log
        self.stuck_timeout = timedelta(minutes=stuck_timeout_minutes)
        self.max_attempts = max_attempts

    async def run_once(self) -> ReconcileReport:
        report = ReconcileReport()

        stuck = await self.intake.find_stuck(self.stuck_timeout)
        cutoff = utc_now() - self.stuck_timeout
        report.stuck_found = len(stuck)
        for record in stuck:
            if record.retry_count < self.max_attempts:
                if await self.intake.requeue(record.id, IntakeStatus.PROCESSING, started_before=cutoff):
                    report.requeued.append(record.id)
            else:
                await self.intake.mark_error(
                    record.id, f"Stuck in processing; reconciliation limit ({self.max_attempts}) reached"
                )
                await self._exhaust(record, report)

        errored = await self.intake.find_errored()
        report.errored_found = len(errored)
        for record in errored:
            if record.retry_count < self.max_attempts:
                if await self.intake.requeue(record.id, IntakeStatus.ERROR):
                    report.requeued.append(record.id)
            else:
                await self._exhaust(record, report)

        if report.requeued:
            report.triggered = await self._trigger(len(report.requeued))

        logger.info(
            f"Reconciliation: {report.stuck_found} stuck, {report.errored_found} errored, "
            f"{len(report.requeued)} requeued, {len(report.exhausted)} exhausted"
        )
        return report

    async def _exhaust(self, record: IntakeRecord, report: ReconcileReport):
        if not await self.intake.mark_exhausted(record.id):
            return
        report.exhausted.append(record.id)
        logger.warning(f"Intake {mask_id(record.id)} exhausted after {record.retry_count} reconciliation(s)")
        await self.error_log.record(
            stage=self.name,
            error=WorkflowError(f"Reconciliation limit reached after {record.retry_count} attempt(s)"),
            record_id=record.id,
            correlation_id=record.correlation_id,
            context={"last_error": record.error},
        )

    async def _trigger(self, requeued: int) -> bool:
        message = WorkflowMessage(
            channel=Channel.PROCESS_QUEUE.value,
            payload={"reason": "reconciliation", "requeued": requeued},
        )
        try:
            await self.dispatcher.publish(Channel.PROCESS_QUEUE.value, message)
            return True
        except DeliveryFailure as e:
            # The intake poll timer claims the records anyway
            logger.error(f"Reconciliation trigger not published: {e}")
            return False
