"""Component wiring and FastAPI dependency providers."""
import secrets
from dataclasses import dataclass
from typing import List, Optional

import aiohttp
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from motor.motor_asyncio import AsyncIOMotorDatabase

from intake_workflow.alerts import EmailAlerter
from intake_workflow.athena import AthenaClient, OAuthTokenProvider
from intake_workflow.config import WorkflowSettings
from intake_workflow.dispatcher import StageDispatcher
from intake_workflow.models import (
    ActivityLog,
    AppointmentLedger,
    ErrorLog,
    FailedCallLog,
    IntakeQueue,
    TokenStore,
)
from intake_workflow.reconciler import Reconciler
from intake_workflow.resilience import CircuitBreakerRegistry
from intake_workflow.stages import (
    ActivityLoggingStage,
    AppointmentBookingStage,
    ErrorReportingStage,
    IntakeProcessorStage,
    PatientCreationStage,
    Stage,
    TokenRefreshStage,
)

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


@dataclass
class WorkflowContainer:
    settings: WorkflowSettings
    db: AsyncIOMotorDatabase
    circuits: CircuitBreakerRegistry
    intake: IntakeQueue
    token_store: TokenStore
    error_log: ErrorLog
    failed_calls: FailedCallLog
    appointments: AppointmentLedger
    activity_log: ActivityLog
    dispatcher: StageDispatcher
    athena: AthenaClient
    token_provider: OAuthTokenProvider
    alerter: EmailAlerter
    intake_processor: IntakeProcessorStage
    patient_creation: PatientCreationStage
    appointment_booking: AppointmentBookingStage
    activity_logging: ActivityLoggingStage
    error_reporting: ErrorReportingStage
    token_refresh: TokenRefreshStage
    reconciler: Reconciler

    @property
    def channel_stages(self) -> List[Stage]:
        return [
            self.intake_processor,
            self.patient_creation,
            self.appointment_booking,
            self.activity_logging,
            self.error_reporting,
        ]

    async def ensure_indexes(self):
        await self.intake.ensure_indexes()
        await self.dispatcher.ensure_indexes()
        await self.error_log.ensure_indexes()
        await self.activity_log.ensure_indexes()


def build_container(
    settings: WorkflowSettings,
    db: AsyncIOMotorDatabase,
    http_session: Optional[aiohttp.ClientSession] = None,
    athena=None,
    token_provider=None,
    alerter: Optional[EmailAlerter] = None,
) -> WorkflowContainer:
    """Wire every workflow component around one database handle.

    ``athena``, ``token_provider`` and ``alerter`` may be replaced with fakes;
    otherwise ``http_session`` is required for the real upstream clients.
    """
    circuits = CircuitBreakerRegistry()
    if athena is None or token_provider is None:
        if http_session is None:
            raise ValueError("http_session is required when upstream clients are not supplied")
        athena = athena or AthenaClient(http_session, settings, circuits)
        token_provider = token_provider or OAuthTokenProvider(http_session, settings, circuits)
    alerter = alerter or EmailAlerter.from_env(environment=settings.env)

    intake = IntakeQueue(db)
    token_store = TokenStore(db)
    error_log = ErrorLog(db)
    appointments = AppointmentLedger(db)
    activity_log = ActivityLog(db)
    dispatcher = StageDispatcher(
        db,
        max_attempts=settings.dispatcher_max_attempts,
        lease_seconds=settings.dispatcher_lease_seconds,
        publish_timeout_seconds=settings.dispatcher_publish_timeout_seconds,
    )
    token_refresh = TokenRefreshStage(
        token_store, token_provider, dispatcher, error_log,
        safety_buffer_seconds=settings.token_safety_buffer_seconds,
    )

    return WorkflowContainer(
        settings=settings,
        db=db,
        circuits=circuits,
        intake=intake,
        token_store=token_store,
        error_log=error_log,
        failed_calls=FailedCallLog(db),
        appointments=appointments,
        activity_log=activity_log,
        dispatcher=dispatcher,
        athena=athena,
        token_provider=token_provider,
        alerter=alerter,
        intake_processor=IntakeProcessorStage(
            intake, dispatcher, error_log, batch_size=settings.claim_batch_size
        ),
        patient_creation=PatientCreationStage(
            intake, dispatcher, error_log, token_store, athena,
            department_id=settings.athena_department_id,
            default_appointment_type_id=settings.default_appointment_type_id,
            credentials=token_refresh,
        ),
        appointment_booking=AppointmentBookingStage(
            intake, dispatcher, error_log, token_store, athena, appointments,
            default_appointment_type_id=settings.default_appointment_type_id,
            credentials=token_refresh,
        ),
        activity_logging=ActivityLoggingStage(intake, dispatcher, error_log, activity_log),
        error_reporting=ErrorReportingStage(intake, dispatcher, error_log, alerter),
        token_refresh=token_refresh,
        reconciler=Reconciler(
            intake, dispatcher, error_log,
            stuck_timeout_minutes=settings.stuck_timeout_minutes,
            max_attempts=settings.max_reconcile_attempts,
        ),
    )


# FastAPI providers
def get_container(request: Request) -> WorkflowContainer:
    return request.app.state.container


def get_intake_queue(container: WorkflowContainer = Depends(get_container)) -> IntakeQueue:
    return container.intake


def get_settings(container: WorkflowContainer = Depends(get_container)) -> WorkflowSettings:
    return container.settings


async def require_admin_key(
    api_key: Optional[str] = Depends(admin_key_header),
    settings: WorkflowSettings = Depends(get_settings),
) -> None:
    if not settings.admin_api_key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")
    if not api_key or not secrets.compare_digest(api_key, settings.admin_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")


def get_client_ip(request: Request) -> str:
    """Rate-limit key: first X-Forwarded-For hop, falling back to the peer address."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
