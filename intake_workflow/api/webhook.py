import os

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter

from intake_workflow.config import WorkflowSettings
from intake_workflow.constants import Channel
from intake_workflow.dependencies import WorkflowContainer, get_client_ip, get_container
from intake_workflow.exceptions import DeliveryFailure, ValidationError
from intake_workflow.schemas import (
    BlandWebhookPayload,
    IntakePayload,
    WebhookAccepted,
    WebhookNotProcessed,
    WorkflowMessage,
)
from intake_workflow.utils import mask_id, mask_phone

router = APIRouter()

limiter = Limiter(key_func=get_client_ip)


def webhook_rate_limit() -> str:
    return os.getenv("WEBHOOK_RATE_LIMIT", WorkflowSettings.webhook_rate_limit)


@router.post("/webhook")
@router.post("/webhook/bland")
@limiter.limit(webhook_rate_limit)
async def handle_bland_webhook(request: Request, container: WorkflowContainer = Depends(get_container)):
    try:
        body = BlandWebhookPayload.model_validate(await request.json())
    except (ValueError, PydanticValidationError) as e:
        logger.warning(f"Unreadable webhook body: {type(e).__name__}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid webhook payload"},
        )

    # Never log raw variables, they carry PHI
    logger.info(
        f"Bland webhook - call={mask_id(body.call_id)}, status={body.status}, "
        f"caller={mask_phone(body.variables.phone)}"
    )

    if body.status != "completed":
        reason = f"Call status: {body.status}"
        await container.failed_calls.log(
            call_id=body.call_id,
            status=body.status,
            reason=reason,
            pathway_id=body.pathway_id,
        )
        return WebhookNotProcessed(reason=reason).model_dump(exclude_none=True)

    settings = container.settings
    payload = IntakePayload.from_webhook(body, settings.default_city, settings.default_state)

    try:
        record_id = await container.intake.enqueue(payload)
    except ValidationError as e:
        await container.failed_calls.log(
            call_id=body.call_id,
            status=body.status,
            reason="Missing required fields",
            pathway_id=body.pathway_id,
            errors=e.errors,
            variables=body.variables.model_dump(exclude_none=True),
        )
        return WebhookNotProcessed(errors=e.errors).model_dump(exclude_none=True)

    record = await container.intake.require(record_id)
    trigger = WorkflowMessage(
        channel=Channel.PROCESS_QUEUE.value,
        record_id=record_id,
        correlation_id=record.correlation_id,
        payload={"reason": "webhook"},
    )
    dispatched = True
    try:
        await container.dispatcher.publish(Channel.PROCESS_QUEUE.value, trigger)
    except DeliveryFailure as e:
        # Record is durable; the intake poll timer claims it
        dispatched = False
        logger.error(f"Queue trigger for {mask_id(record_id)} not published: {e}")

    return WebhookAccepted(
        patientQueueId=record_id,
        appointmentFound=payload.has_appointment_selection,
        dispatched=dispatched,
    )
