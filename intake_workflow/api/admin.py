from typing import Optional

from fastapi import APIRouter, Depends, Query

from intake_workflow.dependencies import WorkflowContainer, get_container, require_admin_key
from intake_workflow.utils import convert_objectid

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.get("/dead-letters")
async def list_dead_letters(
    channel: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    container: WorkflowContainer = Depends(get_container),
):
    dead_letters = await container.dispatcher.list_dead_letters(channel=channel, limit=limit)
    for entry in dead_letters:
        entry["id"] = entry.pop("_id")
    return {"dead_letters": convert_objectid(dead_letters), "count": len(dead_letters)}


@router.post("/dead-letters/{dead_letter_id}/requeue")
async def requeue_dead_letter(dead_letter_id: str, container: WorkflowContainer = Depends(get_container)):
    message_id = await container.dispatcher.requeue_dead_letter(dead_letter_id)
    return {"success": True, "message_id": message_id}


@router.post("/reconcile")
async def run_reconciliation(container: WorkflowContainer = Depends(get_container)):
    report = await container.reconciler.run_once()
    return {"success": True, **report.to_dict()}


@router.post("/token/refresh")
async def refresh_token(force: bool = False, container: WorkflowContainer = Depends(get_container)):
    stage = container.token_refresh
    credential = await (stage.refresh() if force else stage.ensure_fresh())
    return {
        "success": True,
        "expires_at": credential.expires_at.isoformat(),
        "refresh_count": credential.refresh_count,
    }


@router.get("/queue")
async def queue_overview(container: WorkflowContainer = Depends(get_container)):
    return {
        "intake": await container.intake.count_by_status(),
        "channels": await container.dispatcher.channel_depths(),
        "failed_calls": await container.failed_calls.count(),
    }
