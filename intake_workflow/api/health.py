from fastapi import APIRouter, Depends

from intake_workflow import __version__
from intake_workflow.database import check_connection
from intake_workflow.dependencies import WorkflowContainer, get_container

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "Patient Intake Workflow",
        "version": __version__,
        "status": "operational",
        "endpoints": {
            "health": "/health",
            "webhook": "/webhook",
            "intake": "/intake/{id}",
            "admin": "/admin/*",
        },
        "documentation": "/docs"
    }


@router.get("/health")
async def health(container: WorkflowContainer = Depends(get_container)):
    is_connected, db_status = await check_connection(container.db)

    credential_status = {"present": False}
    if is_connected:
        credential = await container.token_store.get_credential()
        if credential is not None:
            credential_status = {
                "present": True,
                "expired": credential.is_expired(),
                "expires_at": credential.expires_at.isoformat(),
            }

    return {
        "status": "healthy" if is_connected and not container.circuits.any_open() else "degraded",
        "service": "intake-workflow-api",
        "database": db_status,
        "credential": credential_status,
        "circuits": container.circuits.statuses(),
    }
