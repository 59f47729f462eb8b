from fastapi import APIRouter, Depends, HTTPException

from intake_workflow.dependencies import get_intake_queue
from intake_workflow.models import IntakeQueue
from intake_workflow.schemas import IntakeStatusResponse

router = APIRouter()


@router.get("/{record_id}", response_model=IntakeStatusResponse)
async def get_intake_status(record_id: str, intake: IntakeQueue = Depends(get_intake_queue)):
    record = await intake.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Intake record not found")
    return IntakeStatusResponse.from_record(record)
