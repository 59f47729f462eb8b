import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from intake_workflow.constants import INTAKE_SCHEMA_VERSION, INTAKE_SOURCE_BLAND, IntakeStatus
from intake_workflow.utils import utc_now


class CallVariables(BaseModel):
    """Variables extracted by the voice pathway. Anything may be missing or spoken-form."""
    model_config = ConfigDict(extra="ignore")

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    sex: Optional[str] = None
    house_number: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    selected_appointment_id: Optional[str] = None
    selected_appointment_type_id: Optional[str] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def coerce_to_string(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class BlandWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    call_id: Optional[str] = None
    pathway_id: Optional[str] = None
    status: Optional[str] = None
    call_length: Optional[float] = None
    last_node_id: Optional[str] = None
    variables: CallVariables = Field(default_factory=CallVariables)


class IntakePayload(BaseModel):
    """Versioned, source-tagged intake payload stored on every IntakeRecord."""
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = INTAKE_SCHEMA_VERSION
    source: str = INTAKE_SOURCE_BLAND

    first_name: str
    last_name: str
    date_of_birth: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    sex: Optional[str] = None
    house_number: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None

    appointment_id: Optional[str] = None
    appointment_type_id: Optional[str] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None

    call_id: Optional[str] = None
    pathway_id: Optional[str] = None
    call_length: Optional[float] = None
    last_node_id: Optional[str] = None

    @classmethod
    def from_webhook(cls, body: BlandWebhookPayload, default_city: str = "", default_state: str = "") -> "IntakePayload":
        v = body.variables
        return cls(
            first_name=v.first_name or "",
            last_name=v.last_name or "",
            date_of_birth=v.date_of_birth,
            phone=v.phone,
            email=v.email,
            sex=v.sex,
            house_number=v.house_number,
            street=v.street,
            city=v.city or default_city or None,
            state=v.state or default_state or None,
            zip=v.zip,
            appointment_id=v.selected_appointment_id,
            appointment_type_id=v.selected_appointment_type_id,
            preferred_date=v.preferred_date,
            preferred_time=v.preferred_time,
            call_id=body.call_id,
            pathway_id=body.pathway_id,
            call_length=body.call_length,
            last_node_id=body.last_node_id,
        )

    @property
    def has_appointment_selection(self) -> bool:
        return bool(self.appointment_id) or bool(self.preferred_date and self.preferred_time)


class IntakeRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    payload: IntakePayload
    status: IntakeStatus
    correlation_id: str
    retry_count: int = 0
    reconcile_exhausted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processing_started: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_at: Optional[datetime] = None
    error: Optional[str] = None
    remote_patient_id: Optional[str] = None
    patient_creation_started_at: Optional[datetime] = None
    appointment_booked: bool = False
    appointment_id: Optional[str] = None
    appointment_booked_at: Optional[datetime] = None
    booking_confirmation: Optional[Dict[str, Any]] = None

    @classmethod
    def from_document(cls, doc: dict) -> "IntakeRecord":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class WorkflowMessage(BaseModel):
    """Unit of stage-to-stage handoff. Never mutated after publish; use follow_up for the next hop."""
    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    channel: str
    record_id: Optional[str] = None
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    def follow_up(self, channel: str, payload: Optional[Dict[str, Any]] = None) -> "WorkflowMessage":
        return WorkflowMessage(
            channel=channel,
            record_id=self.record_id,
            correlation_id=self.correlation_id,
            payload=dict(payload or {}),
        )


class Credential(BaseModel):
    token: str
    type: str = "Bearer"
    service: str = "Athenahealth"
    scope: str = ""
    created_at: datetime
    expires_at: datetime
    expires_in: int
    refresh_count: int = 0
    last_refreshed: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    @property
    def authorization_header(self) -> str:
        return f"{self.type} {self.token}"


class WebhookAccepted(BaseModel):
    success: bool = True
    message: str = "Patient intake queued"
    patientQueueId: str
    appointmentFound: bool
    dispatched: bool


class WebhookNotProcessed(BaseModel):
    received: bool = True
    processed: bool = False
    reason: Optional[str] = None
    errors: Optional[List[str]] = None


class IntakeStatusResponse(BaseModel):
    id: str
    status: IntakeStatus
    created_at: Optional[datetime] = None
    processing_started: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int = 0
    remote_patient_id: Optional[str] = None
    appointment_booked: bool = False
    appointment_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: IntakeRecord) -> "IntakeStatusResponse":
        return cls(
            id=record.id,
            status=record.status,
            created_at=record.created_at,
            processing_started=record.processing_started,
            completed_at=record.completed_at,
            error_at=record.error_at,
            error=record.error,
            retry_count=record.retry_count,
            remote_patient_id=record.remote_patient_id,
            appointment_booked=record.appointment_booked,
            appointment_id=record.appointment_id or record.payload.appointment_id,
        )
