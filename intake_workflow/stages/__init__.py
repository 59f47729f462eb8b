"""Workflow stages, one per dispatcher channel plus the token refresh timer."""
from intake_workflow.stages.activity_logging import ActivityLoggingStage
from intake_workflow.stages.appointment_booking import AppointmentBookingStage
from intake_workflow.stages.base import Stage, StageOutcome, StageResult
from intake_workflow.stages.error_reporting import ErrorReportingStage
from intake_workflow.stages.intake_processor import IntakeProcessorStage
from intake_workflow.stages.patient_creation import PatientCreationStage
from intake_workflow.stages.token_refresh import TokenRefreshStage
from intake_workflow.stages.upstream import UpstreamStage

__all__ = [
    'ActivityLoggingStage',
    'AppointmentBookingStage',
    'ErrorReportingStage',
    'IntakeProcessorStage',
    'PatientCreationStage',
    'Stage',
    'StageOutcome',
    'StageResult',
    'TokenRefreshStage',
    'UpstreamStage',
]
