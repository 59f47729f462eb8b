"""Document-store models package"""
from intake_workflow.models.activity import ActivityLog
from intake_workflow.models.appointments import AppointmentLedger
from intake_workflow.models.credential import TokenStore
from intake_workflow.models.error_log import ErrorLog, FailedCallLog
from intake_workflow.models.intake import IntakeQueue

__all__ = [
    'ActivityLog',
    'AppointmentLedger',
    'TokenStore',
    'ErrorLog',
    'FailedCallLog',
    'IntakeQueue',
]
