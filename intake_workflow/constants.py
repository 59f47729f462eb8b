from enum import Enum


class IntakeStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class Channel(str, Enum):
    PROCESS_QUEUE = "process-patient-queue"
    CREATE_PATIENT = "create-patient"
    BOOK_APPOINTMENT = "book-appointment"
    PATIENT_ACTIVITY = "patient-activity"
    ERROR_NOTIFICATIONS = "error-notifications"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


class ActivityType(str, Enum):
    PATIENT_CREATED = "PATIENT_CREATED"
    APPOINTMENT_BOOKED = "APPOINTMENT_BOOKED"


class ErrorType(str, Enum):
    INTAKE_PROCESSING = "intake_processing"
    PATIENT_CREATION = "patient_creation"
    APPOINTMENT_BOOKING = "appointment_booking"
    TOKEN_REFRESH = "token_refresh"
    ACTIVITY_LOGGING = "activity_logging"
    ERROR_REPORTING = "error_reporting"
    RECONCILIATION = "reconciliation"


INTAKE_SCHEMA_VERSION = 1
INTAKE_SOURCE_BLAND = "bland_ai"
CREDENTIAL_DOC_ID = "athena-current"
DEFAULT_APPOINTMENT_TYPE_ID = "15"
# Upstream rejects open-appointment queries spanning more than a week
MAX_OPEN_APPOINTMENT_WINDOW_DAYS = 7
