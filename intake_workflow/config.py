import os
from dataclasses import dataclass
from typing import List, Optional, Tuple
from dotenv import load_dotenv
from loguru import logger

from intake_workflow.constants import DEFAULT_APPOINTMENT_TYPE_ID

REQUIRED_WORKER_ENV_VARS = [
    "MONGO_URI",
    "ATHENA_BASE_URL",
    "ATHENA_PRACTICE_ID",
    "ATHENA_DEPARTMENT_ID",
    "ATHENA_CLIENT_ID",
    "ATHENA_CLIENT_SECRET",
]

REQUIRED_API_ENV_VARS = [
    "MONGO_URI",
]


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class WorkflowSettings:
    """Runtime configuration for the ingress API and the workflow worker.

    Every field has an environment variable of the same name in upper case.
    Defaults reflect the production workflow schedule.
    """
    env: str = "local"

    mongo_uri: str = "mongodb://localhost:27017/"
    mongo_db_name: str = "intake_workflow"
    mongo_max_pool_size: int = 10
    mongo_server_selection_timeout_ms: int = 5000
    mongo_operation_timeout_ms: int = 10000

    athena_base_url: str = ""
    athena_practice_id: str = ""
    athena_department_id: str = ""
    athena_token_url: str = ""
    athena_client_id: str = ""
    athena_client_secret: str = ""
    athena_scope: str = "athena/service/Athenanet.MDP.*"
    http_timeout_seconds: int = 30

    token_safety_buffer_seconds: int = 600
    token_refresh_interval_seconds: int = 2700
    reconcile_interval_seconds: int = 900
    stuck_timeout_minutes: int = 15
    max_reconcile_attempts: int = 3
    dispatcher_max_attempts: int = 5
    dispatcher_lease_seconds: int = 300
    dispatcher_publish_timeout_seconds: int = 10
    claim_batch_size: int = 10
    poll_interval_seconds: int = 5
    intake_poll_interval_seconds: int = 60

    default_appointment_type_id: str = DEFAULT_APPOINTMENT_TYPE_ID
    default_city: str = ""
    default_state: str = ""

    admin_api_key: Optional[str] = None
    webhook_rate_limit: str = "120/minute"

    @classmethod
    def from_env(cls) -> "WorkflowSettings":
        load_dotenv()
        base_url = os.getenv("ATHENA_BASE_URL", "").rstrip("/")
        return cls(
            env=os.getenv("ENV", "local"),
            mongo_uri=os.getenv("MONGO_URI", cls.mongo_uri),
            mongo_db_name=os.getenv("MONGO_DB_NAME", cls.mongo_db_name),
            mongo_max_pool_size=_int_env("MONGO_MAX_POOL_SIZE", cls.mongo_max_pool_size),
            mongo_server_selection_timeout_ms=_int_env(
                "MONGO_SERVER_SELECTION_TIMEOUT_MS", cls.mongo_server_selection_timeout_ms
            ),
            mongo_operation_timeout_ms=_int_env("MONGO_OPERATION_TIMEOUT_MS", cls.mongo_operation_timeout_ms),
            athena_base_url=base_url,
            athena_practice_id=os.getenv("ATHENA_PRACTICE_ID", ""),
            athena_department_id=os.getenv("ATHENA_DEPARTMENT_ID", ""),
            athena_token_url=os.getenv("ATHENA_TOKEN_URL", f"{base_url}/oauth2/v1/token" if base_url else ""),
            athena_client_id=os.getenv("ATHENA_CLIENT_ID", ""),
            athena_client_secret=os.getenv("ATHENA_CLIENT_SECRET", ""),
            athena_scope=os.getenv("ATHENA_SCOPE", cls.athena_scope),
            http_timeout_seconds=_int_env("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds),
            token_safety_buffer_seconds=_int_env("TOKEN_SAFETY_BUFFER_SECONDS", cls.token_safety_buffer_seconds),
            token_refresh_interval_seconds=_int_env(
                "TOKEN_REFRESH_INTERVAL_SECONDS", cls.token_refresh_interval_seconds
            ),
            reconcile_interval_seconds=_int_env("RECONCILE_INTERVAL_SECONDS", cls.reconcile_interval_seconds),
            stuck_timeout_minutes=_int_env("STUCK_TIMEOUT_MINUTES", cls.stuck_timeout_minutes),
            max_reconcile_attempts=_int_env("MAX_RECONCILE_ATTEMPTS", cls.max_reconcile_attempts),
            dispatcher_max_attempts=_int_env("DISPATCHER_MAX_ATTEMPTS", cls.dispatcher_max_attempts),
            dispatcher_lease_seconds=_int_env("DISPATCHER_LEASE_SECONDS", cls.dispatcher_lease_seconds),
            dispatcher_publish_timeout_seconds=_int_env(
                "DISPATCHER_PUBLISH_TIMEOUT_SECONDS", cls.dispatcher_publish_timeout_seconds
            ),
            claim_batch_size=_int_env("CLAIM_BATCH_SIZE", cls.claim_batch_size),
            poll_interval_seconds=_int_env("POLL_INTERVAL_SECONDS", cls.poll_interval_seconds),
            intake_poll_interval_seconds=_int_env("INTAKE_POLL_INTERVAL_SECONDS", cls.intake_poll_interval_seconds),
            default_appointment_type_id=os.getenv("DEFAULT_APPOINTMENT_TYPE_ID", cls.default_appointment_type_id),
            default_city=os.getenv("DEFAULT_CITY", ""),
            default_state=os.getenv("DEFAULT_STATE", ""),
            admin_api_key=os.getenv("ADMIN_API_KEY") or None,
            webhook_rate_limit=os.getenv("WEBHOOK_RATE_LIMIT", cls.webhook_rate_limit),
        )


def validate_env_vars(required_vars: List[str]) -> Tuple[bool, List[str]]:
    missing = [var for var in required_vars if not os.getenv(var)]
    return len(missing) == 0, missing


async def validate_startup(settings: WorkflowSettings, db, required_vars: List[str]) -> None:
    from intake_workflow.database import check_connection

    logger.info("Validating environment...")

    all_present, missing = validate_env_vars(required_vars)
    if not all_present:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    logger.info("✓ Required environment variables present")

    if settings.token_refresh_interval_seconds <= 0:
        raise RuntimeError("TOKEN_REFRESH_INTERVAL_SECONDS must be positive")

    is_healthy, error = await check_connection(db)
    if not is_healthy:
        raise RuntimeError(f"MongoDB health check failed: {error}")

    logger.info("✓ MongoDB connection successful")
    logger.info("Validation complete - ready to start")
