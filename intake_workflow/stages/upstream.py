from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from pymongo.errors import PyMongoError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from intake_workflow.exceptions import CredentialExpired, CredentialUnavailable
from intake_workflow.models import TokenStore
from intake_workflow.schemas import Credential
from intake_workflow.stages.base import Stage
from intake_workflow.stages.token_refresh import TokenRefreshStage

# Bookkeeping written right after a successful upstream call. Losing it would
# make a redelivery repeat the call, so transient Mongo faults are retried in place.
persist_after_upstream = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(PyMongoError),
    reraise=True,
)


class UpstreamStage(Stage):
    """
    A stage that calls athenahealth with the shared bearer credential.

    A missing or expired credential is refreshed on demand. A credential the
    upstream rejects (401/403) is invalidated, refreshed, and the call is
    repeated once with the new token.
    """

    def __init__(self, intake, dispatcher, error_log, token_store: TokenStore,
                 credentials: Optional[TokenRefreshStage] = None):
        super().__init__(intake, dispatcher, error_log)
        self.token_store = token_store
        self.credentials = credentials

    async def credential(self) -> Credential:
        try:
            return await self.token_store.get_valid_credential()
        except CredentialUnavailable:
            if self.credentials is None:
                raise
            return await self.credentials.ensure_fresh()

    async def call_upstream(self, call: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run ``call(*args, credential)``."""
        credential = await self.credential()
        try:
            return await call(*args, credential)
        except CredentialExpired as e:
            await self.token_store.invalidate(str(e))
            if self.credentials is None:
                raise
            logger.warning(f"{self.name}: credential rejected upstream, refreshing and retrying once")
            credential = await self.credentials.refresh()
            return await call(*args, credential)
