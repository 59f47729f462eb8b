from loguru import logger

from intake_workflow.athena import OAuthTokenProvider
from intake_workflow.constants import Channel, ErrorType
from intake_workflow.dispatcher import StageDispatcher
from intake_workflow.exceptions import DeliveryFailure, TokenRefreshError
from intake_workflow.models import ErrorLog, TokenStore
from intake_workflow.schemas import Credential, WorkflowMessage


class TokenRefreshStage:
    """
    Timer-driven refresh of the athenahealth bearer credential.

    The stored credential is replaced only after a successful token response,
    so a failed refresh leaves the previous credential usable until it expires.
    """

    name = ErrorType.TOKEN_REFRESH.value

    def __init__(self, token_store: TokenStore, provider: OAuthTokenProvider, dispatcher: StageDispatcher,
                 error_log: ErrorLog, safety_buffer_seconds: int = 600):
        self.token_store = token_store
        self.provider = provider
        self.dispatcher = dispatcher
        self.error_log = error_log
        self.safety_buffer_seconds = safety_buffer_seconds

    async def refresh(self) -> Credential:
        """
        Raises:
            TokenRefreshError: the provider call or the credential write failed
        """
        logger.info("Refreshing athenahealth token")
        try:
            token = await self.provider.fetch_token()
            credential = await self.token_store.store(
                access_token=token["access_token"],
                expires_in=token["expires_in"],
                scope=token.get("scope", ""),
                safety_buffer_seconds=self.safety_buffer_seconds,
            )
        except Exception as e:
            await self._report_failure(e)
            if isinstance(e, TokenRefreshError):
                raise
            raise TokenRefreshError(f"Token refresh failed: {e}") from e

        await self.token_store.log_refresh(True, credential)
        return credential

    async def ensure_fresh(self) -> Credential:
        """Refresh only when no credential is stored or it is past its buffered expiry."""
        credential = await self.token_store.get_credential()
        if credential is not None and not credential.is_expired():
            return credential
        return await self.refresh()

    async def _report_failure(self, error: BaseException):
        logger.error(f"Token refresh failed: {error}")
        await self.error_log.record(stage=self.name, error=error)
        await self.token_store.log_refresh(False, error=str(error))

        notification = WorkflowMessage(
            channel=Channel.ERROR_NOTIFICATIONS.value,
            payload={"stage": self.name, "error": str(error), "error_type": type(error).__name__},
        )
        try:
            await self.dispatcher.publish(Channel.ERROR_NOTIFICATIONS.value, notification)
        except DeliveryFailure as e:
            logger.error(f"Token refresh failure notification not published: {e}")
