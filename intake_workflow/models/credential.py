from datetime import timedelta
from typing import Optional

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from intake_workflow.constants import CREDENTIAL_DOC_ID
from intake_workflow.exceptions import CredentialExpired, CredentialUnavailable
from intake_workflow.schemas import Credential
from intake_workflow.utils import utc_now


class TokenStore:
    """Holds the single current athenahealth bearer credential.

    Only the token refresh stage writes here, and it writes the whole
    credential in one document update so readers never see a mix of old and new.
    """

    TOKENS_COLLECTION = "api_tokens"
    REFRESH_LOG_COLLECTION = "token_refresh_log"

    def __init__(self, db: AsyncIOMotorDatabase, doc_id: str = CREDENTIAL_DOC_ID):
        self.db = db
        self.tokens = db[self.TOKENS_COLLECTION]
        self.refresh_log = db[self.REFRESH_LOG_COLLECTION]
        self.doc_id = doc_id

    async def get_credential(self) -> Optional[Credential]:
        doc = await self.tokens.find_one({"_id": self.doc_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return Credential.model_validate(doc)

    async def get_valid_credential(self) -> Credential:
        """
        Raises:
            CredentialUnavailable: nothing stored yet.
            CredentialExpired: stored credential is past its buffered expiry.
        """
        credential = await self.get_credential()
        if credential is None:
            raise CredentialUnavailable("No valid token found. Run token refresh first.")
        if credential.is_expired():
            raise CredentialExpired(f"Token expired at {credential.expires_at.isoformat()}")
        return credential

    async def store(self, access_token: str, expires_in: int, scope: str = "",
                    safety_buffer_seconds: int = 600, token_type: str = "Bearer") -> Credential:
        now = utc_now()
        # Never let the buffer swallow the whole lifetime of a short-lived token
        usable_seconds = expires_in - safety_buffer_seconds
        if usable_seconds <= 0:
            usable_seconds = max(expires_in // 2, 1)

        doc = await self.tokens.find_one_and_update(
            {"_id": self.doc_id},
            {
                "$set": {
                    "token": access_token,
                    "type": token_type,
                    "service": "Athenahealth",
                    "scope": scope or "",
                    "created_at": now,
                    "expires_at": now + timedelta(seconds=usable_seconds),
                    "expires_in": int(expires_in),
                    "last_refreshed": now,
                },
                "$inc": {"refresh_count": 1},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        doc.pop("_id", None)
        credential = Credential.model_validate(doc)
        logger.info(
            f"Token stored (refresh #{credential.refresh_count}), expires at {credential.expires_at.isoformat()}"
        )
        return credential

    async def invalidate(self, reason: str = "") -> bool:
        """Expire the stored credential now so the next reader refreshes instead of reusing it."""
        result = await self.tokens.update_one(
            {"_id": self.doc_id},
            {"$set": {"expires_at": utc_now(), "invalidated_reason": reason or None}},
        )
        if result.modified_count:
            logger.warning(f"Stored token invalidated: {reason or 'no reason given'}")
        return result.modified_count > 0

    async def log_refresh(self, success: bool, credential: Optional[Credential] = None, error: str = None):
        try:
            await self.refresh_log.insert_one({
                "status": "success" if success else "error",
                "timestamp": utc_now(),
                "expires_at": credential.expires_at if credential else None,
                "refresh_count": credential.refresh_count if credential else None,
                "error": error,
            })
        except Exception as e:
            logger.error(f"Failed to write token refresh log: {e}")
