"""athenahealth API client and OAuth token provider."""

import asyncio
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from intake_workflow.config import WorkflowSettings
from intake_workflow.constants import MAX_OPEN_APPOINTMENT_WINDOW_DAYS
from intake_workflow.exceptions import (
    CredentialExpired,
    RemoteNotFound,
    RemoteTransient,
    TokenRefreshError,
    ValidationError,
    WorkflowError,
)
from intake_workflow.resilience import CircuitBreakerRegistry
from intake_workflow.schemas import Credential
from intake_workflow.utils import mask_id

ATHENA_API_CIRCUIT = "athena_api"
ATHENA_OAUTH_CIRCUIT = "athena_oauth"

NOT_FOUND_MARKERS = ("not found", "invalid", "does not exist", "no such")


def _body_text(body: Any) -> str:
    if isinstance(body, (dict, list)):
        return json.dumps(body, default=str)
    return str(body or "")


def classify_http_error(status: int, body: Any, operation: str) -> WorkflowError:
    """
    Map an athenahealth error response onto the workflow taxonomy.

    401/403 → CredentialExpired (retryable after the next refresh)
    404, or 400/409/422 naming a bad identifier → RemoteNotFound (final)
    anything else → RemoteTransient (retryable)
    """
    text = _body_text(body)
    details = {"status": status, "response": body, "operation": operation}

    if status in (401, 403):
        return CredentialExpired(f"{operation}: upstream rejected credential (HTTP {status})", details=details)
    if status == 404:
        return RemoteNotFound(f"{operation}: not found (HTTP {status})", details=details)
    if status in (400, 409, 422) and any(marker in text.lower() for marker in NOT_FOUND_MARKERS):
        return RemoteNotFound(f"{operation}: {text[:200]}", details=details)
    return RemoteTransient(f"{operation} failed with HTTP {status}", status=status, details=details)


def closest_appointment(appointments: List[Dict[str, Any]], preferred_time: str) -> Optional[Dict[str, Any]]:
    """Pick the open slot whose start time is nearest to ``preferred_time`` (HH:MM)."""
    def to_minutes(value: str) -> Optional[int]:
        try:
            hours, minutes = str(value).split(":")[:2]
            return int(hours) * 60 + int(minutes)
        except (ValueError, AttributeError):
            return None

    preferred = to_minutes(preferred_time)
    if preferred is None:
        return None

    best_match = None
    min_diff = None
    for appointment in appointments:
        start = to_minutes(appointment.get("starttime", ""))
        if start is None:
            continue
        diff = abs(start - preferred)
        if min_diff is None or diff < min_diff:
            min_diff = diff
            best_match = appointment
    return best_match


class AthenaClient:
    """Form-encoded athenahealth calls, each bounded by a timeout and a circuit breaker."""

    def __init__(self, session: aiohttp.ClientSession, settings: WorkflowSettings,
                 circuits: CircuitBreakerRegistry):
        self.session = session
        self.settings = settings
        self.circuits = circuits
        self.timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)

    def _url(self, path: str) -> str:
        return f"{self.settings.athena_base_url}/v1/{self.settings.athena_practice_id}{path}"

    async def _request(self, method: str, path: str, credential: Credential, operation: str,
                       data: Optional[Dict[str, str]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Any:
        circuit = self.circuits.get(ATHENA_API_CIRCUIT)
        return await circuit.call(self._send, method, path, credential, operation, data, params)

    async def _send(self, method: str, path: str, credential: Credential, operation: str,
                    data: Optional[Dict[str, str]], params: Optional[Dict[str, Any]]) -> Any:
        headers = {"Authorization": credential.authorization_header}
        if data is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        try:
            async with self.session.request(
                method,
                self._url(path),
                data=data,
                params=params,
                headers=headers,
                timeout=self.timeout,
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError):
                    body = await resp.text()

                if resp.status >= 400:
                    raise classify_http_error(resp.status, body, operation)
                return body

        except asyncio.TimeoutError:
            raise RemoteTransient(
                f"{operation} timed out after {self.settings.http_timeout_seconds}s",
                details={"operation": operation},
            )
        except aiohttp.ClientError as e:
            raise RemoteTransient(f"{operation} connection error: {e}", details={"operation": operation})

    async def create_patient(self, fields: Dict[str, str], credential: Credential) -> str:
        body = await self._request("POST", "/patients", credential, "create_patient", data=fields)

        entry = body[0] if isinstance(body, list) and body else body
        patient_id = entry.get("patientid") if isinstance(entry, dict) else None
        if not patient_id:
            # The patient may exist upstream already; retrying would duplicate it
            raise WorkflowError("Patient creation response had no patientid", details={"response": body})

        logger.info(f"Patient created upstream: {mask_id(str(patient_id))}")
        return str(patient_id)

    async def book_appointment(self, appointment_id: str, patient_id: str, appointment_type_id: str,
                               credential: Credential) -> Dict[str, Any]:
        data = {
            "patientid": str(patient_id),
            "appointmenttypeid": str(appointment_type_id),
            "ignoreschedulablepermission": "true",
            "donotsendconfirmationemail": "false",
        }
        body = await self._request(
            "PUT", f"/appointments/{appointment_id}", credential, "book_appointment", data=data
        )
        confirmation = body[0] if isinstance(body, list) and body else body
        if not isinstance(confirmation, dict):
            confirmation = {"raw": confirmation}
        logger.info(f"Appointment {appointment_id} booked for patient {mask_id(str(patient_id))}")
        return confirmation

    async def get_open_appointments(self, start_date: date, end_date: date, credential: Credential,
                                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        if (end_date - start_date).days > MAX_OPEN_APPOINTMENT_WINDOW_DAYS:
            raise ValidationError(
                f"Open appointment queries are limited to {MAX_OPEN_APPOINTMENT_WINDOW_DAYS} days"
            )

        params = {
            "departmentid": self.settings.athena_department_id,
            "startdate": start_date.strftime("%m/%d/%Y"),
            "enddate": end_date.strftime("%m/%d/%Y"),
        }
        if limit:
            params["limit"] = limit

        body = await self._request("GET", "/appointments/open", credential, "get_open_appointments", params=params)
        if isinstance(body, dict):
            return body.get("appointments", []) or []
        return []

    async def find_matching_appointment(self, preferred_date: str, preferred_time: str,
                                        credential: Credential) -> Optional[Dict[str, Any]]:
        day = datetime.strptime(preferred_date, "%Y-%m-%d").date()
        appointments = await self.get_open_appointments(day, day, credential)
        match = closest_appointment(appointments, preferred_time)
        if match:
            logger.info(f"Matched open appointment {match.get('appointmentid')} for {preferred_date} {preferred_time}")
        return match


class OAuthTokenProvider:
    """Client-credentials grant against the athenahealth identity provider."""

    def __init__(self, session: aiohttp.ClientSession, settings: WorkflowSettings,
                 circuits: CircuitBreakerRegistry):
        self.session = session
        self.settings = settings
        self.circuits = circuits
        self.timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)

    async def fetch_token(self) -> Dict[str, Any]:
        """
        Returns:
            {"access_token": str, "expires_in": int, "scope": str}

        Raises:
            TokenRefreshError: provider rejected the request or returned no token
        """
        circuit = self.circuits.get(ATHENA_OAUTH_CIRCUIT)
        try:
            return await circuit.call(self._fetch_with_retry)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TokenRefreshError(f"Token provider unreachable: {e}") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
        reraise=True
    )
    async def _fetch_with_retry(self) -> Dict[str, Any]:
        async with self.session.post(
            self.settings.athena_token_url,
            data={"grant_type": "client_credentials", "scope": self.settings.athena_scope},
            auth=aiohttp.BasicAuth(self.settings.athena_client_id, self.settings.athena_client_secret),
            timeout=self.timeout,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise TokenRefreshError(
                    f"Token request failed with HTTP {resp.status}",
                    details={"status": resp.status, "response": text[:500]},
                )
            data = await resp.json(content_type=None)

        if not isinstance(data, dict) or not data.get("access_token"):
            raise TokenRefreshError("Token response did not include an access_token")

        return {
            "access_token": data["access_token"],
            "expires_in": int(data.get("expires_in") or 3600),
            "scope": data.get("scope", ""),
        }
