"""
athenahealth client tests: error classification, slot matching and circuit breaking.
"""

from datetime import date, timedelta

import pytest

from intake_workflow.athena import AthenaClient, classify_http_error, closest_appointment
from intake_workflow.exceptions import (
    CredentialExpired,
    RemoteNotFound,
    RemoteTransient,
    ValidationError,
    is_retryable,
)
from intake_workflow.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)
from intake_workflow.schemas import Credential
from intake_workflow.utils import utc_now


def make_credential():
    now = utc_now()
    return Credential(token="abc", created_at=now, expires_at=now + timedelta(hours=1), expires_in=3600)


class TestClassifyHttpError:

    @pytest.mark.parametrize("status", [401, 403])
    def test_rejected_credential(self, status):
        error = classify_http_error(status, {"error": "Unauthorized"}, "create_patient")
        assert isinstance(error, CredentialExpired)
        assert is_retryable(error)

    def test_404_is_final(self):
        error = classify_http_error(404, "", "book_appointment")
        assert isinstance(error, RemoteNotFound)
        assert not is_retryable(error)

    def test_bad_identifier_in_400_body(self):
        error = classify_http_error(400, {"detailedmessage": "Invalid appointment ID"}, "book_appointment")
        assert isinstance(error, RemoteNotFound)

    def test_plain_400_is_transient(self):
        error = classify_http_error(400, {"error": "Try again later"}, "create_patient")
        assert isinstance(error, RemoteTransient)

    def test_server_error_keeps_status(self):
        error = classify_http_error(503, "Service Unavailable", "get_open_appointments")
        assert isinstance(error, RemoteTransient)
        assert error.status == 503
        assert "get_open_appointments" in str(error)


class TestClosestAppointment:

    def test_nearest_start_time_wins(self):
        slots = [
            {"appointmentid": "1", "starttime": "08:00"},
            {"appointmentid": "2", "starttime": "13:45"},
            {"appointmentid": "3", "starttime": "16:00"},
        ]
        assert closest_appointment(slots, "14:15")["appointmentid"] == "2"

    def test_unparseable_times_ignored(self):
        slots = [{"appointmentid": "1", "starttime": "soon"}, {"appointmentid": "2", "starttime": "10:00"}]
        assert closest_appointment(slots, "09:00")["appointmentid"] == "2"

    def test_no_slots_or_bad_preference(self):
        assert closest_appointment([], "09:00") is None
        assert closest_appointment([{"starttime": "09:00"}], "morning") is None


class TestOpenAppointmentWindow:

    @pytest.mark.asyncio
    async def test_window_longer_than_a_week_rejected(self, settings):
        client = AthenaClient(None, settings, CircuitBreakerRegistry())
        start = date(2026, 11, 2)

        with pytest.raises(ValidationError):
            await client.get_open_appointments(start, start + timedelta(days=8), make_credential())

    @pytest.mark.asyncio
    async def test_reversed_window_rejected(self, settings):
        client = AthenaClient(None, settings, CircuitBreakerRegistry())
        start = date(2026, 11, 2)

        with pytest.raises(ValidationError):
            await client.get_open_appointments(start, start - timedelta(days=1), make_credential())


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_repeated_transient_failures(self):
        circuit = CircuitBreakerRegistry().get("athena_api", CircuitBreakerConfig(failure_threshold=3))

        async def down():
            raise RemoteTransient("503", status=503)

        for _ in range(3):
            with pytest.raises(RemoteTransient):
                await circuit.call(down)

        assert circuit.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            await circuit.call(down)
        assert is_retryable(exc_info.value)

    @pytest.mark.asyncio
    async def test_final_errors_do_not_trip(self):
        circuit = CircuitBreakerRegistry().get("athena_api", CircuitBreakerConfig(failure_threshold=2))

        async def missing():
            raise RemoteNotFound("no such appointment")

        for _ in range(5):
            with pytest.raises(RemoteNotFound):
                await circuit.call(missing)

        assert circuit.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_recovery(self):
        circuit = CircuitBreakerRegistry().get(
            "athena_oauth", CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0, success_threshold=1)
        )

        async def down():
            raise RemoteTransient("timeout")

        async def up():
            return "ok"

        with pytest.raises(RemoteTransient):
            await circuit.call(down)
        assert circuit.state == CircuitState.OPEN

        assert await circuit.call(up) == "ok"
        assert circuit.state == CircuitState.CLOSED

    def test_registry_reset(self):
        registry = CircuitBreakerRegistry()
        circuit = registry.get("athena_api")
        circuit.state = CircuitState.OPEN

        assert registry.reset("athena_api") is True
        assert circuit.state == CircuitState.CLOSED
        assert registry.reset("unknown") is False
        assert registry.statuses()["athena_api"]["state"] == "closed"
