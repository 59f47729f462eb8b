"""
HTTP tests for the webhook, status polling and admin routes.
"""

import pytest

from httpx import ASGITransport, AsyncClient
from loguru import logger

from conftest import ADMIN_KEY, drain_all, webhook_body
from intake_workflow.constants import Channel, IntakeStatus
from intake_workflow.exceptions import DeliveryFailure, ValidationError
from intake_workflow.main import create_app
from intake_workflow.schemas import WorkflowMessage


class TestWebhook:

    @pytest.mark.asyncio
    async def test_completed_call_with_appointment_is_booked(self, client, container, credential, fake_athena):
        response = await client.post("/webhook", json=webhook_body(selected_appointment_id="12345"))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["appointmentFound"] is True
        assert data["dispatched"] is True
        record_id = data["patientQueueId"]

        await drain_all(container)

        status = (await client.get(f"/intake/{record_id}")).json()
        assert status["status"] == IntakeStatus.COMPLETED.value
        assert status["remote_patient_id"] == "900001"
        assert status["appointment_booked"] is True
        assert status["appointment_id"] == "12345"

        booking = await container.appointments.find_by_record(record_id)
        assert booking["appointment_id"] == "12345"

        # Normalized on the way in
        assert fake_athena.created[0]["mobilephone"] == "5552345678"
        assert fake_athena.created[0]["email"] == "maria.lopez@example.com"

    @pytest.mark.asyncio
    async def test_unanswered_call_is_logged_not_queued(self, client, container):
        response = await client.post("/webhook", json=webhook_body(status="no-answer"))

        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": False, "reason": "Call status: no-answer"}
        assert await container.failed_calls.count() == 1
        assert await container.intake.records.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_missing_fields_are_reported(self, client, container):
        response = await client.post("/webhook/bland", json=webhook_body(last_name=None, date_of_birth="someday"))

        data = response.json()
        assert response.status_code == 200
        assert data["processed"] is False
        assert "last_name is required" in data["errors"]
        assert len(data["errors"]) == 2

        failed = await container.failed_calls.failed_calls.find_one({})
        assert failed["reason"] == "Missing required fields"
        assert await container.intake.records.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_caller_phone_is_masked_in_logs(self, client):
        lines = []
        sink_id = logger.add(lines.append, format="{message}")
        try:
            await client.post("/webhook", json=webhook_body(call_id="call-masked"))
        finally:
            logger.remove(sink_id)

        logged = "".join(lines)
        assert "caller=***-***-5678" in logged
        assert "234 5678" not in logged
        assert "2345678" not in logged

    @pytest.mark.asyncio
    async def test_redelivered_webhook_is_deduplicated(self, client, container):
        first = (await client.post("/webhook", json=webhook_body(call_id="call-dup"))).json()
        second = (await client.post("/webhook", json=webhook_body(call_id="call-dup"))).json()

        assert first["patientQueueId"] == second["patientQueueId"]
        assert await container.intake.records.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_publish_failure_still_queues(self, client, container, monkeypatch):
        async def failing_publish(channel, message):
            raise DeliveryFailure("publish timed out")

        monkeypatch.setattr(container.dispatcher, "publish", failing_publish)

        response = await client.post("/webhook", json=webhook_body())

        data = response.json()
        assert data["success"] is True
        assert data["dispatched"] is False
        record = await container.intake.get(data["patientQueueId"])
        assert record.status == IntakeStatus.PENDING

    @pytest.mark.asyncio
    async def test_unreadable_body(self, client):
        response = await client.post("/webhook", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_internal_failure_returns_generic_500(self, container, monkeypatch):
        async def broken_enqueue(payload):
            raise RuntimeError("disk full")

        monkeypatch.setattr(container.intake, "enqueue", broken_enqueue)
        app = create_app(container)
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/webhook", json=webhook_body())

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert "disk full" not in data["error"]


class TestIntakeStatus:

    @pytest.mark.asyncio
    async def test_unknown_record(self, client):
        response = await client.get("/intake/64b7f0c2a1b2c3d4e5f60718")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_pending_record(self, client):
        record_id = (await client.post("/webhook", json=webhook_body(call_id="call-status"))).json()["patientQueueId"]

        data = (await client.get(f"/intake/{record_id}")).json()
        assert data["status"] == "pending"
        assert data["retry_count"] == 0
        assert data["remote_patient_id"] is None


class TestAdmin:

    @pytest.mark.asyncio
    async def test_requires_admin_key(self, client):
        assert (await client.get("/admin/queue")).status_code == 401
        assert (await client.get("/admin/queue", headers={"X-Admin-Key": "wrong"})).status_code == 401

    @pytest.mark.asyncio
    async def test_queue_overview(self, client):
        await client.post("/webhook", json=webhook_body(call_id="call-q"))

        data = (await client.get("/admin/queue", headers={"X-Admin-Key": ADMIN_KEY})).json()

        assert data["intake"]["pending"] == 1
        assert data["channels"][Channel.PROCESS_QUEUE.value]["queued"] == 1
        assert data["failed_calls"] == 0

    @pytest.mark.asyncio
    async def test_dead_letter_listing_and_requeue(self, client, container):
        message = WorkflowMessage(channel=Channel.PATIENT_ACTIVITY.value, payload={})
        await container.dispatcher.publish(Channel.PATIENT_ACTIVITY.value, message)
        await container.dispatcher.deliver_once(container.activity_logging)
        headers = {"X-Admin-Key": ADMIN_KEY}

        listing = (await client.get("/admin/dead-letters", headers=headers)).json()
        assert listing["count"] == 1
        assert listing["dead_letters"][0]["id"] == message.message_id

        response = await client.post(f"/admin/dead-letters/{message.message_id}/requeue", headers=headers)
        assert response.status_code == 200
        assert response.json()["message_id"] != message.message_id

        missing = await client.post("/admin/dead-letters/nope/requeue", headers=headers)
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_manual_reconcile(self, client):
        data = (await client.post("/admin/reconcile", headers={"X-Admin-Key": ADMIN_KEY})).json()
        assert data["success"] is True
        assert data["requeued"] == 0

    @pytest.mark.asyncio
    async def test_token_refresh(self, client, fake_token_provider):
        headers = {"X-Admin-Key": ADMIN_KEY}

        data = (await client.post("/admin/token/refresh", headers=headers)).json()
        assert data["success"] is True
        assert data["refresh_count"] == 1

        # Still fresh, so no provider call without force
        await client.post("/admin/token/refresh", headers=headers)
        assert fake_token_provider.calls == 1

        forced = (await client.post("/admin/token/refresh?force=true", headers=headers)).json()
        assert forced["refresh_count"] == 2

    @pytest.mark.asyncio
    async def test_token_refresh_failure(self, client, fake_token_provider):
        fake_token_provider.error = ValidationError("bad client id")

        response = await client.post("/admin/token/refresh", headers={"X-Admin-Key": ADMIN_KEY})

        assert response.status_code == 502
        assert response.json()["success"] is False


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_reports_components(self, client, credential):
        data = (await client.get("/health")).json()

        assert data["service"] == "intake-workflow-api"
        assert data["credential"]["present"] in (True, False)
        assert "circuits" in data
