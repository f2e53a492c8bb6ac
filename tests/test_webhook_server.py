"""Tests for the Instagram webhook routes and handler."""

import hashlib
import hmac
import json

import httpx
import pytest
from sqlalchemy import select

from reeldm.config import Config, WebhookConfig
from reeldm.orm.comment_log import CommentLog
from reeldm.orm.content import ReelMapping
from reeldm.orm.dm_job import DmJob, DmJobStatus, TriggerType
from reeldm.services.intake import IntakeGate
from reeldm.services.webhook_handler import WebhookHandler, extract_reel_id
from reeldm.webhook_server import create_webhook_app, verify_signature

from .conftest import RecordingWorker

VERIFY_TOKEN = "verify-me"


def comment_payload(text="LINKS ", comment_id="c-1", user_id="user-1", username="shopper", media_id="17900000001"):
    return {
        "object": "instagram",
        "entry": [
            {
                "id": "17841400000000000",
                "changes": [
                    {
                        "field": "comments",
                        "value": {
                            "id": comment_id,
                            "text": text,
                            "media": {"id": media_id},
                            "from": {"id": user_id, "username": username},
                        },
                    }
                ],
            }
        ],
    }


def message_payload(text, mid="mid-1", user_id="user-2"):
    return {
        "entry": [
            {
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "from": {"id": user_id},
                            "message": {"mid": mid, "text": text},
                        },
                    }
                ]
            }
        ]
    }


async def all_jobs(db_service):
    async with db_service.session() as session:
        result = await session.execute(select(DmJob))
        return list(result.scalars().all())


@pytest.fixture
def starter():
    return RecordingWorker()


@pytest.fixture
def handler(db_service, job_store, starter):
    return WebhookHandler(db_service, IntakeGate(job_store, starter))


def build_client(handler, worker, job_store, app_secret=None):
    config = Config(webhook=WebhookConfig(verify_token=VERIFY_TOKEN, app_secret=app_secret))
    app = create_webhook_app(config, handler, worker, job_store)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
class TestVerification:
    """The GET subscription handshake."""

    async def test_valid_token_echoes_challenge(self, handler, worker, job_store):
        async with build_client(handler, worker, job_store) as client:
            response = await client.get(
                "/webhooks/instagram",
                params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1158201444"},
            )

        assert response.status_code == 200
        assert response.text == "1158201444"

    async def test_wrong_token_forbidden(self, handler, worker, job_store):
        async with build_client(handler, worker, job_store) as client:
            response = await client.get(
                "/webhooks/instagram",
                params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
            )

        assert response.status_code == 403
        assert response.text == "Forbidden"


@pytest.mark.asyncio
class TestEventDelivery:
    """The POST event endpoint."""

    async def test_comment_keyword_queues_job(self, handler, worker, job_store, db_service, seeded_section, starter):
        """A matching comment queues a DM with the mapping's options."""
        async with build_client(handler, worker, job_store) as client:
            response = await client.post("/webhooks/instagram", json=comment_payload())

        assert response.status_code == 200
        assert response.json() == {"status": "success"}

        jobs = await all_jobs(db_service)
        assert len(jobs) == 1
        assert jobs[0].recipient_id == "user-1"
        assert jobs[0].reel_id == "17900000001"
        assert jobs[0].trigger_type == TriggerType.COMMENT
        assert jobs[0].trigger_id == "c-1"
        assert jobs[0].max_items == 5
        assert starter.start_calls == 1

    async def test_missing_fields_dropped(self, handler, worker, job_store, db_service, seeded_section):
        """Incomplete comments still get a success response."""
        async with build_client(handler, worker, job_store) as client:
            response = await client.post("/webhooks/instagram", json=comment_payload(username=None))

        assert response.json() == {"status": "success"}
        assert await all_jobs(db_service) == []

    async def test_no_entry(self, handler, worker, job_store):
        async with build_client(handler, worker, job_store) as client:
            response = await client.post("/webhooks/instagram", json={"object": "instagram"})

        assert response.json() == {"status": "no_entry"}

    async def test_invalid_json(self, handler, worker, job_store):
        async with build_client(handler, worker, job_store) as client:
            response = await client.post("/webhooks/instagram", content=b"not json")

        assert response.status_code == 400

    async def test_signature_required_when_secret_set(self, handler, worker, job_store, db_service, seeded_section):
        """With an app secret, unsigned payloads are rejected and signed ones accepted."""
        body = json.dumps(comment_payload()).encode("utf-8")
        signature = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

        async with build_client(handler, worker, job_store, app_secret="app-secret") as client:
            rejected = await client.post(
                "/webhooks/instagram", content=body, headers={"X-Hub-Signature-256": "sha256=bad"}
            )
            accepted = await client.post(
                "/webhooks/instagram",
                content=body,
                headers={"X-Hub-Signature-256": signature, "Content-Type": "application/json"},
            )

        assert rejected.status_code == 401
        assert accepted.status_code == 200
        assert len(await all_jobs(db_service)) == 1


@pytest.mark.asyncio
class TestQueueRoutes:
    """Dashboard read surface."""

    async def test_stats_and_jobs(self, handler, worker, job_store, seeded_section):
        await handler.handle_payload(comment_payload())

        async with build_client(handler, worker, job_store) as client:
            stats = (await client.get("/queue/stats")).json()
            jobs = (await client.get("/queue/jobs", params={"status": "pending"})).json()

        assert stats["pending"] == 1
        assert stats["worker_active"] is False
        assert stats["estimated_minutes_to_clear"] == 1
        assert jobs["status"] == "pending"
        assert jobs["jobs"][0]["username"] == "shopper"

    async def test_manual_start(self, handler, worker, job_store, seeded_section):
        """Starting twice reports the second call as a no-op."""
        await handler.handle_payload(comment_payload())

        async with build_client(handler, worker, job_store) as client:
            first = (await client.post("/queue/start")).json()
            second = (await client.post("/queue/start")).json()

        await worker.stop()
        assert first["started"] is True
        assert second["started"] is False


@pytest.mark.asyncio
class TestWebhookHandler:
    """Payload parsing and mapping lookup."""

    async def test_unknown_keyword_logged(self, handler, db_service, seeded_section):
        """Comments without a mapping are audited but not queued."""
        await handler.handle_payload(comment_payload(text="price?"))

        assert await all_jobs(db_service) == []
        async with db_service.session() as session:
            log = (await session.execute(select(CommentLog))).scalar_one()
        assert log.outcome == "no_mapping"

    async def test_duplicate_comment_logged(self, handler, db_service, seeded_section):
        """A second comment from the same user is recorded as a duplicate."""
        await handler.handle_payload(comment_payload(comment_id="c-1"))
        await handler.handle_payload(comment_payload(comment_id="c-2"))
        await handler.handle_payload(comment_payload(comment_id="c-2"))

        async with db_service.session() as session:
            logs = (await session.execute(select(CommentLog).order_by(CommentLog.comment_id))).scalars().all()
        assert [log.outcome for log in logs] == ["queued", "duplicate"]
        assert len(await all_jobs(db_service)) == 1

    async def test_shared_reel_dm_queues_job(self, handler, db_service, seeded_section):
        """A DM containing the reel link queues against the mapped reel."""
        job_id = await handler.handle_change(
            message_payload("send me this https://www.instagram.com/reel/C1AbCdEf/?igsh=abc")["entry"][0]["changes"][0]
        )

        assert job_id is not None
        jobs = await all_jobs(db_service)
        assert jobs[0].trigger_type == TriggerType.DM
        assert jobs[0].reel_id == "17900000001"
        assert jobs[0].username == "user-2"
        assert jobs[0].status == DmJobStatus.PENDING

    async def test_dm_and_comment_share_dedup(self, handler, db_service, seeded_section):
        """A DM after a comment for the same reel is a duplicate."""
        await handler.handle_payload(comment_payload(user_id="user-2"))
        await handler.handle_payload(message_payload("https://instagram.com/reel/C1AbCdEf"))

        assert len(await all_jobs(db_service)) == 1

    async def test_dm_without_reel_link_ignored(self, handler, db_service, seeded_section):
        await handler.handle_payload(message_payload("hi there!"))

        assert await all_jobs(db_service) == []

    async def test_inactive_mapping_ignored(self, handler, db_service, seeded_section):
        """Draft mappings do not trigger DMs."""
        async with db_service.session() as session:
            mapping = (await session.execute(select(ReelMapping))).scalar_one()
            mapping.active = False
            await session.commit()

        await handler.handle_payload(comment_payload())

        assert await all_jobs(db_service) == []

    async def test_comment_without_id_uses_derived_trigger(self, handler, db_service, seeded_section):
        """A comment delivered without its ID is still queued and audited."""
        job_id = await handler.handle_change(comment_payload(comment_id=None)["entry"][0]["changes"][0])

        assert job_id is not None
        jobs = await all_jobs(db_service)
        assert jobs[0].trigger_id == "comment:17900000001:user-1"
        async with db_service.session() as session:
            log = (await session.execute(select(CommentLog))).scalar_one()
        assert log.comment_id == "comment:17900000001:user-1"
        assert log.outcome == "queued"

    async def test_unusable_mapping_logged_as_invalid(self, handler, db_service, seeded_section):
        """A mapping with no items to send is audited as invalid, not duplicate."""
        async with db_service.session() as session:
            mapping = (await session.execute(select(ReelMapping))).scalar_one()
            mapping.max_items_in_dm = 0
            await session.commit()

        await handler.handle_payload(comment_payload())

        assert await all_jobs(db_service) == []
        async with db_service.session() as session:
            log = (await session.execute(select(CommentLog))).scalar_one()
        assert log.outcome == "invalid"


class TestHelpers:
    """Pure helpers."""

    def test_extract_reel_id(self):
        assert extract_reel_id("https://www.instagram.com/reel/C1AbCdEf/") == "C1AbCdEf"
        assert extract_reel_id("look instagram.com/reels/Xy_z-9 ok") == "Xy_z-9"
        assert extract_reel_id("https://www.instagram.com/p/C1AbCdEf/") is None
        assert extract_reel_id(None) is None

    def test_verify_signature(self):
        body = b'{"entry": []}'
        good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        assert verify_signature(body, good, "s3cret") is True
        assert verify_signature(body, good[7:], "s3cret") is False
        assert verify_signature(body, "sha256=deadbeef", "s3cret") is False
