"""Shared fixtures and fakes for the DM queue tests."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from reeldm.config import QueueConfig
from reeldm.orm.content import Item, ReelMapping, Section
from reeldm.orm.dm_job import TriggerType
from reeldm.services.database import DatabaseService
from reeldm.services.delivery_client import DeliveryResult, InstagramCredentials
from reeldm.services.dispatch_worker import DispatchWorker
from reeldm.services.intake import DmTrigger
from reeldm.services.job_store import JobStore
from reeldm.services.message_composer import ComposedMessage
from reeldm.services.rate_limit_service import RateLimitService

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; optionally steps forward on every read."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(0)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeComposer:
    """Returns canned text, or raises the configured error."""

    def __init__(self, text: str = "Hi! Here are my top picks", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: list[tuple[str, int, bool]] = []

    async def compose(self, section_id: str, max_items: int, include_link: bool) -> ComposedMessage:
        self.calls.append((section_id, max_items, include_link))
        if self.error is not None:
            raise self.error
        return ComposedMessage(text=self.text, item_count=1, character_count=len(self.text))


class FakeDeliveryClient:
    """Replays queued results, then succeeds."""

    def __init__(self, results: Optional[list[DeliveryResult]] = None):
        self.results = list(results or [])
        self.sent: list[tuple[str, str]] = []

    async def send(self, recipient_id: str, text: str, credentials: InstagramCredentials) -> DeliveryResult:
        self.sent.append((recipient_id, text))
        if self.results:
            return self.results.pop(0)
        return DeliveryResult(success=True, message_id=f"mid-{len(self.sent)}")


class StaticCredentials:
    """Credentials provider with a fixed answer."""

    def __init__(self, credentials: Optional[InstagramCredentials]):
        self.credentials = credentials

    def get_credentials(self) -> Optional[InstagramCredentials]:
        return self.credentials


class RecordingWorker:
    """Stands in for the dispatch worker when only the start signal matters."""

    def __init__(self):
        self.start_calls = 0

    async def ensure_running(self) -> bool:
        self.start_calls += 1
        return self.start_calls == 1


def make_trigger(**overrides) -> DmTrigger:
    """Build a comment trigger with sensible defaults."""
    values = {
        "recipient_id": "user-1",
        "username": "shopper",
        "section_id": "section-1",
        "reel_id": "reel-1",
        "trigger_type": TriggerType.COMMENT,
        "trigger_id": "comment-1",
        "max_items": 10,
        "include_link": True,
    }
    values.update(overrides)
    return DmTrigger(**values)


@pytest.fixture
async def db_service(tmp_path):
    """Fresh SQLite database per test."""
    service = DatabaseService(tmp_path / "reeldm-test.db")
    await service.initialize()
    yield service
    await service.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_store(db_service):
    return JobStore(db_service)


@pytest.fixture
def rate_limit_service(db_service):
    return RateLimitService(db_service, max_per_hour=195, min_spacing_ms=1000)


@pytest.fixture
def composer():
    return FakeComposer()


@pytest.fixture
def delivery():
    return FakeDeliveryClient()


@pytest.fixture
def credentials():
    return StaticCredentials(
        InstagramCredentials(access_token="test-token", account_id="17841400000000000")
    )


@pytest.fixture
def worker(job_store, rate_limit_service, composer, delivery, credentials, clock):
    return DispatchWorker(
        job_store=job_store,
        rate_limit_service=rate_limit_service,
        composer=composer,
        delivery_client=delivery,
        credentials_provider=credentials,
        queue_config=QueueConfig(),
        clock=clock,
    )


@pytest.fixture
async def seeded_section(db_service):
    """A section with two items and an active reel mapping."""
    async with db_service.session() as session:
        section = Section(id="section-1", title="Summer Skincare")
        session.add(section)
        await session.flush()
        session.add_all(
            [
                Item(
                    section_id=section.id,
                    affiliate_link="https://amzn.to/sunscreen",
                    price="499",
                    platform="amazon",
                    item_title="Sunscreen SPF 50",
                    created_at=START,
                ),
                Item(
                    section_id=section.id,
                    affiliate_link="https://nykaa.com/toner",
                    platform="nykaa",
                    item_title=None,
                    created_at=START + timedelta(minutes=1),
                ),
                ReelMapping(
                    reel_id="17900000001",
                    reel_url="https://www.instagram.com/reel/C1AbCdEf/",
                    section_id=section.id,
                    keyword="links",
                    active=True,
                    max_items_in_dm=5,
                    include_website_link=True,
                ),
            ]
        )
        await session.commit()
    return "section-1"
