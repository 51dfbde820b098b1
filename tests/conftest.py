"""Shared fixtures: an in-memory SQLite database behind the same unit-of-work seam as production.

The crm schema is translated away so the Postgres models create cleanly in SQLite.
"""
import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from db.connection import unit_of_work
from db.models import ActivationMeeting, Base, Lead, TrialPipeline, UserProfile
from db.repositories import trials as trials_repo

# Wednesday afternoon
NOW = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        execution_options={"schema_translate_map": {"crm": None}},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(engine):
    return unit_of_work(async_sessionmaker(engine, expire_on_commit=False))


@pytest.fixture
def now():
    return NOW


class SyncRecorder:
    """Stand-in for an outbound HTTP collaborator; remembers every payload."""

    def __init__(self, result=None):
        self.payloads = []
        self.result = result if result is not None else {"success": True}

    def __call__(self, payload):
        self.payloads.append(payload)
        return self.result


@pytest.fixture
def sync():
    return SyncRecorder()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


async def add_lead(db, **fields) -> uuid.UUID:
    lead = Lead(id=fields.pop("id", uuid.uuid4()), name=fields.pop("name", "Acme Towing"), **fields)
    async with db() as session:
        session.add(lead)
    return lead.id


async def add_user(db, email=None, **fields) -> uuid.UUID:
    user = UserProfile(id=uuid.uuid4(), email=email or f"{uuid.uuid4().hex[:8]}@crm.test", **fields)
    async with db() as session:
        session.add(user)
    return user.id


async def add_pipeline(db, lead_id=None, **fields) -> TrialPipeline:
    if lead_id is None:
        lead_id = await add_lead(db)
    values = {
        "id": uuid.uuid4(),
        "crm_lead_id": lead_id,
        "trial_started_at": fields.pop("trial_started_at", NOW),
        "followup_variant": fields.pop("followup_variant", "A"),
        "status": fields.pop("status", "queued"),
        **fields,
    }
    async with db() as session:
        session.add(TrialPipeline(**values))
    return await get_pipeline(db, values["id"])


async def add_meeting(db, activator_id, start, end, **fields) -> ActivationMeeting:
    meeting = ActivationMeeting(
        id=uuid.uuid4(),
        activator_user_id=activator_id,
        scheduled_start_at=start,
        scheduled_end_at=end,
        status=fields.pop("status", "scheduled"),
        **fields,
    )
    async with db() as session:
        session.add(meeting)
    return meeting


async def get_pipeline(db, pipeline_id) -> TrialPipeline:
    async with db() as session:
        return await trials_repo.get(session, pipeline_id)
