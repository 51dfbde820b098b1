"""CRM lead mirror — the contact fields an SDR enters when starting a trial."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Lead
from db.repositories._upsert import insert_for

logger = logging.getLogger(__name__)


async def get(session: AsyncSession, lead_id: UUID) -> Optional[Lead]:
    result = await session.execute(select(Lead).where(Lead.id == lead_id))
    return result.scalar_one_or_none()


async def save_contact_fields(session: AsyncSession, lead_id: UUID, fields: dict) -> Lead:
    """Insert or update the lead's contact fields.

    Dedup key: id. Only keys present in `fields` are overwritten on conflict,
    so a partial form never blanks out data entered earlier.
    """
    data = {"id": lead_id, **fields}
    stmt = insert_for(session, Lead).values(**data)
    if fields:
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=fields)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
    await session.execute(stmt)
    await session.flush()

    result = await session.execute(
        select(Lead).where(Lead.id == lead_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def update_fields(session: AsyncSession, lead_id: UUID, **values) -> bool:
    """Set CRM-side follow-up fields (badge, next follow-up, last contact). False if no lead."""
    result = await session.execute(
        update(Lead).where(Lead.id == lead_id).values(**values).returning(Lead.id)
    )
    if result.scalar_one_or_none() is None:
        logger.warning("Lead %s not found while updating %s", lead_id, sorted(values))
        return False
    return True
