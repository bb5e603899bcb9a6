"""Account settings and opt-out phrase repository."""
import logging
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import AccountSettings, OptOutPhrase

logger = logging.getLogger(__name__)


async def get(session: AsyncSession, account_id: str) -> Optional[AccountSettings]:
    result = await session.execute(
        select(AccountSettings).where(AccountSettings.account_id == account_id),
        execution_options={"populate_existing": True},
    )
    return result.scalar_one_or_none()


async def write_versioned(
    session: AsyncSession,
    account_id: str,
    config: dict,
    expected_version: int,
    updated_by: Optional[str] = None,
) -> Optional[AccountSettings]:
    """Store `config` as version expected_version + 1.

    Succeeds only if the stored version still equals expected_version
    (0 meaning no row exists yet). Returns None on a version mismatch.
    """
    if expected_version == 0:
        stmt = (
            pg_insert(AccountSettings)
            .values(account_id=account_id, config=config, version=1, updated_by=updated_by)
            .on_conflict_do_nothing(index_elements=["account_id"])
            .returning(AccountSettings)
        )
    else:
        stmt = (
            update(AccountSettings)
            .where(AccountSettings.account_id == account_id)
            .where(AccountSettings.version == expected_version)
            .values(
                config=config,
                version=AccountSettings.version + 1,
                updated_by=updated_by,
                updated_at=func.now(),
            )
            .returning(AccountSettings)
        )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one_or_none()


async def active_opt_out_phrases(session: AsyncSession, account_id: Optional[str] = None) -> list[OptOutPhrase]:
    """Active phrases that apply globally or to the given account."""
    stmt = select(OptOutPhrase).where(OptOutPhrase.is_active.is_(True))
    if account_id is not None:
        stmt = stmt.where(or_(OptOutPhrase.account_id.is_(None), OptOutPhrase.account_id == account_id))
    else:
        stmt = stmt.where(OptOutPhrase.account_id.is_(None))
    result = await session.execute(stmt)
    return list(result.scalars().all())
