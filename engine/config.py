"""Versioned account configuration.

The store is the single source of truth. Callers take a ConfigSnapshot
once per event and pass its AgentConfig down explicitly; writes are
conditional on the version the writer last saw.
"""
import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from db.connection import get_db
from db.repositories import audit as audit_repo
from db.repositories import settings as settings_repo
from engine.errors import ConfigVersionConflict, SchedulingValidationError
from schemas.config import AgentConfig, ConfigSnapshot

logger = logging.getLogger(__name__)


async def load_snapshot(session: AsyncSession, account_id: str) -> ConfigSnapshot:
    """Current configuration for the account; defaults at version 0 if none stored."""
    row = await settings_repo.get(session, account_id)
    now = datetime.now(timezone.utc)
    if row is None:
        return ConfigSnapshot(account_id=account_id, version=0, config=AgentConfig(), loaded_at=now)
    try:
        config = AgentConfig.model_validate(row.config or {})
    except ValidationError:
        logger.exception("Stored config for account %s is invalid, using defaults", account_id)
        config = AgentConfig()
    return ConfigSnapshot(account_id=account_id, version=row.version, config=config, loaded_at=now)


async def update_config(
    session: AsyncSession,
    account_id: str,
    changes: dict,
    expected_version: int,
    *,
    updated_by: Optional[str] = None,
) -> ConfigSnapshot:
    """Apply `changes` on top of the snapshot at `expected_version`.

    Raises ConfigVersionConflict if someone else wrote in between.
    """
    current = await load_snapshot(session, account_id)
    if current.version != expected_version:
        raise ConfigVersionConflict(account_id, expected_version, current.version)

    try:
        merged = AgentConfig.model_validate({**current.config.model_dump(), **changes})
    except ValidationError as exc:
        raise SchedulingValidationError(f"Invalid configuration: {exc}") from exc

    row = await settings_repo.write_versioned(
        session, account_id, merged.model_dump(), expected_version, updated_by=updated_by
    )
    if row is None:
        latest = await settings_repo.get(session, account_id)
        raise ConfigVersionConflict(account_id, expected_version, latest.version if latest else None)

    await audit_repo.log_action(
        session,
        "config_updated",
        account_id=account_id,
        action_data={"changes": changes, "version": row.version, "updated_by": updated_by},
    )
    logger.info("Config for account %s updated to version %d", account_id, row.version)
    return ConfigSnapshot(
        account_id=account_id,
        version=row.version,
        config=merged,
        loaded_at=datetime.now(timezone.utc),
    )


class ConfigService:
    """Hands out configuration snapshots; injected into the event handlers."""

    def __init__(self, session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = get_db):
        self._session_factory = session_factory

    async def snapshot(self, account_id: str) -> ConfigSnapshot:
        async with self._session_factory() as session:
            return await load_snapshot(session, account_id)

    async def update(
        self, account_id: str, changes: dict, expected_version: int, updated_by: Optional[str] = None
    ) -> ConfigSnapshot:
        async with self._session_factory() as session:
            return await update_config(session, account_id, changes, expected_version, updated_by=updated_by)


class StaticConfigService(ConfigService):
    """Fixed configuration, for tests and one-off scripts."""

    def __init__(self, config: Optional[AgentConfig] = None, version: int = 0):
        self._config = config or AgentConfig()
        self._version = version

    async def snapshot(self, account_id: str) -> ConfigSnapshot:
        return ConfigSnapshot(
            account_id=account_id,
            version=self._version,
            config=self._config,
            loaded_at=datetime.now(timezone.utc),
        )

    async def update(self, account_id, changes, expected_version, updated_by=None) -> ConfigSnapshot:
        if expected_version != self._version:
            raise ConfigVersionConflict(account_id, expected_version, self._version)
        self._config = AgentConfig.model_validate({**self._config.model_dump(), **changes})
        self._version += 1
        return await self.snapshot(account_id)
