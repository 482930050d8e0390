"""
Persistent delta sync state per import profile
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import StateStoreError
from models.delta_sync import DeltaSyncState, DeltaSyncSchema

logger = logging.getLogger(__name__)


def _chunks(items: List[str], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DeltaSyncStateStore:
    """
    Read and write the last known row hashes of a profile.

    Every public method opens its own session so the store can be
    shared by consecutive executions.
    """

    def __init__(self, session_factory: async_sessionmaker, chunk_size: Optional[int] = None):
        self.session_factory = session_factory
        self.chunk_size = chunk_size or settings.DELETE_CHUNK_SIZE

    async def load_state(self, profile_id: str) -> Dict[str, str]:
        """Natural key -> hash for every tracked, non-deleted row"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(DeltaSyncState.reef_id, DeltaSyncState.row_hash).where(
                        DeltaSyncState.profile_id == profile_id,
                        DeltaSyncState.is_deleted.is_(False)
                    )
                )
                state = {reef_id: row_hash for reef_id, row_hash in result.all()}
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to load delta state for profile {profile_id}",
                context={"profile_id": profile_id},
                original_exception=e
            )

        logger.debug(f"Loaded {len(state)} tracked keys for profile {profile_id}")
        return state

    async def commit(
        self,
        profile_id: str,
        execution_id: str,
        current_state: Dict[str, str],
        deleted_keys: Iterable[str] = ()
    ) -> None:
        """
        Persist the hashes seen by one execution and flag deleted keys.

        Seen keys are created or updated (and revived if they had been
        flagged deleted). Runs in a single transaction.
        """
        now = datetime.utcnow()
        deleted = list(deleted_keys)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for chunk in _chunks(list(current_state), self.chunk_size):
                        result = await session.execute(
                            select(DeltaSyncState).where(
                                DeltaSyncState.profile_id == profile_id,
                                DeltaSyncState.reef_id.in_(chunk)
                            )
                        )
                        existing = {row.reef_id: row for row in result.scalars()}

                        for reef_id in chunk:
                            state = existing.get(reef_id)
                            if state is None:
                                session.add(DeltaSyncState(
                                    profile_id=profile_id,
                                    reef_id=reef_id,
                                    row_hash=current_state[reef_id],
                                    last_seen_execution_id=execution_id,
                                    first_seen_at=now,
                                    last_seen_at=now,
                                    is_deleted=False
                                ))
                            else:
                                state.row_hash = current_state[reef_id]
                                state.last_seen_execution_id = execution_id
                                state.last_seen_at = now
                                state.is_deleted = False
                                state.deleted_at = None

                        await session.flush()

                    await self._flag_deleted(session, profile_id, deleted, now)
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to commit delta state for profile {profile_id}",
                context={"profile_id": profile_id, "execution_id": execution_id},
                original_exception=e
            )

        logger.info(
            f"Delta state committed for profile {profile_id}: "
            f"{len(current_state)} seen, {len(deleted)} deleted"
        )

    async def _flag_deleted(self, session, profile_id: str, keys: List[str], now: datetime):
        for chunk in _chunks(keys, self.chunk_size):
            await session.execute(
                update(DeltaSyncState)
                .where(
                    DeltaSyncState.profile_id == profile_id,
                    DeltaSyncState.reef_id.in_(chunk)
                )
                .values(is_deleted=True, deleted_at=now)
            )

    async def mark_deleted(self, profile_id: str, reef_ids: Iterable[str]) -> None:
        """Flag keys whose deletion has been propagated to the target"""
        keys = list(reef_ids)
        if not keys:
            return

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._flag_deleted(session, profile_id, keys, datetime.utcnow())
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to flag {len(keys)} deleted keys for profile {profile_id}",
                context={"profile_id": profile_id},
                original_exception=e
            )

    async def get_schema_fingerprint(self, profile_id: str) -> Optional[str]:
        try:
            async with self.session_factory() as session:
                schema = await session.get(DeltaSyncSchema, profile_id)
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to read schema fingerprint for profile {profile_id}",
                context={"profile_id": profile_id},
                original_exception=e
            )
        return schema.fingerprint if schema else None

    async def save_schema_fingerprint(
        self,
        profile_id: str,
        fingerprint: str,
        columns: Optional[List[str]] = None
    ) -> None:
        """Create or update the stored column fingerprint"""
        column_list = ",".join(sorted(columns)) if columns else None

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    schema = await session.get(DeltaSyncSchema, profile_id)
                    if schema is None:
                        session.add(DeltaSyncSchema(
                            profile_id=profile_id,
                            fingerprint=fingerprint,
                            columns=column_list,
                            updated_at=datetime.utcnow()
                        ))
                    else:
                        schema.fingerprint = fingerprint
                        schema.columns = column_list
                        schema.updated_at = datetime.utcnow()
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to save schema fingerprint for profile {profile_id}",
                context={"profile_id": profile_id},
                original_exception=e
            )

    async def reset(self, profile_id: str) -> int:
        """Forget all state of a profile. Returns the number of keys removed."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(DeltaSyncState).where(DeltaSyncState.profile_id == profile_id)
                    )
                    await session.execute(
                        delete(DeltaSyncSchema).where(DeltaSyncSchema.profile_id == profile_id)
                    )
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to reset delta state for profile {profile_id}",
                context={"profile_id": profile_id},
                original_exception=e
            )

        logger.warning(f"Delta state reset for profile {profile_id} ({result.rowcount} keys)")
        return result.rowcount

    async def reset_keys(self, profile_id: str, reef_ids: Iterable[str]) -> int:
        """Forget selected keys so their next sighting is classified New"""
        keys = list(reef_ids)
        removed = 0

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for chunk in _chunks(keys, self.chunk_size):
                        result = await session.execute(
                            delete(DeltaSyncState).where(
                                DeltaSyncState.profile_id == profile_id,
                                DeltaSyncState.reef_id.in_(chunk)
                            )
                        )
                        removed += result.rowcount
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to reset {len(keys)} keys for profile {profile_id}",
                context={"profile_id": profile_id},
                original_exception=e
            )

        return removed

    async def get_stats(self, profile_id: str) -> Dict[str, Any]:
        """Tracked, active and deleted key counts plus the last sighting"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(
                        DeltaSyncState.is_deleted,
                        func.count(DeltaSyncState.id),
                        func.max(DeltaSyncState.last_seen_at)
                    )
                    .where(DeltaSyncState.profile_id == profile_id)
                    .group_by(DeltaSyncState.is_deleted)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to read delta stats for profile {profile_id}",
                context={"profile_id": profile_id},
                original_exception=e
            )

        active = sum(count for is_deleted, count, _ in rows if not is_deleted)
        deleted = sum(count for is_deleted, count, _ in rows if is_deleted)
        seen = [last for _, _, last in rows if last is not None]

        return {
            "profile_id": profile_id,
            "total_keys": active + deleted,
            "active_keys": active,
            "deleted_keys": deleted,
            "last_seen_at": max(seen) if seen else None,
        }
