import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, func, select, update

from app.models.counter import AggregatedCounter, Counter
from app.models.structures import HashEntry, ListEntry, SetEntry
from core.model import Model, utc_now

logger = logging.getLogger("RowQueue.MetadataStore")


class MetadataStore:
    """
    Plain CRUD over the auxiliary structures: counters, sets, hashes and lists.

    Counters are append-only here: every increment inserts a raw row that the
    counters aggregator later folds into aggregated_counters.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        Model.ensure_configured("MetadataStore")
        self.clock = clock

    def _expire_at(self, expire_in: Optional[timedelta]) -> Optional[datetime]:
        return self.clock() + expire_in if expire_in is not None else None

    # Counters

    async def increment_counter(self, key: str, expire_in: Optional[timedelta] = None) -> None:
        await self._add_counter(key, 1, expire_in)

    async def decrement_counter(self, key: str, expire_in: Optional[timedelta] = None) -> None:
        await self._add_counter(key, -1, expire_in)

    async def _add_counter(self, key: str, value: int, expire_in: Optional[timedelta]) -> None:
        async with Model.transaction() as session:
            session.add(Counter(key=key, value=value, expire_at=self._expire_at(expire_in)))

    async def get_counter(self, key: str) -> int:
        """Logical counter value: the aggregated total plus raw rows not folded yet."""
        async with Model.transaction() as session:
            raw = await session.execute(
                select(func.coalesce(func.sum(Counter.value), 0)).where(Counter.key == key)
            )
            aggregated = await session.execute(
                select(func.coalesce(func.sum(AggregatedCounter.value), 0))
                .where(AggregatedCounter.key == key)
            )
            return int(raw.scalar_one()) + int(aggregated.scalar_one())

    # Sets

    async def add_to_set(self, key: str, value: str, score: float = 0.0) -> None:
        """Add a member, or update its score when it is already in the set."""
        async with Model.transaction() as session:
            result = await session.execute(
                update(SetEntry)
                .where(SetEntry.key == key, SetEntry.value == value)
                .values(score=score)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return
            session.add(SetEntry(key=key, value=value, score=score))

    async def remove_from_set(self, key: str, value: str) -> None:
        async with Model.transaction() as session:
            await session.execute(
                delete(SetEntry)
                .where(SetEntry.key == key, SetEntry.value == value)
                .execution_options(synchronize_session=False)
            )

    async def get_set(self, key: str) -> List[str]:
        """Members of the set ordered by score."""
        async with Model.transaction() as session:
            result = await session.execute(
                select(SetEntry.value).where(SetEntry.key == key).order_by(SetEntry.score, SetEntry.id)
            )
            return list(result.scalars().all())

    # Hashes

    async def set_hash(self, key: str, fields: Dict[str, Optional[str]]) -> None:
        async with Model.transaction() as session:
            for field, value in fields.items():
                result = await session.execute(
                    update(HashEntry)
                    .where(HashEntry.key == key, HashEntry.field == field)
                    .values(value=value)
                    .execution_options(synchronize_session=False)
                )
                if not result.rowcount:
                    session.add(HashEntry(key=key, field=field, value=value))
                    await session.flush()

    async def get_hash(self, key: str) -> Dict[str, Optional[str]]:
        async with Model.transaction() as session:
            result = await session.execute(
                select(HashEntry.field, HashEntry.value).where(HashEntry.key == key)
            )
            return {row.field: row.value for row in result.all()}

    async def remove_hash(self, key: str) -> None:
        async with Model.transaction() as session:
            await session.execute(
                delete(HashEntry)
                .where(HashEntry.key == key)
                .execution_options(synchronize_session=False)
            )

    # Lists

    async def insert_to_list(self, key: str, value: Optional[str]) -> None:
        async with Model.transaction() as session:
            session.add(ListEntry(key=key, value=value))

    async def get_list(self, key: str) -> List[Optional[str]]:
        """Elements of the list, most recently inserted first."""
        async with Model.transaction() as session:
            result = await session.execute(
                select(ListEntry.value).where(ListEntry.key == key).order_by(ListEntry.id.desc())
            )
            return list(result.scalars().all())

    async def remove_from_list(self, key: str, value: Optional[str]) -> None:
        async with Model.transaction() as session:
            await session.execute(
                delete(ListEntry)
                .where(ListEntry.key == key, ListEntry.value == value)
                .execution_options(synchronize_session=False)
            )

    # Expiration

    async def expire(self, model, key: str, expire_in: timedelta) -> None:
        """Schedule every row of ``key`` in ``model`` for the expiration manager."""
        await self._set_expiration(model, key, self._expire_at(expire_in))

    async def persist(self, model, key: str) -> None:
        """Clear the expiration of every row of ``key`` in ``model``."""
        await self._set_expiration(model, key, None)

    async def _set_expiration(self, model, key: str, expire_at: Optional[datetime]) -> None:
        if model not in (AggregatedCounter, HashEntry, ListEntry, SetEntry):
            raise ValueError(f"{model.__name__} does not support key expiration")

        async with Model.transaction() as session:
            await session.execute(
                update(model)
                .where(model.key == key)
                .values(expire_at=expire_at)
                .execution_options(synchronize_session=False)
            )
        logger.debug(f"Expiration of '{key}' in {model.__tablename__} set to {expire_at}")
