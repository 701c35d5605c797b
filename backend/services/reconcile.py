"""
Lookup-then-insert-or-merge against a natural key.

The same discipline serves issues, users, user profiles and activity types:

1. Look the entity up by its natural key.
2. Found: apply the incoming mutable fields in place (surrogate id kept).
3. Not found: build a new entity and insert it.
4. Commit. One commit per entity.

The unique constraint on the key column is the race backstop. An
``IntegrityError`` on insert means another writer got there first: the
transaction is rolled back and steps 1-4 run once more, which now find the
row and merge into it. A second conflict is reported as a PersistenceError.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.errors import ConflictError, PersistenceError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class Reconciler(Generic[ModelT]):
    """Upsert one model type by one natural-key column."""

    def __init__(
        self,
        model: type[ModelT],
        key_column: str,
        apply_changes: Callable[[ModelT, Any], None],
        build_entity: Callable[[Any, Any], ModelT],
    ) -> None:
        self.model = model
        self.key_column = key_column
        self.apply_changes = apply_changes
        self.build_entity = build_entity

    async def lookup(self, session: AsyncSession, natural_key: Any) -> Optional[ModelT]:
        column = getattr(self.model, self.key_column)
        try:
            result = await session.execute(select(self.model).where(column == natural_key))
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Lookup of {self.model.__name__} {natural_key!r} failed: {exc}"
            ) from exc
        return result.scalar_one_or_none()

    async def reconcile(
        self, session: AsyncSession, natural_key: Any, incoming: Any
    ) -> tuple[ModelT, bool]:
        """Insert or merge ``incoming`` under ``natural_key``.

        Returns the persisted entity and whether it was newly created.
        """
        try:
            return await self._attempt(session, natural_key, incoming)
        except ConflictError:
            logger.info(
                "Lost insert race, retrying as merge",
                extra={"model": self.model.__name__, "natural_key": str(natural_key)},
            )
            try:
                return await self._attempt(session, natural_key, incoming)
            except ConflictError as second:
                raise PersistenceError(
                    f"{self.model.__name__} {natural_key!r} conflicted twice"
                ) from second

    async def _attempt(
        self, session: AsyncSession, natural_key: Any, incoming: Any
    ) -> tuple[ModelT, bool]:
        entity: Optional[ModelT] = await self.lookup(session, natural_key)
        created: bool = entity is None

        if entity is None:
            entity = self.build_entity(natural_key, incoming)
            session.add(entity)
        else:
            self.apply_changes(entity, incoming)

        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            if created:
                raise ConflictError(
                    f"{self.model.__name__} {natural_key!r} already exists",
                    natural_key=str(natural_key),
                ) from exc
            raise PersistenceError(
                f"Integrity failure merging {self.model.__name__} {natural_key!r}: {exc.orig}"
            ) from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError(
                f"Could not persist {self.model.__name__} {natural_key!r}: {exc}"
            ) from exc

        # Detached so a rollback later in the same session cannot expire it
        session.expunge(entity)
        return entity, created


async def find_by_id(session: AsyncSession, model: type[ModelT], entity_id: Any) -> Optional[ModelT]:
    """Fetch one row by surrogate id, or None."""
    try:
        return await session.get(model, entity_id)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Lookup of {model.__name__} {entity_id} failed: {exc}") from exc
