"""
Entity repository: the persistence contract consumed by the workflow core.

Wraps a SQLAlchemy session with get/create/update/update_many and an
all-or-nothing ``transaction()`` block. Row locking is left to the database
(``SELECT ... FOR UPDATE`` where the dialect supports it).
"""
from contextlib import contextmanager
from typing import Any, Iterable, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quoteflow.core.errors import ConflictError, NotFound
from quoteflow.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class EntityRepository:
    """Transactional CRUD over the ORM models."""

    def __init__(self, session: Session):
        self.session = session
        self._depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self):
        """
        All-or-nothing block. Nested calls join the outermost transaction;
        only the outermost block commits or rolls back.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Transaction rolled back on integrity error: {e.orig}")
            raise ConflictError("Unique constraint violated", {"detail": str(e.orig)}) from e
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._depth = 0

    # ============= READS =============

    def get(self, model: Type[T], entity_id: Any, for_update: bool = False) -> Optional[T]:
        if entity_id is None:
            return None
        stmt = select(model).where(model.id == entity_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalars().first()

    def get_or_404(self, model: Type[T], entity_id: Any, for_update: bool = False) -> T:
        obj = self.get(model, entity_id, for_update=for_update)
        if obj is None:
            raise NotFound(model.__tablename__, entity_id)
        return obj

    def get_many(self, model: Type[T], ids: Iterable[Any], for_update: bool = False) -> List[T]:
        ids = list(ids)
        if not ids:
            return []
        stmt = select(model).where(model.id.in_(ids)).order_by(model.id)
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.session.execute(stmt).scalars().all())

    def find(self, model: Type[T], *criteria, order_by: Optional[Sequence] = None) -> List[T]:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(*order_by)
        return list(self.session.execute(stmt).scalars().all())

    def find_one(self, model: Type[T], *criteria) -> Optional[T]:
        return self.session.execute(select(model).where(*criteria)).scalars().first()

    # ============= WRITES =============

    def create(self, model: Type[T], **data) -> T:
        obj = model(**data)
        self.session.add(obj)
        self.session.flush()
        return obj

    def update(self, obj: T, **data) -> T:
        for key, value in data.items():
            setattr(obj, key, value)
        self.session.flush()
        return obj

    def update_many(self, model: Type[T], criteria: Sequence, data: dict) -> int:
        """Single UPDATE statement; atomic at the database level."""
        result = self.session.execute(
            update(model)
            .where(*criteria)
            .values(**data)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount
