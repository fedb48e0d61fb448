from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from crmcore.core.database import Base
from crmcore.crm.errors import NotFoundError
from crmcore.crm.integrity import ENTITY_LABELS
from crmcore.crm.models import utcnow


ModelT = TypeVar("ModelT", bound=Base)


class EntityRepository(Generic[ModelT]):
    """Persistence for one entity collection keyed by ``id``.

    The repository never commits; the calling service owns the transaction.
    """

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model
        self.label = ENTITY_LABELS[model]

    def get(self, session: Session, record_id: str) -> ModelT:
        record = session.get(self.model, record_id)
        if record is None:
            raise NotFoundError(f"{self.label} not found", details={"id": record_id})
        return record

    def list(self, session: Session) -> Sequence[ModelT]:
        return session.scalars(select(self.model)).all()

    def insert(self, session: Session, values: dict[str, Any]) -> ModelT:
        now = utcnow()
        record = self.model(**values, created_at=now, updated_at=now)
        session.add(record)
        session.flush()
        return record

    def update_by_id(self, session: Session, record_id: str, changes: dict[str, Any], *where: Any) -> int:
        """Single-statement update; returns the number of affected rows (0 or 1)."""
        values = dict(changes)
        values["updated_at"] = utcnow()
        result = session.execute(
            update(self.model)
            .where(self.model.id == record_id, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def update(self, session: Session, record_id: str, changes: dict[str, Any]) -> ModelT:
        if self.update_by_id(session, record_id, changes) == 0:
            raise NotFoundError(f"{self.label} not found", details={"id": record_id})
        return self.refresh(session, record_id)

    def refresh(self, session: Session, record_id: str) -> ModelT:
        record = session.get(self.model, record_id, populate_existing=True)
        if record is None:
            raise NotFoundError(f"{self.label} not found", details={"id": record_id})
        return record

    def delete(self, session: Session, record_id: str) -> None:
        result = session.execute(delete(self.model).where(self.model.id == record_id))
        if result.rowcount == 0:
            raise NotFoundError(f"{self.label} not found", details={"id": record_id})
