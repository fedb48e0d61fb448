from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from crmcore.core.database import Base
from crmcore.crm.integrity import FOREIGN_KEYS, ReferentialIntegrityEnforcer
from crmcore.crm.models import CRMCompany, CRMContact, CRMDeal, CRMUser
from crmcore.crm.schemas import CompanySummary, ContactSummary, DealSummary, UserSummary


SUMMARY_SCHEMAS: dict[type[Base], type[BaseModel]] = {
    CRMUser: UserSummary,
    CRMContact: ContactSummary,
    CRMCompany: CompanySummary,
    CRMDeal: DealSummary,
}

# Child records listed on the parent's read model: name -> (child model, foreign key).
EMBEDDED_COLLECTIONS: dict[type[Base], dict[str, tuple[type[Base], str]]] = {
    CRMUser: {"contacts": (CRMContact, "user_id")},
    CRMCompany: {"contacts": (CRMContact, "company_id"), "deals": (CRMDeal, "company_id")},
}

# Dependent collections counted on the parent's read model.
COUNTED_COLLECTIONS: dict[type[Base], tuple[str, ...]] = {
    CRMCompany: ("contacts", "deals", "activities"),
    CRMDeal: ("activities", "notes"),
}


def embed_name(field_name: str) -> str:
    """``company_id`` is embedded as ``company``."""
    return field_name.removesuffix("_id")


class RelatedRecordLoader:
    """Builds read models with summaries of the records they reference.

    Every foreign key is embedded as a summary of its target, or ``None`` when the
    key is unset. A dangling key also embeds ``None`` rather than failing the read.
    """

    def __init__(self, integrity: ReferentialIntegrityEnforcer | None = None) -> None:
        self.integrity = integrity or ReferentialIntegrityEnforcer()

    def read(self, session: Session, model: type[Base], schema: type[BaseModel], record: Any) -> Any:
        return schema.model_validate(record).model_copy(update=self.related(session, model, record))

    def related(self, session: Session, model: type[Base], record: Any) -> dict[str, Any]:
        related: dict[str, Any] = {}
        for field_name, target in FOREIGN_KEYS[model].items():
            related[embed_name(field_name)] = self.summary(session, target, getattr(record, field_name))

        for name, (child, field_name) in EMBEDDED_COLLECTIONS.get(model, {}).items():
            column = child.__table__.c[field_name]
            children = session.scalars(select(child).where(column == record.id).order_by(child.created_at)).all()
            related[name] = [SUMMARY_SCHEMAS[child].model_validate(item) for item in children]

        counted = COUNTED_COLLECTIONS.get(model)
        if counted:
            dependents = self.integrity.count_dependents(session, model, record.id)
            related["counts"] = {name: dependents.get(name, 0) for name in counted}
        return related

    def summary(self, session: Session, target: type[Base], record_id: str | None) -> BaseModel | None:
        if record_id is None:
            return None
        record = session.get(target, record_id)
        if record is None:
            return None
        return SUMMARY_SCHEMAS[target].model_validate(record)
