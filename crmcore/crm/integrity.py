from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crmcore.core.database import Base
from crmcore.crm import errors
from crmcore.crm.models import CRMActivity, CRMCompany, CRMContact, CRMDeal, CRMLead, CRMNote, CRMUser


logger = logging.getLogger("crmcore.crm.integrity")

OWNER_FIELD = "user_id"

FOREIGN_KEYS: dict[type[Base], dict[str, type[Base]]] = {
    CRMUser: {},
    CRMContact: {"user_id": CRMUser, "company_id": CRMCompany},
    CRMCompany: {"user_id": CRMUser},
    CRMDeal: {"user_id": CRMUser, "contact_id": CRMContact, "company_id": CRMCompany},
    CRMLead: {"user_id": CRMUser},
    CRMActivity: {
        "user_id": CRMUser,
        "contact_id": CRMContact,
        "company_id": CRMCompany,
        "deal_id": CRMDeal,
    },
    CRMNote: {
        "user_id": CRMUser,
        "contact_id": CRMContact,
        "company_id": CRMCompany,
        "deal_id": CRMDeal,
    },
}

ENTITY_LABELS: dict[type[Base], str] = {
    CRMUser: "user",
    CRMContact: "contact",
    CRMCompany: "company",
    CRMDeal: "deal",
    CRMLead: "lead",
    CRMActivity: "activity",
    CRMNote: "note",
}

_COLLECTION_NAMES: dict[type[Base], str] = {
    CRMContact: "contacts",
    CRMCompany: "companies",
    CRMDeal: "deals",
    CRMLead: "leads",
    CRMActivity: "activities",
    CRMNote: "notes",
}


@dataclass(frozen=True)
class Reference:
    field: str
    target: type[Base]
    value: str | None


def dependents_of(target: type[Base]) -> list[tuple[type[Base], str]]:
    """Every (model, column) pair whose foreign key points at ``target``."""
    return [
        (model, field_name)
        for model, fields in FOREIGN_KEYS.items()
        for field_name, referenced in fields.items()
        if referenced is target
    ]


class ReferentialIntegrityEnforcer:
    def references_for(
        self,
        model: type[Base],
        values: Mapping[str, Any],
        *,
        only: Iterable[str] | None = None,
    ) -> list[Reference]:
        selected = set(only) if only is not None else None
        references: list[Reference] = []
        for field_name, target in FOREIGN_KEYS[model].items():
            if field_name not in values:
                continue
            if selected is not None and field_name not in selected:
                continue
            references.append(Reference(field=field_name, target=target, value=values[field_name]))
        return references

    def require_owner(self, model: type[Base], values: Mapping[str, Any]) -> None:
        if OWNER_FIELD not in FOREIGN_KEYS[model]:
            return
        if not values.get(OWNER_FIELD):
            raise errors.ValidationError(f"{OWNER_FIELD} is required", details={"field": OWNER_FIELD})

    def check(self, session: Session, references: Iterable[Reference]) -> None:
        """Fail with ``ReferenceError`` on the first reference that does not resolve.

        Runs before any write of the calling operation, so a failure leaves nothing
        to undo. Referenced rows are read with a shared lock where the dialect has
        one, which keeps them alive until the caller commits.
        """
        for reference in references:
            if reference.value is None:
                continue
            stmt = (
                select(reference.target.id)
                .where(reference.target.id == reference.value)
                .with_for_update(read=True)
            )
            if session.scalar(stmt) is None:
                logger.info(
                    "crm.integrity.reference_missing",
                    extra={"field": reference.field, "entity_type": ENTITY_LABELS[reference.target]},
                )
                raise errors.ReferenceError(
                    reference.field,
                    f"{ENTITY_LABELS[reference.target]} not found for {reference.field}",
                )

    def count_dependents(self, session: Session, target: type[Base], record_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for model, field_name in dependents_of(target):
            column = model.__table__.c[field_name]
            total = session.scalar(select(func.count()).select_from(model).where(column == record_id)) or 0
            collection = _COLLECTION_NAMES[model]
            counts[collection] = counts.get(collection, 0) + int(total)
        return counts
