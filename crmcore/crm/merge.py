"""Field-level merge of a stored record with a partial update payload.

Every mutable field of an update payload is in exactly one of three states:

* absent  - the key was not sent; the stored value is kept.
* cleared - the key was sent as ``null``; the stored value becomes ``None``.
* set     - the key was sent with a value; the (already coerced) value replaces
            the stored one.

Presence is read from pydantic's ``model_fields_set``, never from the value, so an
explicit ``null`` and a missing key cannot be confused.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from crmcore.core.database import Base
from crmcore.crm.errors import ValidationError
from crmcore.crm.models import as_utc


class _Absent:
    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Any = _Absent()


@dataclass(frozen=True)
class FieldPatch:
    name: str
    value: Any = ABSENT

    @property
    def is_absent(self) -> bool:
        return self.value is ABSENT

    @property
    def is_clear(self) -> bool:
        return self.value is None

    @property
    def is_set(self) -> bool:
        return not self.is_absent and not self.is_clear


def patches_from(payload: BaseModel) -> dict[str, FieldPatch]:
    provided = payload.model_fields_set
    return {
        name: FieldPatch(name, getattr(payload, name) if name in provided else ABSENT)
        for name in type(payload).model_fields
    }


@dataclass
class MergeResult:
    patches: dict[str, FieldPatch]
    # Column name -> new value, for every field present in the payload.
    changes: dict[str, Any] = field(default_factory=dict)
    # Subset of ``changes`` whose value differs from the stored one.
    changed: set[str] = field(default_factory=set)
    merged: dict[str, Any] = field(default_factory=dict)

    def provided(self, name: str) -> bool:
        patch = self.patches.get(name)
        return patch is not None and not patch.is_absent

    def set_value(self, name: str, value: Any, current: Any = ABSENT) -> None:
        # Stored datetimes are UTC-aware; compare instants, not offsets.
        if isinstance(value, datetime):
            value = as_utc(value)
        if isinstance(current, datetime):
            current = as_utc(current)
        self.changes[name] = value
        self.merged[name] = value
        if current is ABSENT or current != value:
            self.changed.add(name)


class PartialUpdateMerger:
    def __init__(self, model: type[Base]) -> None:
        self.model = model
        self._columns = {column.key: column for column in model.__table__.columns}

    def merge(self, record: Base, payload: BaseModel) -> MergeResult:
        """Compute the merge without touching ``record``.

        Raises ``ValidationError`` when a non-nullable field is explicitly cleared.
        """
        patches = patches_from(payload)
        current = {name: getattr(record, name) for name in self._columns}
        result = MergeResult(patches=patches, merged=dict(current))

        for patch in patches.values():
            if patch.is_absent:
                continue
            column = self._columns.get(patch.name)
            if column is None:
                raise ValidationError(f"{patch.name} is not a mutable field", details={"field": patch.name})
            if patch.is_clear and not column.nullable:
                raise ValidationError(f"{patch.name} cannot be null", details={"field": patch.name})
            result.set_value(patch.name, patch.value, current[patch.name])

        return result
