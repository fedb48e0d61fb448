from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any, ClassVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crmcore.context import get_correlation_id
from crmcore.core.database import Base
from crmcore.crm.errors import ConflictError, CRMError, StorageError, ValidationError
from crmcore.crm.integrity import ReferentialIntegrityEnforcer
from crmcore.crm.merge import MergeResult, PartialUpdateMerger
from crmcore.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMLead,
    CRMNote,
    CRMUser,
    utcnow,
)
from crmcore.crm.related import RelatedRecordLoader
from crmcore.crm.repositories import EntityRepository
from crmcore.crm.schemas import (
    ACTIVITY_STATUS_COMPLETED,
    LEAD_STATUS_CONVERTED,
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    LeadConversionRead,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    NoteUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)


logger = logging.getLogger("crmcore.crm")
tracer = trace.get_tracer("crmcore.crm")

Payload = BaseModel | Mapping[str, Any] | None


def parse_payload(schema: type[BaseModel], payload: Payload) -> BaseModel:
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be an object")

    try:
        return schema.model_validate(dict(payload))
    except PydanticValidationError as exc:
        details = json.loads(exc.json(include_url=False))
        message = "; ".join(
            f"{'.'.join(str(part) for part in item['loc']) or 'payload'}: {item['msg']}" for item in details
        )
        raise ValidationError(message, details=details) from exc


@contextmanager
def transaction(session: Session) -> Iterator[None]:
    """Commit when the block succeeds, roll back on any failure.

    Storage failures surface as ``StorageError``; a violated unique constraint
    surfaces as ``ConflictError``.
    """
    try:
        yield
        session.commit()
    except CRMError as exc:
        session.rollback()
        logger.info("crm.operation_rejected", extra={"error": f"{exc.code}: {exc.message}"})
        raise
    except IntegrityError as exc:
        session.rollback()
        logger.warning("crm.integrity_conflict", extra={"error": str(exc.orig)})
        raise ConflictError("write conflicts with existing data") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("crm.storage_failed", extra={"error": str(exc)})
        raise StorageError("storage failure") from exc


class EntityService:
    model: ClassVar[type[Base]]
    create_schema: ClassVar[type[BaseModel]]
    update_schema: ClassVar[type[BaseModel]]
    read_schema: ClassVar[type[BaseModel]]
    restrict_delete: ClassVar[bool] = False

    def __init__(self, integrity: ReferentialIntegrityEnforcer | None = None) -> None:
        self.repository = EntityRepository(self.model)
        self.merger = PartialUpdateMerger(self.model)
        self.integrity = integrity or ReferentialIntegrityEnforcer()
        self.related = RelatedRecordLoader(self.integrity)
        self.entity_type = self.repository.label

    def get(self, session: Session, record_id: str) -> Any:
        with transaction(session):
            return self._to_read(session, self.repository.get(session, record_id))

    def list(self, session: Session) -> list[Any]:
        with transaction(session):
            return [self._to_read(session, record) for record in self.repository.list(session)]

    def create(self, session: Session, payload: Payload) -> Any:
        dto = parse_payload(self.create_schema, payload)
        values = dto.model_dump()
        self.integrity.require_owner(self.model, values)

        with transaction(session):
            self._before_create(session, dto, values)
            self.integrity.check(session, self.integrity.references_for(self.model, values))
            record = self.repository.insert(session, values)
            created = self._to_read(session, self.repository.refresh(session, record.id))

        self._log_write("create", created.id)
        return created

    def update(self, session: Session, record_id: str, payload: Payload) -> Any:
        dto = parse_payload(self.update_schema, payload)

        with transaction(session):
            record = self.repository.get(session, record_id)
            result = self.merger.merge(record, dto)
            self._apply_rules(session, record, result)
            if not result.changes:
                return self._to_read(session, record)
            self.integrity.check(
                session,
                self.integrity.references_for(self.model, result.changes, only=result.changed),
            )
            updated = self._to_read(session, self.repository.update(session, record_id, result.changes))
            changed_fields = sorted(result.changed)

        logger.info(
            "crm.entity.updated",
            extra={"entity_type": self.entity_type, "entity_id": record_id, "action": f"update:{','.join(changed_fields)}"},
        )
        return updated

    def delete(self, session: Session, record_id: str) -> None:
        with transaction(session):
            if self.restrict_delete:
                self.repository.get(session, record_id)
                dependencies = self.integrity.count_dependents(session, self.model, record_id)
                if any(dependencies.values()):
                    logger.info(
                        "crm.entity.delete_restricted",
                        extra={"entity_type": self.entity_type, "entity_id": record_id, "dependencies": dependencies},
                    )
                    raise ConflictError(
                        f"{self.entity_type} is still referenced",
                        details={"dependencies": {key: value for key, value in dependencies.items() if value}},
                    )
            self.repository.delete(session, record_id)

        self._log_write("delete", record_id)

    def dependencies(self, session: Session, record_id: str) -> dict[str, int]:
        with transaction(session):
            self.repository.get(session, record_id)
            return self.integrity.count_dependents(session, self.model, record_id)

    def _before_create(self, session: Session, dto: BaseModel, values: dict[str, Any]) -> None:
        return None

    def _apply_rules(self, session: Session, record: Any, result: MergeResult) -> None:
        return None

    def _to_read(self, session: Session, record: Any) -> Any:
        return self.related.read(session, self.model, self.read_schema, record)

    def _log_write(self, action: str, record_id: str) -> None:
        logger.info(
            f"crm.entity.{action}d",
            extra={"entity_type": self.entity_type, "entity_id": record_id, "action": action},
        )


class UserService(EntityService):
    model = CRMUser
    create_schema = UserCreate
    update_schema = UserUpdate
    read_schema = UserRead
    restrict_delete = True

    def _before_create(self, session: Session, dto: BaseModel, values: dict[str, Any]) -> None:
        self._ensure_email_available(session, values["email"])

    def _apply_rules(self, session: Session, record: Any, result: MergeResult) -> None:
        if "email" in result.changed:
            self._ensure_email_available(session, result.changes["email"], exclude_id=record.id)

    def _ensure_email_available(self, session: Session, email: str, exclude_id: str | None = None) -> None:
        stmt = select(CRMUser.id).where(CRMUser.email == email)
        if exclude_id is not None:
            stmt = stmt.where(CRMUser.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError("email already in use", details={"field": "email"})


class ContactService(EntityService):
    model = CRMContact
    create_schema = ContactCreate
    update_schema = ContactUpdate
    read_schema = ContactRead
    restrict_delete = True


class CompanyService(EntityService):
    model = CRMCompany
    create_schema = CompanyCreate
    update_schema = CompanyUpdate
    read_schema = CompanyRead
    restrict_delete = True


class DealService(EntityService):
    model = CRMDeal
    create_schema = DealCreate
    update_schema = DealUpdate
    read_schema = DealRead
    restrict_delete = True


class ActivityService(EntityService):
    model = CRMActivity
    create_schema = ActivityCreate
    update_schema = ActivityUpdate
    read_schema = ActivityRead

    def _before_create(self, session: Session, dto: BaseModel, values: dict[str, Any]) -> None:
        if values["status"] == ACTIVITY_STATUS_COMPLETED and "completed_at" not in dto.model_fields_set:
            values["completed_at"] = utcnow()

    def _apply_rules(self, session: Session, record: Any, result: MergeResult) -> None:
        status_patch = result.patches["status"]
        if not status_patch.is_set or status_patch.value != ACTIVITY_STATUS_COMPLETED:
            return
        if result.provided("completed_at"):
            return
        if record.status == ACTIVITY_STATUS_COMPLETED and record.completed_at is not None:
            return
        result.set_value("completed_at", utcnow(), record.completed_at)


class NoteService(EntityService):
    model = CRMNote
    create_schema = NoteCreate
    update_schema = NoteUpdate
    read_schema = NoteRead


class LeadService(EntityService):
    model = CRMLead
    create_schema = LeadCreate
    update_schema = LeadUpdate
    read_schema = LeadRead

    def __init__(
        self,
        integrity: ReferentialIntegrityEnforcer | None = None,
        contacts: EntityRepository[CRMContact] | None = None,
    ) -> None:
        super().__init__(integrity)
        self.contacts = contacts or EntityRepository(CRMContact)

    def convert_lead(self, session: Session, lead_id: str, payload: Payload = None) -> LeadConversionRead:
        dto = parse_payload(LeadConvertRequest, payload)
        correlation_id = get_correlation_id()

        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", lead_id)
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            try:
                with transaction(session):
                    contact_id = self._convert(session, lead_id, dto)
                    converted = LeadConversionRead(
                        lead=self._to_read(session, self.repository.refresh(session, lead_id)),
                        contact=self.related.read(
                            session, CRMContact, ContactRead, self.contacts.refresh(session, contact_id)
                        ),
                    )
            except CRMError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, exc.message))
                raise
            span.set_attribute("contact_id", contact_id)

        logger.info(
            "crm.lead.converted",
            extra={"entity_type": self.entity_type, "lead_id": lead_id, "contact_id": contact_id, "action": "convert"},
        )
        return converted

    def _convert(self, session: Session, lead_id: str, dto: LeadConvertRequest) -> str:
        lead = self.repository.get(session, lead_id)
        if lead.status == LEAD_STATUS_CONVERTED:
            raise ConflictError(
                "lead has already been converted",
                details={"lead_id": lead_id, "converted_to_contact_id": lead.converted_to_contact_id},
            )

        contact_values = {
            "first_name": lead.first_name,
            "last_name": lead.last_name,
            "email": lead.email,
            "phone": lead.phone,
            "user_id": lead.user_id,
            "company_id": dto.company_id,
        }
        self.integrity.check(session, self.integrity.references_for(CRMContact, contact_values))
        contact = self.contacts.insert(session, contact_values)

        # Conditional on the status so a concurrent conversion cannot link a second contact.
        marked = self.repository.update_by_id(
            session,
            lead_id,
            {"status": LEAD_STATUS_CONVERTED, "converted_to_contact_id": contact.id},
            CRMLead.status != LEAD_STATUS_CONVERTED,
        )
        if marked == 0:
            raise ConflictError("lead has already been converted", details={"lead_id": lead_id})
        return contact.id

    def _before_create(self, session: Session, dto: BaseModel, values: dict[str, Any]) -> None:
        if values["status"] == LEAD_STATUS_CONVERTED:
            raise ValidationError(
                "a lead reaches Converted only through conversion",
                details={"field": "status"},
            )

    def _apply_rules(self, session: Session, record: Any, result: MergeResult) -> None:
        status_patch = result.patches["status"]
        if not status_patch.is_set or status_patch.value == record.status:
            return
        if record.status == LEAD_STATUS_CONVERTED:
            raise ConflictError("converted lead status cannot change", details={"field": "status"})
        if status_patch.value == LEAD_STATUS_CONVERTED:
            raise ConflictError("a lead reaches Converted only through conversion", details={"field": "status"})
