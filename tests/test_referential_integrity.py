from __future__ import annotations

import os
from collections.abc import Generator

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.core.database import Base
from crmcore.crm import errors
from crmcore.crm.integrity import ReferentialIntegrityEnforcer, Reference
from crmcore.crm.models import CRMActivity, CRMCompany, CRMContact, CRMDeal, CRMLead, CRMNote, CRMUser
from crmcore.crm.service import (
    ActivityService,
    CompanyService,
    ContactService,
    DealService,
    EntityService,
    LeadService,
    NoteService,
    UserService,
)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def graph(db_session: Session) -> dict[str, str]:
    user = UserService().create(db_session, {"email": "owner@example.com"})
    company = CompanyService().create(db_session, {"name": "Initech", "user_id": user.id})
    contact = ContactService().create(
        db_session,
        {
            "first_name": "Grace",
            "last_name": "Hopper",
            "email": "grace@example.com",
            "user_id": user.id,
            "company_id": company.id,
        },
    )
    deal = DealService().create(
        db_session,
        {"title": "Renewal", "value": "1000", "user_id": user.id, "contact_id": contact.id, "company_id": company.id},
    )
    return {"user_id": user.id, "company_id": company.id, "contact_id": contact.id, "deal_id": deal.id}


def _base_payload(entity: str, graph: dict[str, str]) -> dict:
    owner = graph["user_id"]
    payloads = {
        "contact": {"first_name": "Alan", "last_name": "Turing", "email": "alan@example.com", "user_id": owner},
        "company": {"name": "Globex", "user_id": owner},
        "deal": {"title": "Expansion", "value": "2500", "user_id": owner},
        "lead": {"first_name": "Jamie", "last_name": "Smith", "email": "jamie@example.com", "user_id": owner},
        "activity": {"title": "Follow up", "type": "CALL", "user_id": owner},
        "note": {"content": "Met at the conference.", "user_id": owner},
    }
    return dict(payloads[entity])


SERVICES: dict[str, tuple[type[EntityService], type]] = {
    "contact": (ContactService, CRMContact),
    "company": (CompanyService, CRMCompany),
    "deal": (DealService, CRMDeal),
    "lead": (LeadService, CRMLead),
    "activity": (ActivityService, CRMActivity),
    "note": (NoteService, CRMNote),
}

FOREIGN_KEY_CASES = [
    ("contact", "user_id"),
    ("contact", "company_id"),
    ("company", "user_id"),
    ("deal", "user_id"),
    ("deal", "contact_id"),
    ("deal", "company_id"),
    ("lead", "user_id"),
    ("activity", "user_id"),
    ("activity", "contact_id"),
    ("activity", "company_id"),
    ("activity", "deal_id"),
    ("note", "user_id"),
    ("note", "contact_id"),
    ("note", "company_id"),
    ("note", "deal_id"),
]


def _count(session: Session, model: type) -> int:
    return int(session.scalar(select(func.count()).select_from(model)) or 0)


@pytest.mark.parametrize(("entity", "field_name"), FOREIGN_KEY_CASES)
def test_create_with_unknown_foreign_key_writes_nothing(
    db_session: Session,
    graph: dict[str, str],
    entity: str,
    field_name: str,
) -> None:
    service_cls, model = SERVICES[entity]
    payload = _base_payload(entity, graph)
    payload[field_name] = "00000000-0000-0000-0000-000000000000"
    before = _count(db_session, model)

    with pytest.raises(errors.ReferenceError) as exc_info:
        service_cls().create(db_session, payload)

    assert exc_info.value.field == field_name
    assert _count(db_session, model) == before


@pytest.mark.parametrize(("entity", "field_name"), FOREIGN_KEY_CASES)
def test_create_with_existing_foreign_key_succeeds(
    db_session: Session,
    graph: dict[str, str],
    entity: str,
    field_name: str,
) -> None:
    service_cls, _ = SERVICES[entity]
    payload = _base_payload(entity, graph)
    payload[field_name] = graph[field_name]

    created = service_cls().create(db_session, payload)

    assert getattr(created, field_name) == graph[field_name]


def test_null_optional_foreign_keys_pass(db_session: Session, graph: dict[str, str]) -> None:
    payload = _base_payload("note", graph)
    payload.update({"contact_id": None, "company_id": None, "deal_id": None})

    note = NoteService().create(db_session, payload)

    assert (note.contact_id, note.company_id, note.deal_id) == (None, None, None)


def test_owner_cannot_be_null(db_session: Session, graph: dict[str, str]) -> None:
    payload = _base_payload("activity", graph)
    payload["user_id"] = None

    with pytest.raises(errors.ValidationError):
        ActivityService().create(db_session, payload)
    assert _count(db_session, CRMActivity) == 0


def test_update_checks_changed_foreign_keys(db_session: Session, graph: dict[str, str]) -> None:
    service = NoteService()
    note = service.create(db_session, _base_payload("note", graph))

    with pytest.raises(errors.ReferenceError) as exc_info:
        service.update(db_session, note.id, {"deal_id": "missing-deal", "title": "Should not stick"})
    assert exc_info.value.field == "deal_id"

    unchanged = service.get(db_session, note.id)
    assert unchanged.deal_id is None
    assert unchanged.title is None

    linked = service.update(db_session, note.id, {"deal_id": graph["deal_id"]})
    assert linked.deal_id == graph["deal_id"]


def test_update_can_reassign_owner_to_existing_user(db_session: Session, graph: dict[str, str]) -> None:
    other = UserService().create(db_session, {"email": "second@example.com"})
    service = CompanyService()

    with pytest.raises(errors.ReferenceError):
        service.update(db_session, graph["company_id"], {"user_id": "ghost"})

    with pytest.raises(errors.ValidationError):
        service.update(db_session, graph["company_id"], {"user_id": None})

    assert service.update(db_session, graph["company_id"], {"user_id": other.id}).user_id == other.id


def test_enforcer_checks_every_reference(db_session: Session, graph: dict[str, str]) -> None:
    enforcer = ReferentialIntegrityEnforcer()
    references = enforcer.references_for(
        CRMDeal,
        {"user_id": graph["user_id"], "contact_id": None, "company_id": "nope", "title": "ignored"},
    )

    assert [reference.field for reference in references] == ["user_id", "contact_id", "company_id"]
    with pytest.raises(errors.ReferenceError) as exc_info:
        enforcer.check(db_session, references)
    assert exc_info.value.field == "company_id"

    enforcer.check(db_session, [Reference(field="user_id", target=CRMUser, value=graph["user_id"])])


def test_delete_referenced_company_is_restricted(db_session: Session, graph: dict[str, str]) -> None:
    companies = CompanyService()

    assert companies.dependencies(db_session, graph["company_id"]) == {
        "contacts": 1,
        "deals": 1,
        "activities": 0,
        "notes": 0,
    }
    with pytest.raises(errors.ConflictError) as exc_info:
        companies.delete(db_session, graph["company_id"])
    assert exc_info.value.details == {"dependencies": {"contacts": 1, "deals": 1}}
    assert companies.get(db_session, graph["company_id"]).name == "Initech"

    DealService().update(db_session, graph["deal_id"], {"company_id": None})
    ContactService().update(db_session, graph["contact_id"], {"company_id": None})
    companies.delete(db_session, graph["company_id"])

    with pytest.raises(errors.NotFoundError):
        companies.get(db_session, graph["company_id"])


def test_delete_user_with_owned_records_is_restricted(db_session: Session, graph: dict[str, str]) -> None:
    users = UserService()

    counts = users.dependencies(db_session, graph["user_id"])
    assert counts["contacts"] == 1
    assert counts["companies"] == 1
    assert counts["deals"] == 1

    with pytest.raises(errors.ConflictError):
        users.delete(db_session, graph["user_id"])

    lonely = users.create(db_session, {"email": "lonely@example.com"})
    users.delete(db_session, lonely.id)
    with pytest.raises(errors.NotFoundError):
        users.get(db_session, lonely.id)


def test_dependencies_of_missing_record_is_not_found(db_session: Session) -> None:
    with pytest.raises(errors.NotFoundError):
        DealService().dependencies(db_session, "missing")
