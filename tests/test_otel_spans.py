from __future__ import annotations

import os
from collections.abc import Generator

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.context import correlation_scope
from crmcore.core.database import Base, get_db
from crmcore.crm.errors import ConflictError
from crmcore.crm.service import LeadService, UserService
from crmcore.main import app
from crmcore.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("crmcore")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(db_session: Session) -> str:
    owner = UserService().create(db_session, {"email": "owner@example.com"})
    lead = LeadService().create(
        db_session,
        {"first_name": "Jamie", "last_name": "Smith", "email": "jamie@example.com", "user_id": owner.id},
    )
    return lead.id


def test_convert_span_carries_lead_contact_and_correlation(
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    lead_id = _create_lead(db_session)

    with correlation_scope("otel-convert-1"):
        result = LeadService().convert_lead(db_session, lead_id)

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.lead.convert"]
    assert len(spans) == 1
    attributes = spans[0].attributes
    assert attributes.get("lead_id") == lead_id
    assert attributes.get("contact_id") == result.contact.id
    assert attributes.get("correlation_id") == "otel-convert-1"
    assert spans[0].status.status_code != StatusCode.ERROR


def test_rejected_conversion_marks_span_as_error(
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    lead_id = _create_lead(db_session)
    service = LeadService()
    service.convert_lead(db_session, lead_id)
    span_exporter.clear()

    with pytest.raises(ConflictError):
        service.convert_lead(db_session, lead_id)

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.lead.convert"]
    assert len(spans) == 1
    assert spans[0].status.status_code == StatusCode.ERROR
    assert "contact_id" not in spans[0].attributes
    assert any(event.name == "exception" for event in spans[0].events)


def test_request_span_contains_correlation_id(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    lead_id = _create_lead(db_session)

    response = client.post(
        f"/api/v1/leads/{lead_id}/convert",
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(
        span.name == "crm.lead.convert" and span.attributes.get("correlation_id") == "otel-corr-1" for span in spans
    )
