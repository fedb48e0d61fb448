from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from crmcore.context import get_correlation_id
from crmcore.core.database import get_db
from crmcore.crm import errors
from crmcore.crm.schemas import (
    ActivityRead,
    CompanyRead,
    ContactRead,
    DealRead,
    LeadConversionRead,
    LeadRead,
    NoteRead,
    UserRead,
)
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

user_service = UserService()
contact_service = ContactService()
company_service = CompanyService()
deal_service = DealService()
lead_service = LeadService()
activity_service = ActivityService()
note_service = NoteService()

ERROR_STATUS_CODES: dict[type[errors.CRMError], int] = {
    errors.ValidationError: status.HTTP_400_BAD_REQUEST,
    errors.ReferenceError: status.HTTP_404_NOT_FOUND,
    errors.NotFoundError: status.HTTP_404_NOT_FOUND,
    errors.ConflictError: status.HTTP_400_BAD_REQUEST,
    errors.StorageError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(request: Request, exc: errors.CRMError) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    status_code = ERROR_STATUS_CODES.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    payload = ErrorEnvelope(
        code=exc.code,
        message=exc.message,
        details=exc.details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def build_entity_router(
    prefix: str,
    tag: str,
    service: EntityService,
    read_model: type[BaseModel],
) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[tag])

    @router.get("", response_model=list[read_model])  # type: ignore[valid-type]
    def list_records(request: Request, db: Session = Depends(get_db)) -> Any:
        try:
            return service.list(db)
        except errors.CRMError as exc:
            return error_response(request, exc)

    @router.get("/{record_id}", response_model=read_model)
    def get_record(request: Request, record_id: str, db: Session = Depends(get_db)) -> Any:
        try:
            return service.get(db, record_id)
        except errors.CRMError as exc:
            return error_response(request, exc)

    @router.post("", response_model=read_model, status_code=status.HTTP_201_CREATED)
    def create_record(request: Request, payload: Any = Body(default=None), db: Session = Depends(get_db)) -> Any:
        try:
            return service.create(db, payload)
        except errors.CRMError as exc:
            return error_response(request, exc)

    @router.patch("/{record_id}", response_model=read_model)
    @router.put("/{record_id}", response_model=read_model)
    def update_record(
        request: Request,
        record_id: str,
        payload: Any = Body(default=None),
        db: Session = Depends(get_db),
    ) -> Any:
        try:
            return service.update(db, record_id, payload)
        except errors.CRMError as exc:
            return error_response(request, exc)

    @router.delete("/{record_id}", status_code=status.HTTP_200_OK, response_model=None)
    def delete_record(request: Request, record_id: str, db: Session = Depends(get_db)) -> Any:
        try:
            service.delete(db, record_id)
            return {"status": "deleted"}
        except errors.CRMError as exc:
            return error_response(request, exc)

    if service.restrict_delete:

        @router.get("/{record_id}/dependencies", response_model=dict[str, int])
        def get_dependencies(request: Request, record_id: str, db: Session = Depends(get_db)) -> Any:
            try:
                return service.dependencies(db, record_id)
            except errors.CRMError as exc:
                return error_response(request, exc)

    return router


users_router = build_entity_router("/api/v1/users", "users", user_service, UserRead)
contacts_router = build_entity_router("/api/v1/contacts", "contacts", contact_service, ContactRead)
companies_router = build_entity_router("/api/v1/companies", "companies", company_service, CompanyRead)
deals_router = build_entity_router("/api/v1/deals", "deals", deal_service, DealRead)
leads_router = build_entity_router("/api/v1/leads", "leads", lead_service, LeadRead)
activities_router = build_entity_router("/api/v1/activities", "activities", activity_service, ActivityRead)
notes_router = build_entity_router("/api/v1/notes", "notes", note_service, NoteRead)


@leads_router.post("/{lead_id}/convert", response_model=LeadConversionRead)
def convert_lead(
    request: Request,
    lead_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
) -> Any:
    try:
        return lead_service.convert_lead(db, lead_id, payload)
    except errors.CRMError as exc:
        return error_response(request, exc)
