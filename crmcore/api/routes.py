from fastapi import APIRouter

from crmcore.crm.api import (
    activities_router,
    companies_router,
    contacts_router,
    deals_router,
    leads_router,
    notes_router,
    users_router,
)

router = APIRouter()


@router.get("/api/v1/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


router.include_router(users_router)
router.include_router(contacts_router)
router.include_router(companies_router)
router.include_router(deals_router)
router.include_router(leads_router)
router.include_router(activities_router)
router.include_router(notes_router)
