from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.schemas.admin import (
    JobsOverviewResponse,
    ReprovisionResponse,
    SettingsReloadResponse,
)
from app.services.admin import provisioning_admin
from app.services.runtime_settings import settings_store

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/services/{service_id}/provision", response_model=ReprovisionResponse)
def reprovision_service(service_id: str, db: Session = Depends(get_db)):
    return provisioning_admin.reprovision(db, service_id)


@router.get("/jobs", response_model=JobsOverviewResponse)
def list_provisioning_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return provisioning_admin.jobs_overview(db, limit)


@router.post("/settings/reload", response_model=SettingsReloadResponse)
def reload_settings():
    snapshot = settings_store.reload()
    return {
        "renewal_webhook_configured": bool(snapshot.renewal_webhook_url),
        "notification_timeout_secs": snapshot.notification_timeout_secs,
    }
