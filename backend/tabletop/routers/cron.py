"""Scheduled-job triggers (hit by an external cron)."""
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tabletop.config import settings
from tabletop.database import get_db
from tabletop.routers.deps import require_cron
from tabletop.services import cleanup_service, reminder_service, webhook_service
from tabletop.services.dashboard_service import DashboardSync, get_dashboard_sync

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_cron)])


@router.get("/cleanup")
def run_cleanup(db: Session = Depends(get_db), sync: DashboardSync = Depends(get_dashboard_sync)):
    return cleanup_service.cleanup_expired(db, sync)


@router.get("/webhooks")
def run_webhooks(
    db: Session = Depends(get_db),
    client: Optional[httpx.Client] = Depends(webhook_service.get_webhook_client),
):
    if client is not None:
        return webhook_service.process_pending(db, client)
    with httpx.Client(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as own_client:
        return webhook_service.process_pending(db, own_client)


@router.get("/reminders")
def run_reminders(db: Session = Depends(get_db), sync: DashboardSync = Depends(get_dashboard_sync)):
    return reminder_service.check_reminders(db, sync)
