"""ERP sync endpoints — batch contact and agent synchronisation."""

import logging

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from conversa.core.database import get_db
from conversa.schemas.erp import ErpSyncResult
from conversa.services.erp import batch_sync_contacts, batch_sync_users

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sync/contacts", response_model=ErpSyncResult)
def sync_contacts(
    items: list[dict] = Body(..., min_length=1),
    dry_run: bool = Query(False),
    db: Session = Depends(get_db),
):
    """Each item: {businesspartner_id, name, email, phone}. Items are synced independently."""
    result = batch_sync_contacts(db, items, dry_run=dry_run)
    logger.info(
        "ERP contact sync: success=%d errors=%d dry_run=%s",
        result.success,
        result.errors,
        dry_run,
    )
    return result


@router.post("/sync/users", response_model=ErpSyncResult)
def sync_users(
    items: list[dict] = Body(..., min_length=1),
    dry_run: bool = Query(False),
    db: Session = Depends(get_db),
):
    """Each item: {erp_user_id, name, email}. Items are synced independently."""
    result = batch_sync_users(db, items, dry_run=dry_run)
    logger.info(
        "ERP user sync: success=%d errors=%d dry_run=%s",
        result.success,
        result.errors,
        dry_run,
    )
    return result
