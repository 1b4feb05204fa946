"""
Job platform completion callback endpoint.

Mounted at an unversioned path because the URL is stored inside every
recurring job's callback configuration.
"""
import logging
from typing import Any, Dict

from fastapi import Body, Depends, HTTPException, status
from sqlalchemy.orm import Session

from scraper.api.dependencies import get_completion_service
from scraper.core.api_version import create_versioned_router
from scraper.core.security import verify_job_webhook_token
from scraper.db.database import get_db
from scraper.integrations.constants import WEBHOOK_PATH
from scraper.services.job_completion_service import JobCompletionError, JobCompletionService

logger = logging.getLogger(__name__)

router = create_versioned_router(prefix=WEBHOOK_PATH, tags=["job-webhooks"], unversioned=True)


@router.post("", dependencies=[Depends(verify_job_webhook_token)])
def receive_job_webhook(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    service: JobCompletionService = Depends(get_completion_service),
):
    """
    Handle a run completion callback.

    Duplicate deliveries of an already processed run are acknowledged with
    `skipped: true`. Processing failures return 500 so the platform retries.
    """
    try:
        outcome = service.handle(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except JobCompletionError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)
    return outcome.to_dict()
