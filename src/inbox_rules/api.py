"""
HTTP surface: the cron-triggered sweep and operator cancel/retry endpoints
"""
import hmac
from typing import Callable, Iterator, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, load_settings
from .database.connection import create_session_factory
from .database.models import ScheduledActionStatus
from .database.repository import Repository
from .scheduler.scheduler import DelayedActionScheduler
from .services import build_scheduler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix='/scheduled-actions')


class SweepResponse(BaseModel):
    processed: int
    failed: int
    pending: int


class ScheduledActionResponse(BaseModel):
    id: int
    status: str
    retry_count: int


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_scheduler(request: Request, db: Session = Depends(get_db)) -> DelayedActionScheduler:
    return request.app.state.scheduler_factory(Repository(db))


def require_cron_secret(request: Request, authorization: Optional[str] = Header(None)) -> None:
    secret = request.app.state.settings.cron_secret
    if not secret:
        raise HTTPException(status_code=503, detail='CRON_SECRET is not configured')
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        logger.warning("Rejected sweep request with bad secret")
        raise HTTPException(status_code=401, detail='Unauthorized')


def _transition(scheduler: DelayedActionScheduler, scheduled_action_id: int,
                operation: Callable[[int], bool], expected: str) -> ScheduledActionResponse:
    scheduled = scheduler.repo.get_scheduled_action(scheduled_action_id)
    if scheduled is None:
        raise HTTPException(status_code=404, detail='Scheduled action not found')
    if not operation(scheduled_action_id):
        scheduler.repo.db.refresh(scheduled)
        raise HTTPException(
            status_code=409,
            detail=f"Scheduled action is {scheduled.status}, expected {expected}",
        )
    scheduler.repo.db.refresh(scheduled)
    return ScheduledActionResponse(id=scheduled.id, status=scheduled.status, retry_count=scheduled.retry_count)


@router.post('/sweep', response_model=SweepResponse, dependencies=[Depends(require_cron_secret)])
def sweep(scheduler: DelayedActionScheduler = Depends(get_scheduler)) -> SweepResponse:
    return SweepResponse(**scheduler.sweep().as_dict())


@router.post('/{scheduled_action_id}/cancel', response_model=ScheduledActionResponse)
def cancel(scheduled_action_id: int,
           scheduler: DelayedActionScheduler = Depends(get_scheduler)) -> ScheduledActionResponse:
    return _transition(scheduler, scheduled_action_id, scheduler.cancel, ScheduledActionStatus.PENDING)


@router.post('/{scheduled_action_id}/retry', response_model=ScheduledActionResponse)
def retry(scheduled_action_id: int,
          scheduler: DelayedActionScheduler = Depends(get_scheduler)) -> ScheduledActionResponse:
    return _transition(scheduler, scheduled_action_id, scheduler.retry, ScheduledActionStatus.FAILED)


def create_app(settings: Optional[Settings] = None, session_factory: Optional[sessionmaker] = None,
               scheduler_factory: Optional[Callable[[Repository], DelayedActionScheduler]] = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title='inbox-rules API')
    app.state.settings = settings
    app.state.session_factory = session_factory or create_session_factory(settings.database_url)
    app.state.scheduler_factory = scheduler_factory or (lambda repo: build_scheduler(repo, settings))
    app.include_router(router, prefix='/api')
    return app
