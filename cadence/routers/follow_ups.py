from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cadence.database import get_db
from cadence.dependencies import get_sequence_queue
from cadence.models import FollowUp
from cadence.schemas.follow_up import CancelFollowUpRequest, FollowUpResponse
from cadence.services.queue_service import JobQueue
from cadence.services.result import Result
from cadence.services.sequence_service import (
    cancel_follow_up,
    convert_follow_up,
    pause_follow_up,
    resume_follow_up,
)

router = APIRouter(prefix="/follow-ups", tags=["follow-ups"])

ERROR_STATUS_CODES = {
    "not_found": 404,
    "invalid_transition": 409,
}


def _respond(db: Session, result: Result[FollowUp]) -> FollowUpResponse:
    if not result.ok:
        db.rollback()
        raise HTTPException(status_code=ERROR_STATUS_CODES.get(result.error_code, 400), detail=result.error)
    db.commit()
    return FollowUpResponse.model_validate(result.value)


@router.post("/{follow_up_id}/convert", response_model=FollowUpResponse)
def convert(follow_up_id: UUID, db: Session = Depends(get_db)):
    """Client converted; any pending step exits without sending."""
    return _respond(db, convert_follow_up(db, follow_up_id))


@router.post("/{follow_up_id}/cancel", response_model=FollowUpResponse)
def cancel(follow_up_id: UUID, request: CancelFollowUpRequest | None = None, db: Session = Depends(get_db)):
    reason = request.reason if request else None
    return _respond(db, cancel_follow_up(db, follow_up_id, reason=reason))


@router.post("/{follow_up_id}/pause", response_model=FollowUpResponse)
def pause(follow_up_id: UUID, db: Session = Depends(get_db)):
    return _respond(db, pause_follow_up(db, follow_up_id))


@router.post("/{follow_up_id}/resume", response_model=FollowUpResponse)
def resume(
    follow_up_id: UUID,
    db: Session = Depends(get_db),
    sequence_queue: JobQueue = Depends(get_sequence_queue),
):
    return _respond(db, resume_follow_up(db, sequence_queue, follow_up_id))
