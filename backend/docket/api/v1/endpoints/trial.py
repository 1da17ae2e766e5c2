"""
Live trial endpoints: role-specific joins, leave, end and moderation
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from docket.api.v1.deps import get_case, get_current_user, require_admin, require_attorney, require_juror
from docket.db.database import get_db
from docket.db.models import Case, User, UserRole
from docket.db.schemas import (
    JoinTicketResponse,
    MeetingDetailResponse,
    MeetingResponse,
    MessageResponse,
    ParticipantResponse,
)
from docket.services import trial_session_service
from docket.services.communication_service import CommunicationService, get_communication_service

router = APIRouter()


def _join(db: Session, case: Case, user: User, role: UserRole, comms: CommunicationService) -> JoinTicketResponse:
    ticket = trial_session_service.join_trial(db, case, user, role, comms)
    return JoinTicketResponse(**ticket.as_dict())


# ============================================================================
# Join
# ============================================================================

@router.post("/join/{case_id}", response_model=JoinTicketResponse)
def attorney_join(
    case: Case = Depends(get_case),
    current_user: User = Depends(require_attorney),
    comms: CommunicationService = Depends(get_communication_service),
    db: Session = Depends(get_db)
):
    return _join(db, case, current_user, UserRole.attorney, comms)


@router.post("/juror-join/{case_id}", response_model=JoinTicketResponse)
def juror_join(
    case: Case = Depends(get_case),
    current_user: User = Depends(require_juror),
    comms: CommunicationService = Depends(get_communication_service),
    db: Session = Depends(get_db)
):
    return _join(db, case, current_user, UserRole.juror, comms)


@router.post("/admin-join/{case_id}", response_model=JoinTicketResponse)
def admin_join(
    case: Case = Depends(get_case),
    current_user: User = Depends(require_admin),
    comms: CommunicationService = Depends(get_communication_service),
    db: Session = Depends(get_db)
):
    """Admins may join before the window opens"""
    return _join(db, case, current_user, UserRole.admin, comms)


# ============================================================================
# Session
# ============================================================================

@router.post("/leave/{case_id}", response_model=MessageResponse)
def leave_trial(
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    comms: CommunicationService = Depends(get_communication_service),
    db: Session = Depends(get_db)
):
    released = trial_session_service.leave_trial(db, case, current_user, comms)
    return MessageResponse(message="Left the trial" if released else "Not attached to this trial")


@router.post("/end/{case_id}", response_model=MeetingResponse)
def end_trial(
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return trial_session_service.end_trial(db, case, current_user)


@router.get("/meeting/{case_id}", response_model=MeetingDetailResponse)
def get_meeting(
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    trial_session_service.ensure_can_attend(db, case, current_user)
    meeting = trial_session_service.get_meeting(db, case)
    participants = trial_session_service.list_active_participants(db, meeting)
    return MeetingDetailResponse(
        meeting=MeetingResponse.model_validate(meeting),
        participants=[ParticipantResponse.model_validate(p) for p in participants],
    )


@router.delete("/{case_id}/participants/{participant_id}", response_model=ParticipantResponse)
def remove_participant(
    participant_id: int,
    case: Case = Depends(get_case),
    current_user: User = Depends(require_admin),
    comms: CommunicationService = Depends(get_communication_service),
    db: Session = Depends(get_db)
):
    return trial_session_service.remove_participant(db, case, participant_id, current_user, comms)
