"""Unit tests for case intake, visibility, review and cancellation."""

from datetime import date, datetime, time

import pytest

from docket.db.models import (
    AdminApprovalStatus,
    AttorneyStatus,
    CaseEvent,
    Notification,
    RescheduleRequest,
)
from docket.services import case_service, slot_registry
from docket.services.scheduling_clock import TimezoneTable
from docket.utils.exceptions import PolicyViolation, UnauthorizedError, ValidationError


def _always_free(*args, **kwargs) -> slot_registry.SlotAvailability:
    return slot_registry.SlotAvailability(available=True)


def _create(db, attorney, now, **overrides):
    fields = dict(
        case_title="Smith v. Jones",
        case_type="Civil",
        case_jurisdiction="State",
        case_tier="Tier 2",
        state="Texas",
        county="Travis",
        scheduled_date="2030-06-10",
        scheduled_time="10:00",
        now=now,
    )
    fields.update(overrides)
    return case_service.create_case(db, attorney, **fields)


class TestCreateCase:

    def test_creates_pending_case(self, db, factory, now) -> None:
        attorney = factory.attorney()

        case = _create(db, attorney, now, timezone_offset=0)

        assert case.attorney_status == AttorneyStatus.pending
        assert case.admin_approval_status == AdminApprovalStatus.pending
        assert case.scheduled_time == time(10, 0)
        assert case.required_jurors == 7
        event = db.query(CaseEvent).filter(CaseEvent.case_id == case.id).one()
        assert event.event_type == "case_created"

    def test_offset_from_attorney_state(self, db, factory, now) -> None:
        attorney = factory.attorney(state="Oregon")
        table = TimezoneTable({"Oregon": -480, "Texas": -360})

        case = _create(db, attorney, now, timezones=table)

        assert case.timezone_offset == -480

    def test_offset_falls_back_to_case_state(self, db, factory, now) -> None:
        table = TimezoneTable({"Texas": -360})

        case = _create(db, factory.attorney(), now, timezones=table)

        assert case.timezone_offset == -360

    def test_explicit_offset_out_of_range(self, db, factory, now) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _create(db, factory.attorney(), now, timezone_offset=900)

        assert exc_info.value.code == "INVALID_TIMEZONE"

    @pytest.mark.parametrize("jurors", [4, 8])
    def test_required_jurors_bounds(self, db, factory, now, jurors) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _create(db, factory.attorney(), now, required_jurors=jurors)

        assert exc_info.value.code == "INVALID_REQUIRED_JURORS"

    def test_slot_must_be_ahead_of_now(self, db, factory) -> None:
        # 10:00 UTC with four minutes to go is inside the buffer
        with pytest.raises(ValidationError) as exc_info:
            _create(db, factory.attorney(), datetime(2030, 6, 10, 9, 56), timezone_offset=0)

        assert exc_info.value.code == "SCHEDULE_IN_PAST"

    def test_offset_applies_to_past_check(self, db, factory) -> None:
        # 10:00 in UTC-6 is 16:00 UTC, still hours away at noon UTC
        case = _create(db, factory.attorney(), datetime(2030, 6, 10, 12, 0), timezone_offset=-360)

        assert case.id is not None

    @pytest.mark.parametrize("field,value,code", [
        ("scheduled_time", "25:00", "INVALID_TIME"),
        ("scheduled_date", "06/10/2030", "INVALID_DATE"),
        ("case_type", "Maritime", "INVALID_CHOICE"),
        ("case_title", "abc", "MISSING_FIELD"),
    ])
    def test_field_validation(self, db, factory, now, field, value, code) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _create(db, factory.attorney(), now, **{field: value})

        assert exc_info.value.code == code


class TestVisibility:

    def test_juror_sees_war_room_cases(self, db, factory) -> None:
        case = factory.war_room_case(factory.attorney())

        assert case_service.can_view(db, case, factory.juror()) is True

    def test_juror_cannot_see_pending_case(self, db, factory) -> None:
        case = factory.case(factory.attorney())

        with pytest.raises(UnauthorizedError):
            case_service.get_case_for_user(db, case, factory.juror())

    def test_applicant_keeps_access_after_submit(self, db, factory) -> None:
        case = factory.case(factory.attorney(), status=AttorneyStatus.awaiting_trial,
                            admin_status=AdminApprovalStatus.approved)
        juror = factory.juror()
        factory.application(case, juror)

        assert case_service.can_view(db, case, juror) is True

    def test_other_attorney_cannot_see(self, db, factory) -> None:
        case = factory.war_room_case(factory.attorney())

        assert case_service.can_view(db, case, factory.attorney()) is False

    def test_read_opens_trial_when_due(self, db, factory) -> None:
        attorney = factory.attorney()
        case = factory.case(attorney, status=AttorneyStatus.awaiting_trial,
                            admin_status=AdminApprovalStatus.approved)

        case = case_service.get_case_for_user(db, case, attorney, now=datetime(2030, 6, 10, 9, 50))

        assert case.attorney_status == AttorneyStatus.join_trial

    def test_listing_scopes_by_role(self, db, factory) -> None:
        mine = factory.attorney()
        own_case = factory.case(mine)
        factory.case(factory.attorney(), scheduled_time=time(14, 0))
        deleted = factory.war_room_case(mine, scheduled_time=time(16, 0))
        deleted.is_deleted = True
        db.commit()

        assert [c.id for c in case_service.list_cases_for_user(db, mine)] == [own_case.id]
        assert len(case_service.list_cases_for_user(db, factory.admin())) == 2


class TestReview:

    def test_approve_free_slot(self, db, factory) -> None:
        attorney = factory.attorney()
        case = factory.case(attorney)

        outcome = case_service.review_case(db, case, factory.admin(), "approve", comments="Looks good")

        assert outcome.decision == "approved"
        assert case.attorney_status == AttorneyStatus.war_room
        assert case.admin_comments == "Looks good"
        note = db.query(Notification).filter(Notification.user_id == attorney.id).one()
        assert note.type == "case_approved"

    def test_approve_taken_slot_becomes_reschedule(self, db, factory) -> None:
        factory.war_room_case(factory.attorney())
        case = factory.case(factory.attorney())

        outcome = case_service.review_case(db, case, factory.admin(), "approve")

        assert outcome.decision == "reschedule_requested"
        assert case.attorney_status == AttorneyStatus.pending
        assert db.query(RescheduleRequest).count() == 1

    def test_lost_race_at_commit_becomes_reschedule(self, db, factory, monkeypatch) -> None:
        # Given a rival holding the slot that the availability check misses
        rival = factory.war_room_case(factory.attorney())
        case = factory.case(factory.attorney())
        monkeypatch.setattr(slot_registry, "is_slot_available", _always_free)

        # When the admin approves
        outcome = case_service.review_case(db, case, factory.admin(), "approve")

        # Then the unique slot index refuses the commit and negotiation starts
        assert outcome.decision == "reschedule_requested"
        assert outcome.request.conflicting_case_id == rival.id
        assert case.admin_approval_status == AdminApprovalStatus.pending
        assert case.attorney_status == AttorneyStatus.pending

    def test_reject_needs_reason(self, db, factory) -> None:
        case = factory.case(factory.attorney())

        with pytest.raises(ValidationError):
            case_service.review_case(db, case, factory.admin(), "reject")

    def test_reject_with_reason(self, db, factory) -> None:
        attorney = factory.attorney()
        case = factory.case(attorney)

        outcome = case_service.review_case(db, case, factory.admin(), "reject", rejection_reason="Incomplete facts")

        assert outcome.decision == "rejected"
        assert case.admin_approval_status == AdminApprovalStatus.rejected
        assert case.rejection_reason == "Incomplete facts"
        note = db.query(Notification).filter(Notification.user_id == attorney.id).one()
        assert note.type == "case_rejected"

    def test_scheduling_conflict_with_slots_opens_negotiation(self, db, factory) -> None:
        case = factory.case(factory.attorney())
        slots = [
            {"date": "2030-06-11", "time": "10:00"},
            {"date": "2030-06-12", "time": "10:00"},
            {"date": "2030-06-13", "time": "10:00"},
        ]

        outcome = case_service.review_case(
            db, case, factory.admin(), "reject", rejection_reason="scheduling_conflict", alternate_slots=slots,
        )

        assert outcome.decision == "reschedule_requested"
        assert len(outcome.request.alternate_slots) == 3
        assert case.admin_approval_status == AdminApprovalStatus.pending

    def test_second_review_refused(self, db, factory) -> None:
        case = factory.case(factory.attorney())
        admin = factory.admin()
        case_service.review_case(db, case, admin, "reject", rejection_reason="Incomplete facts")

        with pytest.raises(PolicyViolation) as exc_info:
            case_service.review_case(db, case, admin, "approve")

        assert exc_info.value.code == "ALREADY_REVIEWED"

    def test_unknown_decision(self, db, factory) -> None:
        case = factory.case(factory.attorney())

        with pytest.raises(ValidationError) as exc_info:
            case_service.review_case(db, case, factory.admin(), "maybe")

        assert exc_info.value.code == "INVALID_CHOICE"


class TestCheckSlot:

    def test_reports_conflicting_case(self, db, factory) -> None:
        holder = factory.war_room_case(factory.attorney())
        case = factory.case(factory.attorney())

        availability = case_service.check_slot(db, case)

        assert availability.available is False
        assert availability.conflicting_case_id == holder.id

    def test_other_slot_is_free(self, db, factory) -> None:
        factory.war_room_case(factory.attorney())
        case = factory.case(factory.attorney())

        availability = case_service.check_slot(db, case, date(2030, 6, 10), time(11, 0))

        assert availability.available is True


class TestCancel:

    def test_owner_cancels_war_room_case(self, db, factory) -> None:
        attorney = factory.attorney()
        case = factory.war_room_case(attorney)

        case_service.cancel_case(db, case, attorney)

        assert case.attorney_status == AttorneyStatus.cancelled
        assert case.is_deleted is True
        assert case.deleted_at is not None

    def test_cancelled_slot_is_released(self, db, factory) -> None:
        attorney = factory.attorney()
        case = factory.war_room_case(attorney)
        case_service.cancel_case(db, case, attorney)
        newcomer = factory.case(factory.attorney())

        assert case_service.check_slot(db, newcomer).available is True

    def test_cannot_cancel_in_trial(self, db, factory) -> None:
        attorney = factory.attorney()
        case = factory.case(attorney, status=AttorneyStatus.in_trial, admin_status=AdminApprovalStatus.approved)

        with pytest.raises(PolicyViolation) as exc_info:
            case_service.cancel_case(db, case, attorney)

        assert exc_info.value.code == "CASE_UNDELETABLE"

    def test_stranger_cannot_cancel(self, db, factory) -> None:
        case = factory.war_room_case(factory.attorney())

        with pytest.raises(UnauthorizedError):
            case_service.cancel_case(db, case, factory.attorney())
