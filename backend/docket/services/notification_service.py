"""
services/notification_service.py

In-app notification sink.

Notifications are added to the caller's session and committed with the
operation that produced them. Building a notification never fails the
request: errors are logged as non-blocking.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from docket.db.models import Notification, User, UserRole

logger = logging.getLogger(__name__)

# Notification types
CASE_APPROVED = "case_approved"
CASE_REJECTED = "case_rejected"
CASE_RESCHEDULE_NEEDED = "case_reschedule_needed"
RESCHEDULE_CONFIRMED = "reschedule_confirmed"
RESCHEDULE_FEEDBACK = "reschedule_feedback"
ATTORNEY_RESCHEDULE_REQUEST = "attorney_reschedule_request"
RESCHEDULE_APPROVED = "reschedule_approved"
RESCHEDULE_REJECTED = "reschedule_rejected"
CASE_RESCHEDULED = "case_rescheduled"
ADMIN_CASE_RESCHEDULED = "admin_case_rescheduled"
APPLICATION_APPROVED = "application_approved"
APPLICATION_REJECTED = "application_rejected"
TRIAL_SCHEDULED = "trial_scheduled"
TRIAL_ENDED = "trial_ended"
SLOT_BLOCKED = "slot_blocked"
SLOT_UNBLOCKED = "slot_unblocked"


class NotificationService:

    def send(
        self,
        db:        Session,
        user_id:   int,
        user_type: str,
        case_id:   Optional[int],
        type:      str,
        title:     str,
        message:   str,
    ) -> Optional[Notification]:
        try:
            row = Notification(
                user_id=user_id,
                user_type=getattr(user_type, "value", user_type),
                case_id=case_id,
                type=type,
                title=title,
                message=message,
            )
            db.add(row)
            logger.info("notification queued type=%s user=%s case=%s", type, user_id, case_id)
            return row
        except Exception as e:
            logger.warning("Notification %s for user %s failed (non-blocking): %s", type, user_id, e)
            return None

    def send_to_user(
        self,
        db:      Session,
        user:    Optional[User],
        case_id: Optional[int],
        type:    str,
        title:   str,
        message: str,
    ) -> Optional[Notification]:
        if user is None:
            logger.warning("Notification %s for case %s has no recipient (non-blocking)", type, case_id)
            return None
        return self.send(db, user.id, user.role, case_id, type, title, message)

    def send_to_users(
        self,
        db:      Session,
        users:   Iterable[User],
        case_id: Optional[int],
        type:    str,
        title:   str,
        message: str,
    ) -> int:
        sent = 0
        for user in users:
            if self.send_to_user(db, user, case_id, type, title, message) is not None:
                sent += 1
        return sent

    def broadcast(
        self,
        db:      Session,
        roles:   Iterable[UserRole],
        type:    str,
        title:   str,
        message: str,
    ) -> int:
        """Fan-out to every active user holding one of ``roles``."""
        from docket.services.user_directory import user_directory

        try:
            recipients = user_directory.active_users(db, roles)
        except Exception as e:
            logger.warning("Broadcast %s recipient lookup failed (non-blocking): %s", type, e)
            return 0
        sent = self.send_to_users(db, recipients, None, type, title, message)
        logger.info("broadcast type=%s recipients=%s", type, sent)
        return sent


notification_service = NotificationService()
