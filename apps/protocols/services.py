"""Protocol lifecycle: numbering, transitions, audit trail and surveys.

Every transition mutates the protocol and appends its audit record inside one
transaction. Storage errors propagate to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.instances.models import Instance
from apps.protocols.learning import capture_learning_packet
from apps.protocols.models import (
    AttendanceMode,
    Protocol,
    ProtocolAudit,
    ProtocolAuditAction,
    ProtocolMessage,
    ProtocolMessageType,
    ProtocolSequence,
    ProtocolStatus,
    SatisfactionSurvey,
)
from apps.runtime.client import AgentRuntimeClient

logger = logging.getLogger(__name__)

PROTOCOL_NUMBER_PREFIX = getattr(settings, "PROTOCOL_NUMBER_PREFIX", "CPR")
MIN_SURVEY_RATING = 1
MAX_SURVEY_RATING = 5

SURVEY_MESSAGE = (
    "Your support request {number} has been closed.\n\n"
    "How would you rate our service from 1 to 5?\n"
    "1 Very poor\n"
    "2 Poor\n"
    "3 Fair\n"
    "4 Good\n"
    "5 Excellent"
)

MODE_AUDIT_ACTIONS = {
    AttendanceMode.MODE_B: ProtocolAuditAction.TAKEOVER,
    AttendanceMode.AI_ONLY: ProtocolAuditAction.RETURNED_TO_AI,
}


class ProtocolError(RuntimeError):
    """Base error for protocol lifecycle operations."""


class ProtocolNotFound(ProtocolError):
    """Raised when the protocol id does not exist."""


class ProtocolStateError(ProtocolError):
    """Raised when a transition is not allowed from the current state."""


# ------------------------------------------------------------------ numbering
def format_protocol_number(year: int, sequence: int) -> str:
    return f"{PROTOCOL_NUMBER_PREFIX}-{year}-{sequence:06d}"


def generate_protocol_number(now: datetime | None = None) -> str:
    """Issue the next ``PREFIX-YYYY-NNNNNN`` number; the counter restarts each year."""
    current_year = (now or timezone.now()).year
    ProtocolSequence.objects.get_or_create(
        pk=ProtocolSequence.SINGLETON_ID,
        defaults={"year": current_year, "last_number": 0},
    )
    with transaction.atomic():
        sequence = ProtocolSequence.objects.select_for_update().get(
            pk=ProtocolSequence.SINGLETON_ID
        )
        if sequence.year != current_year:
            sequence.year = current_year
            sequence.last_number = 1
            sequence.save(update_fields=["year", "last_number"])
        else:
            ProtocolSequence.objects.filter(pk=sequence.pk).update(
                last_number=F("last_number") + 1
            )
            sequence.refresh_from_db(fields=["last_number"])
    return format_protocol_number(current_year, sequence.last_number)


# ------------------------------------------------------------------ helpers
def audit_protocol(
    protocol_id: int,
    user_id: Optional[int],
    action: str,
    details: dict[str, Any] | None = None,
) -> ProtocolAudit:
    return ProtocolAudit.objects.create(
        protocol_id=protocol_id,
        actor_user_id=user_id,
        action=action,
        details=details or {},
    )


def _lock_protocol(protocol_id: int) -> Protocol:
    try:
        return Protocol.objects.select_for_update().get(pk=protocol_id)
    except Protocol.DoesNotExist as exc:
        raise ProtocolNotFound(f"protocol {protocol_id} not found") from exc


def _ensure_open(protocol: Protocol, action: str) -> None:
    if protocol.is_closed:
        raise ProtocolStateError(f"cannot {action} closed protocol {protocol.number}")


def _open_protocol_for_session(instance_id: int, session_id: str) -> Protocol | None:
    return (
        Protocol.objects.filter(instance_id=instance_id, session_id=session_id)
        .exclude(status=ProtocolStatus.CLOSED)
        .order_by("-created_at")
        .first()
    )


def get_protocol(protocol_id: int) -> Protocol:
    try:
        return Protocol.objects.select_related(
            "instance", "assigned_to", "closed_by", "survey"
        ).get(pk=protocol_id)
    except Protocol.DoesNotExist as exc:
        raise ProtocolNotFound(f"protocol {protocol_id} not found") from exc


# ------------------------------------------------------------------ transitions
def find_or_create_for_session(
    *,
    instance_id: int,
    session_id: str,
    contact_id: str,
    channel: str,
    contact_name: Optional[str] = None,
) -> tuple[Protocol, bool]:
    """Return the open protocol for the session, creating it when missing.

    Creation is serialized per instance by locking the instance row, so
    repeated or overlapping calls for one session yield a single protocol.
    """
    existing = _open_protocol_for_session(instance_id, session_id)
    if existing:
        return existing, False

    with transaction.atomic():
        list(Instance.objects.select_for_update().filter(pk=instance_id))
        existing = _open_protocol_for_session(instance_id, session_id)
        if existing:
            return existing, False

        number = generate_protocol_number()
        protocol = Protocol.objects.create(
            number=number,
            instance_id=instance_id,
            session_id=session_id,
            contact_id=contact_id,
            contact_name=contact_name or None,
            channel=channel,
            status=ProtocolStatus.ACTIVE,
            mode=AttendanceMode.AI_ONLY,
        )
        audit_protocol(
            protocol.id,
            None,
            ProtocolAuditAction.CREATED,
            {
                "number": number,
                "session_id": session_id,
                "contact_id": contact_id,
                "channel": channel,
            },
        )

    logger.info(
        "protocol.created",
        extra={"protocol_id": protocol.id, "protocol_number": number, "instance_id": instance_id},
    )
    return protocol, True


def escalate_protocol(protocol_id: int, reason: str) -> Protocol:
    """Hand the protocol to the human queue.

    The status check and the write are a single conditional update, so two
    overlapping callers cannot both escalate (and audit) the same protocol.
    """
    now = timezone.now()
    with transaction.atomic():
        updated = (
            Protocol.objects.filter(pk=protocol_id)
            .exclude(status__in=[ProtocolStatus.CLOSED, ProtocolStatus.ESCALATED])
            .update(
                status=ProtocolStatus.ESCALATED,
                escalation_reason=reason,
                escalated_at=now,
                updated_at=now,
            )
        )
        if not updated:
            current = Protocol.objects.filter(pk=protocol_id).values_list("status", flat=True).first()
            if current is None:
                raise ProtocolNotFound(f"protocol {protocol_id} not found")
            raise ProtocolStateError(f"cannot escalate protocol {protocol_id} in status {current}")
        audit_protocol(protocol_id, None, ProtocolAuditAction.ESCALATED, {"reason": reason})

    logger.info("protocol.escalated", extra={"protocol_id": protocol_id, "reason": reason})
    return Protocol.objects.get(pk=protocol_id)


def assign_protocol(
    protocol_id: int,
    user_id: int,
    mode: str = AttendanceMode.MODE_A,
) -> Protocol:
    if mode not in {AttendanceMode.MODE_A, AttendanceMode.MODE_B}:
        raise ValueError("Assignment requires a human attendance mode.")

    with transaction.atomic():
        protocol = _lock_protocol(protocol_id)
        _ensure_open(protocol, "assign")
        protocol.status = ProtocolStatus.IN_PROGRESS
        protocol.assigned_to_id = user_id
        protocol.assigned_at = timezone.now()
        protocol.mode = mode
        protocol.save(update_fields=["status", "assigned_to", "assigned_at", "mode", "updated_at"])
        audit_protocol(protocol.id, user_id, ProtocolAuditAction.ASSIGNED, {"mode": mode})

    logger.info(
        "protocol.assigned",
        extra={"protocol_id": protocol.id, "user_id": user_id, "mode": mode},
    )
    return protocol


def change_mode(protocol_id: int, mode: str, user_id: int) -> Protocol:
    """Switch attendance mode.

    Returning to ``AI_ONLY`` is a combined transition: the assignment is
    cleared and the status goes back to ACTIVE in the same write.
    """
    if mode not in AttendanceMode.values:
        raise ValueError(f"Unknown attendance mode: {mode}")

    action = MODE_AUDIT_ACTIONS.get(mode, ProtocolAuditAction.MODE_CHANGED)
    with transaction.atomic():
        protocol = _lock_protocol(protocol_id)
        _ensure_open(protocol, "change mode of")
        previous_mode = protocol.mode
        protocol.mode = mode
        update_fields = ["mode", "updated_at"]
        if mode == AttendanceMode.AI_ONLY:
            protocol.status = ProtocolStatus.ACTIVE
            protocol.assigned_to_id = None
            protocol.assigned_at = None
            update_fields += ["status", "assigned_to", "assigned_at"]
        protocol.save(update_fields=update_fields)
        audit_protocol(
            protocol.id,
            user_id,
            action,
            {"mode": mode, "previous_mode": previous_mode},
        )

    logger.info(
        "protocol.mode_changed",
        extra={"protocol_id": protocol.id, "mode": mode, "action": action},
    )
    return protocol


def close_protocol(
    protocol_id: int,
    user_id: int,
    reason: str,
    result: str,
    *,
    runtime_client: AgentRuntimeClient | None = None,
) -> Protocol:
    """Close the protocol; escalated protocols also yield a learning packet.

    The packet is captured after the close has committed and its failure is
    only logged.
    """
    with transaction.atomic():
        protocol = _lock_protocol(protocol_id)
        _ensure_open(protocol, "close")
        messages = list(protocol.messages.order_by("created_at", "id"))
        protocol.status = ProtocolStatus.CLOSED
        protocol.closed_at = timezone.now()
        protocol.closed_by_id = user_id
        protocol.closure_reason = reason
        protocol.closure_result = result
        protocol.mode = AttendanceMode.AI_ONLY
        protocol.save(
            update_fields=[
                "status",
                "closed_at",
                "closed_by",
                "closure_reason",
                "closure_result",
                "mode",
                "updated_at",
            ]
        )
        audit_protocol(
            protocol.id, user_id, ProtocolAuditAction.CLOSED, {"reason": reason, "result": result}
        )

    logger.info(
        "protocol.closed",
        extra={"protocol_id": protocol.id, "user_id": user_id, "reason": reason},
    )

    if protocol.escalation_reason:
        capture_learning_packet(
            protocol, messages, result=result, runtime_client=runtime_client
        )
    return protocol


def add_message(
    protocol_id: int,
    user_id: Optional[int],
    message_type: str,
    content: str,
    metadata: dict[str, Any] | None = None,
) -> ProtocolMessage:
    if message_type not in ProtocolMessageType.values:
        raise ValueError(f"Unknown message type: {message_type}")
    content = (content or "").strip()
    if not content:
        raise ValueError("Message content is required.")

    with transaction.atomic():
        protocol = _lock_protocol(protocol_id)
        if message_type != ProtocolMessageType.NOTE:
            _ensure_open(protocol, "message")
        message = ProtocolMessage.objects.create(
            protocol=protocol,
            user_id=user_id,
            type=message_type,
            content=content,
            metadata=metadata or {},
        )
        action = (
            ProtocolAuditAction.NOTE_ADDED
            if message_type == ProtocolMessageType.NOTE
            else ProtocolAuditAction.MESSAGE_SENT
        )
        audit_protocol(
            protocol.id,
            user_id,
            action,
            {"message_type": message_type, "message_id": message.id},
        )
        # Touch the protocol so it surfaces as recently updated.
        protocol.save(update_fields=["updated_at"])
    return message


def send_survey(protocol_id: int, user_id: Optional[int]) -> SatisfactionSurvey:
    """Record that a satisfaction survey went out. The protocol status is untouched."""
    with transaction.atomic():
        protocol = _lock_protocol(protocol_id)
        survey, created = SatisfactionSurvey.objects.get_or_create(protocol=protocol)
        if not created:
            raise ProtocolStateError(f"survey already sent for protocol {protocol.number}")
        audit_protocol(protocol.id, user_id, ProtocolAuditAction.SURVEY_SENT, {"survey_id": survey.id})

    logger.info("protocol.survey_sent", extra={"protocol_id": protocol.id, "survey_id": survey.id})
    return survey


def answer_survey(protocol_id: int, rating: int, comment: Optional[str] = None) -> SatisfactionSurvey:
    if not MIN_SURVEY_RATING <= int(rating) <= MAX_SURVEY_RATING:
        raise ValueError(f"Rating must be between {MIN_SURVEY_RATING} and {MAX_SURVEY_RATING}.")

    with transaction.atomic():
        survey = (
            SatisfactionSurvey.objects.select_for_update()
            .filter(protocol_id=protocol_id)
            .first()
        )
        if survey is None:
            raise ProtocolStateError(f"no survey sent for protocol {protocol_id}")
        survey.rating = int(rating)
        survey.comment = comment or ""
        survey.answered_at = timezone.now()
        survey.save(update_fields=["rating", "comment", "answered_at", "updated_at"])
        audit_protocol(
            protocol_id,
            None,
            ProtocolAuditAction.SURVEY_ANSWERED,
            {"rating": survey.rating, "comment": comment},
        )

    logger.info("protocol.survey_answered", extra={"protocol_id": protocol_id, "rating": survey.rating})
    return survey


def build_survey_message(protocol: Protocol) -> str:
    return SURVEY_MESSAGE.format(number=protocol.number)


def suggest_attendant(instance_id: int, contact_id: str) -> Optional[int]:
    """Attendant of the contact's most recently closed, assigned protocol."""
    return (
        Protocol.objects.filter(
            instance_id=instance_id,
            contact_id=contact_id,
            status=ProtocolStatus.CLOSED,
            assigned_to__isnull=False,
        )
        .order_by("-closed_at")
        .values_list("assigned_to_id", flat=True)
        .first()
    )
