"""Domain models for support protocols (conversation tickets)."""

from django.contrib.auth.models import User
from django.db import models
from django.utils import timezone

from apps.common.models import TimeStampedModel
from apps.instances.models import Instance


class ProtocolStatus(models.TextChoices):
    """Lifecycle status of a protocol."""

    ACTIVE = "ACTIVE", "Active"
    ESCALATED = "ESCALATED", "Escalated"
    IN_PROGRESS = "IN_PROGRESS", "In progress"
    CLOSED = "CLOSED", "Closed"


class AttendanceMode(models.TextChoices):
    """Who answers the contact. Orthogonal to the lifecycle status."""

    AI_ONLY = "AI_ONLY", "AI only"
    MODE_A = "MODE_A", "Human assisted"
    MODE_B = "MODE_B", "Human takeover"


class ProtocolMessageType(models.TextChoices):
    NOTE = "NOTE", "Note"
    INTERNAL = "INTERNAL", "Internal"
    DIRECT = "DIRECT", "Direct"


class ProtocolAuditAction(models.TextChoices):
    CREATED = "CREATED", "Created"
    ESCALATED = "ESCALATED", "Escalated"
    ASSIGNED = "ASSIGNED", "Assigned"
    MODE_CHANGED = "MODE_CHANGED", "Mode changed"
    TAKEOVER = "TAKEOVER", "Takeover"
    RETURNED_TO_AI = "RETURNED_TO_AI", "Returned to AI"
    NOTE_ADDED = "NOTE_ADDED", "Note added"
    MESSAGE_SENT = "MESSAGE_SENT", "Message sent"
    SURVEY_SENT = "SURVEY_SENT", "Survey sent"
    SURVEY_ANSWERED = "SURVEY_ANSWERED", "Survey answered"
    CLOSED = "CLOSED", "Closed"


class Protocol(TimeStampedModel):
    """One support ticket spanning a single runtime conversation session.

    Never inserted directly: go through
    ``apps.protocols.services.find_or_create_for_session`` so that a session
    has at most one open protocol.
    """

    number = models.CharField(max_length=32, unique=True)
    instance = models.ForeignKey(
        Instance, on_delete=models.CASCADE, related_name="protocols"
    )
    session_id = models.CharField(max_length=255, db_index=True)
    contact_id = models.CharField(max_length=255)
    contact_name = models.CharField(max_length=255, null=True, blank=True)
    channel = models.CharField(max_length=50)
    status = models.CharField(
        max_length=20, choices=ProtocolStatus.choices, default=ProtocolStatus.ACTIVE
    )
    mode = models.CharField(
        max_length=20, choices=AttendanceMode.choices, default=AttendanceMode.AI_ONLY
    )
    escalation_reason = models.TextField(null=True, blank=True)
    escalated_at = models.DateTimeField(null=True, blank=True)
    assigned_to = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="assigned_protocols",
    )
    assigned_at = models.DateTimeField(null=True, blank=True)
    closed_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="closed_protocols",
    )
    closed_at = models.DateTimeField(null=True, blank=True)
    closure_reason = models.CharField(max_length=500, blank=True)
    closure_result = models.TextField(blank=True)

    class Meta:
        ordering = ["-updated_at"]
        indexes = [
            models.Index(fields=["instance", "session_id", "status"], name="protocol_instance_session_idx"),
            models.Index(fields=["instance", "contact_id"], name="protocol_instance_contact_idx"),
        ]

    def __str__(self) -> str:
        return f"Protocol<{self.number}> {self.status}"

    @property
    def is_closed(self) -> bool:
        return self.status == ProtocolStatus.CLOSED

    @property
    def human_engaged(self) -> bool:
        """True once an attendant owns the protocol (or it is over)."""
        return (
            self.status in {ProtocolStatus.CLOSED, ProtocolStatus.IN_PROGRESS}
            or self.assigned_to_id is not None
        )


class ProtocolMessage(TimeStampedModel):
    """Note or attendant message logged against a protocol. Append-only."""

    protocol = models.ForeignKey(
        Protocol, on_delete=models.CASCADE, related_name="messages"
    )
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    type = models.CharField(max_length=20, choices=ProtocolMessageType.choices)
    content = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at", "id"]


class ProtocolAudit(TimeStampedModel):
    """Append-only audit record; one per state transition."""

    protocol = models.ForeignKey(
        Protocol, on_delete=models.CASCADE, related_name="audit_entries"
    )
    actor_user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=30, choices=ProtocolAuditAction.choices)
    details = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at", "id"]


class SatisfactionSurvey(TimeStampedModel):
    """CSAT survey sent after closure."""

    protocol = models.OneToOneField(
        Protocol, on_delete=models.CASCADE, related_name="survey"
    )
    sent_at = models.DateTimeField(default=timezone.now, db_index=True)
    rating = models.PositiveSmallIntegerField(null=True, blank=True)
    comment = models.TextField(blank=True)
    answered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-sent_at"]

    @property
    def is_answered(self) -> bool:
        return self.answered_at is not None


class LearningPacket(TimeStampedModel):
    """AI context paired with the human resolution of an escalated protocol."""

    protocol = models.ForeignKey(
        Protocol, on_delete=models.CASCADE, related_name="learning_packets"
    )
    instance = models.ForeignKey(
        Instance, on_delete=models.CASCADE, related_name="learning_packets"
    )
    escalation_reason = models.TextField()
    ai_context = models.TextField()
    human_response = models.TextField()
    resolution = models.TextField(blank=True)
    tags = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ["-created_at"]


class ProtocolSequence(models.Model):
    """Singleton counter behind protocol numbers."""

    SINGLETON_ID = "singleton"

    id = models.CharField(primary_key=True, max_length=32, default=SINGLETON_ID)
    year = models.PositiveIntegerField()
    last_number = models.PositiveIntegerField(default=0)

    def __str__(self) -> str:
        return f"ProtocolSequence<{self.year}:{self.last_number}>"
