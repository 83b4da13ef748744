"""Read-side queries over protocols for the attendant panel."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, List, Optional

from django.db.models import Avg, Count, Q, QuerySet

from apps.protocols.models import (
    LearningPacket,
    Protocol,
    ProtocolAudit,
    ProtocolStatus,
    SatisfactionSurvey,
)
from apps.runtime.client import AgentRuntimeClient

RECENT_ESCALATIONS_LIMIT = 10
MAX_PAGE_SIZE = 100


@dataclass(slots=True)
class ProtocolPage:
    protocols: List[Protocol]
    total: int
    page: int
    limit: int


def list_protocols(
    instance_id: int,
    *,
    status: Optional[str] = None,
    assigned_to: Optional[int] = None,
    session_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> ProtocolPage:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    queryset = Protocol.objects.filter(instance_id=instance_id)
    if status:
        queryset = queryset.filter(status=status)
    if assigned_to:
        queryset = queryset.filter(assigned_to_id=assigned_to)
    if session_id:
        queryset = queryset.filter(session_id=session_id)

    total = queryset.count()
    offset = (page - 1) * limit
    protocols = list(
        queryset.select_related("assigned_to")
        .annotate(message_count=Count("messages"))
        .order_by("-updated_at")[offset : offset + limit]
    )
    return ProtocolPage(protocols=protocols, total=total, page=page, limit=limit)


def protocols_for_attendant(instance_id: int, user_id: int) -> QuerySet[Protocol]:
    return (
        Protocol.objects.filter(instance_id=instance_id, assigned_to_id=user_id)
        .exclude(status=ProtocolStatus.CLOSED)
        .order_by("-updated_at")
    )


def protocol_stats(instance_id: int) -> Dict[str, Any]:
    status_counts = {
        row["status"]: row["total"]
        for row in Protocol.objects.filter(instance_id=instance_id)
        .values("status")
        .annotate(total=Count("id"))
        .order_by()
    }
    csat = SatisfactionSurvey.objects.filter(
        protocol__instance_id=instance_id, rating__isnull=False
    ).aggregate(average=Avg("rating"), count=Count("id"))
    escalated = Protocol.objects.filter(instance_id=instance_id, escalated_at__isnull=False)
    recent = list(
        escalated.order_by("-escalated_at").values(
            "escalation_reason", "escalated_at", "status"
        )[:RECENT_ESCALATIONS_LIMIT]
    )
    return {
        "status_counts": status_counts,
        "total_escalated": escalated.count(),
        "csat_avg": csat["average"],
        "csat_count": csat["count"],
        "recent_escalations": recent,
    }


def escalation_counts(instance_id: int, user_id: int) -> Dict[str, int]:
    counts = Protocol.objects.filter(instance_id=instance_id).aggregate(
        escalated=Count("id", filter=Q(status=ProtocolStatus.ESCALATED)),
        mine=Count(
            "id",
            filter=Q(assigned_to_id=user_id) & ~Q(status=ProtocolStatus.CLOSED),
        ),
    )
    return {"escalated": counts["escalated"], "mine": counts["mine"]}


def list_learning_packets(
    instance_id: int,
    *,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> QuerySet[LearningPacket]:
    queryset = LearningPacket.objects.filter(instance_id=instance_id).select_related("protocol")
    if since:
        queryset = queryset.filter(created_at__gte=since)
    if until:
        queryset = queryset.filter(created_at__lte=until)
    return queryset.order_by("-created_at")


def audit_trail(protocol_id: int) -> QuerySet[ProtocolAudit]:
    return ProtocolAudit.objects.filter(protocol_id=protocol_id).order_by("created_at", "id")


def build_timeline(protocol: Protocol, runtime_client: AgentRuntimeClient) -> List[Dict[str, Any]]:
    """Merge the runtime transcript with panel messages, oldest first.

    Runtime turns without a timestamp keep their transcript order and sort
    ahead of timestamped entries.
    """
    timeline: List[Dict[str, Any]] = []
    instance = protocol.instance
    if instance.has_container:
        for item in runtime_client.get_session_messages(
            instance.container_host, instance.container_name, protocol.session_id
        ):
            timeline.append(
                {
                    "source": "runtime",
                    "id": item.id,
                    "timestamp": item.timestamp or "",
                    "role": item.role,
                    "content": item.text,
                }
            )

    for message in protocol.messages.select_related("user").order_by("created_at", "id"):
        timeline.append(
            {
                "source": "panel",
                "id": message.id,
                "timestamp": message.created_at.isoformat(),
                "type": message.type,
                "content": message.content,
                "user_id": message.user_id,
                "user_name": message.user.get_full_name() if message.user else None,
                "metadata": message.metadata,
            }
        )

    timeline.sort(key=lambda entry: _timeline_key(entry["timestamp"]))
    return timeline


def _timeline_key(value: Any) -> float:
    if not value or not isinstance(value, str):
        return float("-inf")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed.timestamp()
