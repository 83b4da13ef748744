"""Learning packets captured when an escalated protocol is closed."""

from __future__ import annotations

import logging
from typing import Iterable, List

from django.conf import settings
from django.db import transaction

from apps.protocols.models import LearningPacket, Protocol, ProtocolMessage, ProtocolMessageType
from apps.runtime.client import AgentRuntimeClient

logger = logging.getLogger(__name__)

LEARNING_CONTEXT_TURNS = int(getattr(settings, "LEARNING_CONTEXT_TURNS", 5))
AI_CONTEXT_SEPARATOR = "\n---\n"
HUMAN_RESPONSE_FALLBACK = "No attendant messages recorded"
HUMAN_MESSAGE_TYPES = {ProtocolMessageType.INTERNAL, ProtocolMessageType.DIRECT}


def create_learning_packet(
    *,
    protocol: Protocol,
    escalation_reason: str,
    ai_context: str,
    human_response: str,
    resolution: str = "",
    tags: List[str] | None = None,
) -> LearningPacket:
    return LearningPacket.objects.create(
        protocol=protocol,
        instance_id=protocol.instance_id,
        escalation_reason=escalation_reason,
        ai_context=ai_context,
        human_response=human_response,
        resolution=resolution or "",
        tags=list(tags or []),
    )


def collect_human_response(messages: Iterable[ProtocolMessage]) -> str:
    """Attendant-authored messages in chronological order. Notes are excluded."""
    return "\n".join(
        message.content for message in messages if message.type in HUMAN_MESSAGE_TYPES
    )


def collect_ai_context(protocol: Protocol, runtime_client: AgentRuntimeClient) -> str:
    instance = protocol.instance
    if not instance.has_container:
        return ""
    turns = runtime_client.get_session_messages(
        instance.container_host, instance.container_name, protocol.session_id
    )
    assistant_turns = [item for item in turns if item.role == "assistant"][-LEARNING_CONTEXT_TURNS:]
    return AI_CONTEXT_SEPARATOR.join(item.text for item in assistant_turns)


def capture_learning_packet(
    protocol: Protocol,
    messages: Iterable[ProtocolMessage],
    *,
    result: str,
    runtime_client: AgentRuntimeClient | None = None,
) -> LearningPacket | None:
    """Best-effort capture; never raises."""
    try:
        human_response = collect_human_response(messages) or HUMAN_RESPONSE_FALLBACK
        try:
            ai_context = collect_ai_context(protocol, runtime_client or AgentRuntimeClient())
        except Exception as exc:
            logger.warning(
                "learning.ai_context_unavailable",
                extra={
                    "protocol_id": protocol.id,
                    "session_id": protocol.session_id,
                    "error": str(exc),
                },
            )
            ai_context = f"Session: {protocol.session_id}, Contact: {protocol.contact_id}"

        with transaction.atomic():
            packet = create_learning_packet(
                protocol=protocol,
                escalation_reason=protocol.escalation_reason,
                ai_context=ai_context or f"Session: {protocol.session_id}",
                human_response=human_response,
                resolution=result,
                tags=[protocol.escalation_reason],
            )
    except Exception as exc:
        logger.error(
            "learning.capture_failed",
            extra={"protocol_id": protocol.id, "error": str(exc)},
        )
        return None

    logger.info(
        "learning.packet_created",
        extra={"protocol_id": protocol.id, "packet_id": packet.id},
    )
    return packet
