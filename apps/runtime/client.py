"""Read-only HTTP client for the conversational agent runtime."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List
from urllib.parse import quote

import requests
from django.conf import settings

from apps.common.utils import from_epoch_ms
from apps.runtime.transcript import (
    CONVERSATION_ROLES,
    BlockList,
    TranscriptTurn,
    flatten_content,
    has_media,
    parse_content,
)

logger = logging.getLogger(__name__)

CHANNEL_KEY_PREFIX = re.compile(r"^[a-z]+:")
# Copies of outbound deliveries written back into the transcript by the gateway.
DELIVERY_MIRROR_MODEL = "delivery-mirror"


class AgentRuntimeError(RuntimeError):
    """Raised when the agent runtime cannot be reached or answers garbage."""


@dataclass(frozen=True, slots=True)
class SessionOrigin:
    from_id: str | None = None
    label: str | None = None


@dataclass(frozen=True, slots=True)
class RuntimeSession:
    """One entry of the runtime's session index."""

    key: str
    session_id: str
    updated_at: datetime | None
    last_channel: str | None = None
    origin: SessionOrigin | None = None

    @property
    def contact_id(self) -> str:
        if self.origin and self.origin.from_id:
            return self.origin.from_id
        return CHANNEL_KEY_PREFIX.sub("", self.key) or self.key

    @property
    def contact_name(self) -> str | None:
        return self.origin.label if self.origin and self.origin.label else None


class AgentRuntimeClient:
    """Lists sessions and fetches transcripts from a runtime gateway.

    Every request carries a bounded timeout so a hung container never stalls
    the caller for longer than ``AGENT_RUNTIME_TIMEOUT_SECONDS``.
    """

    def __init__(
        self,
        *,
        url_template: str | None = None,
        timeout: float | None = None,
        token: str | None = None,
        transcript_tail: int | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self.url_template = url_template or settings.AGENT_RUNTIME_URL_TEMPLATE
        self.timeout = timeout if timeout is not None else getattr(settings, "AGENT_RUNTIME_TIMEOUT_SECONDS", 10)
        self.token = token if token is not None else getattr(settings, "AGENT_RUNTIME_TOKEN", "")
        self.transcript_tail = transcript_tail or getattr(settings, "AGENT_RUNTIME_TRANSCRIPT_TAIL", 200)
        self.http = http or requests.Session()

    def list_sessions(self, host: str, container: str) -> List[RuntimeSession]:
        response = self._get(host, container, "/sessions")
        try:
            index = response.json()
        except ValueError as exc:
            raise AgentRuntimeError(f"invalid session index from {container}@{host}") from exc
        if not isinstance(index, dict):
            raise AgentRuntimeError(f"unexpected session index shape from {container}@{host}")

        sessions: List[RuntimeSession] = []
        for key, entry in index.items():
            session = self._parse_session(key, entry)
            if session is not None:
                sessions.append(session)
        sessions.sort(
            key=lambda item: item.updated_at.timestamp() if item.updated_at else 0,
            reverse=True,
        )
        return sessions

    def get_session_messages(self, host: str, container: str, session_id: str) -> List[TranscriptTurn]:
        response = self._get(
            host,
            container,
            f"/sessions/{quote(session_id, safe='')}/messages",
            params={"tail": self.transcript_tail},
        )
        return self._parse_transcript(response.text)

    # ------------------------------------------------------------------ helpers
    def _get(self, host: str, container: str, path: str, params: Dict[str, Any] | None = None) -> requests.Response:
        url = self.url_template.format(host=host, container=container).rstrip("/") + path
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.http.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise AgentRuntimeError(f"runtime_timeout {url}") from exc
        except requests.RequestException as exc:
            raise AgentRuntimeError(f"runtime_unreachable {url}: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "agent_runtime.http_error",
                extra={"url": url, "status_code": response.status_code},
            )
            raise AgentRuntimeError(f"runtime_http_{response.status_code} {url}")
        return response

    def _parse_session(self, key: str, entry: Any) -> RuntimeSession | None:
        if not isinstance(entry, dict) or not entry.get("sessionId"):
            return None
        delivery = entry.get("deliveryContext") or {}
        origin_raw = entry.get("origin")
        origin = None
        if isinstance(origin_raw, dict):
            origin = SessionOrigin(from_id=origin_raw.get("from"), label=origin_raw.get("label"))
        return RuntimeSession(
            key=key,
            session_id=str(entry["sessionId"]),
            updated_at=from_epoch_ms(entry.get("updatedAt")),
            last_channel=entry.get("lastChannel") or delivery.get("channel") or None,
            origin=origin,
        )

    def _parse_transcript(self, payload: str) -> List[TranscriptTurn]:
        turns: List[TranscriptTurn] = []
        for line in payload.splitlines():
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(record, dict) or record.get("type") != "message":
                continue
            message = record.get("message")
            if not isinstance(message, dict):
                continue
            role = message.get("role")
            if role not in CONVERSATION_ROLES:
                continue
            content = parse_content(message.get("content"))
            if isinstance(content, BlockList) and content.tool_only:
                continue
            if message.get("model") == DELIVERY_MIRROR_MODEL and not has_media(flatten_content(content)):
                continue
            timestamp = record.get("timestamp")
            turns.append(
                TranscriptTurn(
                    role=role,
                    content=content,
                    id=record.get("id"),
                    timestamp=timestamp if isinstance(timestamp, str) else None,
                )
            )
        return turns
