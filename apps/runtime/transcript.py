"""Transcript turn types returned by the agent runtime."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Union

TOOL_BLOCK_TYPES = frozenset({"toolCall", "toolResult", "thinking"})
CONVERSATION_ROLES = frozenset({"user", "assistant"})

# Audio sent by the agent, or a placeholder for media received from the contact.
MEDIA_LINE = re.compile(r"^MEDIA:.+\.(?:mp3|ogg|wav|opus|m4a|aac)$", re.MULTILINE)
MEDIA_PLACEHOLDER = re.compile(r"<media:(?:image|video|audio|document|sticker)>", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class PlainText:
    """Turn content sent as a single string."""

    text: str


@dataclass(frozen=True, slots=True)
class ContentBlock:
    type: str
    text: str | None = None


@dataclass(frozen=True, slots=True)
class BlockList:
    """Turn content sent as an ordered list of typed blocks."""

    blocks: tuple[ContentBlock, ...] = ()

    @property
    def tool_only(self) -> bool:
        return bool(self.blocks) and all(block.type in TOOL_BLOCK_TYPES for block in self.blocks)


MessageContent = Union[PlainText, BlockList]


@dataclass(frozen=True, slots=True)
class TranscriptTurn:
    role: str
    content: MessageContent
    id: str | None = None
    timestamp: str | None = None

    @property
    def text(self) -> str:
        return flatten_content(self.content)


def parse_content(raw: Any) -> MessageContent:
    """Build the content variant from the runtime's raw JSON value."""
    if isinstance(raw, str):
        return PlainText(raw)
    if isinstance(raw, list):
        blocks = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            text = item.get("text")
            blocks.append(
                ContentBlock(
                    type=str(item.get("type", "")),
                    text=text if isinstance(text, str) else None,
                )
            )
        return BlockList(tuple(blocks))
    return PlainText("")


def flatten_content(content: MessageContent) -> str:
    """Plain text as-is; block lists keep only non-empty ``text`` blocks, newline-joined."""
    if isinstance(content, PlainText):
        return content.text
    return "\n".join(
        block.text for block in content.blocks if block.type == "text" and block.text
    )


def turn(role: str, content: Any) -> TranscriptTurn:
    """Shorthand used by callers that build turns from raw dictionaries."""
    return TranscriptTurn(role=role, content=parse_content(content))


def build_turns(raw_turns: Iterable[dict]) -> list[TranscriptTurn]:
    return [turn(item.get("role", ""), item.get("content")) for item in raw_turns]


def has_media(text: str) -> bool:
    return bool(MEDIA_LINE.search(text) or MEDIA_PLACEHOLDER.search(text))
