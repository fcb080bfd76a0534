"""Incremental parser for the chat stream protocol.

The backend sends ``data: {json}`` lines separated by blank lines and a
final ``data: [DONE]``. Reads may split a frame anywhere, including inside
a multi-byte character, so input is buffered until a line boundary.
"""
from __future__ import annotations

import codecs
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from services.ai.chat.chat_models import (
    DONE_SENTINEL,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    Message,
    MessageContext,
    ProfileUpdateChunk,
    ProfileUpdateIntent,
    StreamChunk,
)

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    READING_FRAME = "reading_frame"
    AWAITING_BOUNDARY = "awaiting_boundary"
    DONE = "done"
    ERROR = "error"


def _extract_content(frame: Dict[str, Any]) -> Optional[str]:
    content = frame.get("content")
    if isinstance(content, str):
        return content
    choices = frame.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            return delta["content"]
    return None


def _extract_profile_update(frame: Dict[str, Any]) -> Optional[ProfileUpdateChunk]:
    updates = frame.get("profileUpdates")
    if not isinstance(updates, dict) or not updates:
        return None
    summary = frame.get("profileSummary")
    try:
        proposal = ProfileUpdateIntent(updates=updates, summary=summary if isinstance(summary, str) else "")
    except ValidationError:
        return None
    return ProfileUpdateChunk(proposal=proposal, requires_confirmation=bool(frame.get("requiresConfirmation")))


def parse_frame(payload: str) -> List[StreamChunk]:
    """Parse one frame body. Unparsable input yields no chunks."""
    if payload == DONE_SENTINEL:
        return [DoneChunk()]
    try:
        frame = json.loads(payload)
    except ValueError:
        return []
    if not isinstance(frame, dict):
        return []

    error = frame.get("error")
    if error:
        message = error if isinstance(error, str) else json.dumps(error, ensure_ascii=False)
        code = frame.get("code")
        return [ErrorChunk(message=message, code=code if isinstance(code, str) else None)]

    chunks: List[StreamChunk] = []
    content = _extract_content(frame)
    if content:
        chunks.append(ContentChunk(text=content))
    profile = _extract_profile_update(frame)
    if profile is not None:
        chunks.append(profile)
    return chunks


class StreamConsumer:
    """Turns arbitrary byte/str chunks into ``StreamChunk`` events.

    Transport-agnostic: callers push whatever their transport hands them
    into ``feed`` and call ``finish`` when the transport closes.
    """

    def __init__(self):
        self.state = StreamState.READING_FRAME
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: List[str] = []
        self.error: Optional[ErrorChunk] = None
        self.profile_update: Optional[ProfileUpdateChunk] = None
        self.ended_without_sentinel = False
        self.skipped_lines = 0

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def done(self) -> bool:
        return self.state == StreamState.DONE

    @property
    def failed(self) -> bool:
        return self.state == StreamState.ERROR

    @property
    def finished(self) -> bool:
        return self.state in (StreamState.DONE, StreamState.ERROR)

    def feed(self, chunk: Union[str, bytes]) -> List[StreamChunk]:
        if self.finished:
            return []
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        self._buffer += text
        events: List[StreamChunk] = []
        while not self.finished:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            events.extend(self._consume_line(line))
        if not self.finished:
            self.state = StreamState.AWAITING_BOUNDARY if self._buffer else StreamState.READING_FRAME
        return events

    def finish(self) -> List[StreamChunk]:
        """Flush whatever is buffered. A stream closed without the sentinel counts as complete."""
        if self.finished:
            return []
        tail = self._decoder.decode(b"", final=True)
        self._buffer += tail
        events: List[StreamChunk] = []
        if self._buffer.strip():
            line, self._buffer = self._buffer, ""
            events.extend(self._consume_line(line))
        if not self.finished:
            self.ended_without_sentinel = True
            self.state = StreamState.DONE
            logger.warning("stream.ended_without_sentinel chars=%s", len(self.content))
            events.append(DoneChunk())
        return events

    def _consume_line(self, raw_line: str) -> List[StreamChunk]:
        line = raw_line.strip()
        if not line or line.startswith(":"):
            return []
        if line.startswith("data:"):
            payload = line[5:].strip()
        elif line.startswith(("event:", "id:", "retry:")):
            return []
        else:
            payload = line
        if not payload:
            return []

        chunks = parse_frame(payload)
        if not chunks and payload != DONE_SENTINEL:
            self.skipped_lines += 1
            logger.debug("stream.skip_line len=%s", len(payload))
        for chunk in chunks:
            if isinstance(chunk, ContentChunk):
                self._parts.append(chunk.text)
            elif isinstance(chunk, ProfileUpdateChunk):
                # a confirmable proposal is only replaced by another confirmable one
                if chunk.requires_confirmation or not (
                    self.profile_update and self.profile_update.requires_confirmation
                ):
                    self.profile_update = chunk
            elif isinstance(chunk, ErrorChunk):
                self.error = chunk
                self.state = StreamState.ERROR
                return [c for c in chunks if not isinstance(c, DoneChunk)]
            elif isinstance(chunk, DoneChunk):
                self.state = StreamState.DONE
        return chunks

    def pending_proposal(self) -> Optional[ProfileUpdateIntent]:
        if self.profile_update and self.profile_update.requires_confirmation:
            return self.profile_update.proposal
        return None

    def apply_to(self, message: Message) -> Message:
        """Copy of ``message`` carrying the accumulated content and any confirmable proposal."""
        context = message.context.model_copy() if message.context else MessageContext()
        proposal = self.pending_proposal()
        if proposal is not None:
            context.profile_updates = dict(proposal.updates)
            context.profile_summary = proposal.summary or context.profile_summary
            context.requires_confirmation = True
        return message.model_copy(update={"content": self.content, "context": context})
