"""Payloads for the streaming engine and the Event Bus. All are Pydantic models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ChunkMode(str, Enum):
    """How long text is cut when it does not fit into one message."""

    LENGTH = "length"
    NEWLINE = "newline"  # prefer paragraph breaks


class RenderMode(str, Enum):
    AUTO = "auto"
    RAW = "raw"
    RICH = "rich"


class StreamTarget(BaseModel):
    """Where a streamed reply goes."""

    chat_id: str = Field(description="Chat/conversation id")
    reply_to_message_id: Optional[str] = Field(
        default=None, description="Original message id for threading"
    )


class StreamOptions(BaseModel):
    text_chunk_limit: int = Field(default=4000, description="0 or negative disables splitting")
    chunk_mode: ChunkMode = ChunkMode.LENGTH
    update_interval_ms: int = Field(default=400, ge=0)


class DeliveryResult(BaseModel):
    """Outcome of one create/update call against the chat surface."""

    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, message_id: Optional[str] = None) -> "DeliveryResult":
        return cls(ok=True, message_id=message_id)

    @classmethod
    def failure(cls, error: str) -> "DeliveryResult":
        return cls(ok=False, error=error)


class StreamToken(BaseModel):
    """Single token for a streaming reply."""

    task_id: str
    chat_id: str
    message_id: str = Field(default="", description="Optional; for threading")
    token: str = ""
    done: bool = False


class OutgoingReply(BaseModel):
    """Complete reply for a task. Finalizes the stream if one is open."""

    task_id: str
    chat_id: str
    message_id: str = Field(default="", description="Original message id for threading")
    text: str = ""
    done: bool = Field(default=True, description="True when reply is complete (streaming)")
