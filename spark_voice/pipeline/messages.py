"""Inbound client message models."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class FileAttachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    data_url: str = Field(alias="dataUrl")


class TranscriptMessage(BaseModel):
    type: Literal["transcript"]
    text: str
    mode: Literal["voice", "chat", "notes"] = "chat"
    image: Optional[str] = None  # data URL
    file: Optional[FileAttachment] = None


class VoiceNoteMessage(BaseModel):
    type: Literal["voice_note"]
    audio: str  # base64
    duration: float = 0.0


class PingMessage(BaseModel):
    type: Literal["ping"]


class PongMessage(BaseModel):
    type: Literal["pong"]


ClientMessage = Annotated[
    Union[TranscriptMessage, VoiceNoteMessage, PingMessage, PongMessage],
    Field(discriminator="type"),
]

_client_message = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse one WebSocket frame.

    Raises ``pydantic.ValidationError`` (a ``ValueError``) for malformed JSON,
    unknown message types or missing fields.
    """
    return _client_message.validate_json(raw)
