from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    CHAT = "chat"
    SYSTEM = "system"
    INFO = "info"
    ERROR = "error"


class ChatEvent(BaseModel):
    """Unit exchanged between gateways through the broker."""

    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1)
    type: EventType
    sender: str
    text: str = Field(min_length=1)
    timestamp: int

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)

    def to_client_frame(self) -> dict:
        """The frame pushed to sockets; the room id is implied by the connection."""
        return {
            "type": self.type.value,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp,
        }


class ClientFrame(BaseModel):
    """Inbound chat frame, {"text": ...}.

    Scalar text is stringified the way JSON renders it, so 42 becomes "42"
    and true becomes "true". Falsy values (0, false, "", null) count as no
    text. Non-empty objects and arrays are not text and fail validation.
    """

    text: Optional[str] = None

    @field_validator("text", mode="before")
    @classmethod
    def stringify_scalar(cls, value):
        if not value:
            return None
        if isinstance(value, bool):
            return "true"
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        if isinstance(value, (int, float)):
            return str(value)
        return value
