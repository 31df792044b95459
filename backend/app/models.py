"""Pydantic models for the sync API.

Field names follow the wire format clients already speak (camelCase).
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from opsync.types import Operation


class WireOperation(BaseModel):
    """A sealed operation as it travels between client and server."""

    id: str = Field(min_length=1, max_length=128)
    table: str
    type: Literal["create", "update", "delete"]
    key: Any = None
    payload: Any = None
    timestamp: int = 0
    clientId: str | None = None
    keyHash: str | None = None
    serverSeq: int | None = None
    serverTimestamp: int | None = None

    def to_operation(self) -> Operation:
        return Operation.from_dict(self.model_dump())

    @classmethod
    def from_operation(cls, op: Operation) -> "WireOperation":
        return cls(**op.to_dict())


class PushRequest(BaseModel):
    ops: list[WireOperation] = Field(default_factory=list, max_length=1000)
    clientId: str | None = None


class PushResponse(BaseModel):
    success: bool = True
    cursor: int
    count: int


class PullResponse(BaseModel):
    ops: list[WireOperation]
    cursor: int


class PendingResponse(BaseModel):
    count: int
