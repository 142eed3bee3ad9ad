"""
Gate wire messages.

JSON rendition of the gatekeeper protobuf schema. ``Message`` mirrors the
``oneof typ`` envelope: exactly one of its fields is set. Byte fields travel as
standard base64.
"""

import base64
import re

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from gatekeeper.errors import ProtocolError

MAX_UINT64 = 2**64 - 1
MAX_CHALLENGE_BYTES = 1024
MAX_PROOF_BYTES = 262_144
MESSAGE_KINDS = ("unlock_request", "challenge_reply", "permit_reply")

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


def strict_base64_decode(value: str, field_name: str) -> bytes:
    """
    Strictly validate and decode base64 string.

    Rejects strings with invalid characters, incorrect padding, or whitespace.
    """
    if not _BASE64_RE.match(value):
        raise ValueError(f"{field_name}: Invalid base64 characters")
    if len(value) % 4 != 0:
        raise ValueError(f"{field_name}: Invalid base64 length (must be multiple of 4)")
    try:
        return base64.b64decode(value, validate=True)
    except ValueError:
        raise ValueError(f"{field_name}: Invalid base64 encoding")


def _decode_bytes_field(value, field_name: str):
    if isinstance(value, str):
        return strict_base64_decode(value, field_name)
    return value


class VDFProof(BaseModel):
    challenge: bytes = Field(..., min_length=1, max_length=MAX_CHALLENGE_BYTES)
    difficulty: int = Field(..., ge=0, le=MAX_UINT64)
    vdf_proof: bytes = Field(..., max_length=MAX_PROOF_BYTES)

    @field_validator("challenge", "vdf_proof", mode="before")
    @classmethod
    def decode_base64(cls, v, info):
        return _decode_bytes_field(v, info.field_name)

    @field_serializer("challenge", "vdf_proof", when_used="json")
    def encode_base64(self, v: bytes) -> str:
        return base64.b64encode(v).decode()


class UnlockRequest(BaseModel):
    proof: VDFProof | None = None


class ChallengeReply(BaseModel):
    challenge: bytes
    difficulty: int = Field(..., ge=0, le=MAX_UINT64)

    @field_validator("challenge", mode="before")
    @classmethod
    def decode_base64(cls, v):
        return _decode_bytes_field(v, "challenge")

    @field_serializer("challenge", when_used="json")
    def encode_base64(self, v: bytes) -> str:
        return base64.b64encode(v).decode()


class PermitReply(BaseModel):
    connection_allowed: bool


class Message(BaseModel):
    unlock_request: UnlockRequest | None = None
    challenge_reply: ChallengeReply | None = None
    permit_reply: PermitReply | None = None

    @model_validator(mode="after")
    def exactly_one_kind(self) -> "Message":
        present = [name for name in MESSAGE_KINDS if getattr(self, name) is not None]
        if len(present) != 1:
            raise ValueError("Message must carry exactly one of: " + ", ".join(MESSAGE_KINDS))
        return self

    @property
    def kind(self) -> str:
        return next(name for name in MESSAGE_KINDS if getattr(self, name) is not None)

    def require_unlock_request(self) -> UnlockRequest:
        """Return the unlock request, the only kind a client may send."""
        if self.unlock_request is None:
            raise ProtocolError(f"Clients may not send {self.kind}")
        return self.unlock_request

    @classmethod
    def wrap(cls, body: UnlockRequest | ChallengeReply | PermitReply) -> "Message":
        if isinstance(body, UnlockRequest):
            return cls(unlock_request=body)
        if isinstance(body, ChallengeReply):
            return cls(challenge_reply=body)
        return cls(permit_reply=body)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)
