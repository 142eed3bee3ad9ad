from gatekeeper.schemas.messages import (
    ChallengeReply,
    Message,
    PermitReply,
    UnlockRequest,
    VDFProof,
)
from gatekeeper.schemas.parameters import GroupParametersResponse

__all__ = [
    "ChallengeReply",
    "GroupParametersResponse",
    "Message",
    "PermitReply",
    "UnlockRequest",
    "VDFProof",
]
