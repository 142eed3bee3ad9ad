"""
Proof verification gates.

Gates run in a fixed order and the first failure decides the verdict:

1. the session has an outstanding challenge
2. the proof names that challenge's exact seed and difficulty
3. the challenge has not expired
4. the VDF proof verifies

Reasons are for server-side logs only. Clients see a bare
``PermitReply(connection_allowed=False)`` whatever the reason.
"""

import hmac
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from gatekeeper.errors import CryptoError
from gatekeeper.schemas.messages import VDFProof
from gatekeeper.services import vdf
from gatekeeper.services.challenge_service import Challenge
from gatekeeper.services.session_table import Session, SessionState

logger = structlog.get_logger()


class RejectReason(str, Enum):
    NO_OUTSTANDING_CHALLENGE = "no_outstanding_challenge"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    INVALID_PROOF = "invalid_proof"
    REPLAYED = "replayed"
    PROTOCOL_VIOLATION = "protocol_violation"
    VERIFIER_TIMEOUT = "verifier_timeout"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Verdict:
    accepted: bool
    reason: RejectReason | None = None

    @classmethod
    def reject(cls, reason: RejectReason) -> "Verdict":
        return cls(accepted=False, reason=reason)


ACCEPT = Verdict(accepted=True)


class ProofVerifier:
    def __init__(self, params: vdf.GroupParameters, clock: Callable[[], float] = time.monotonic):
        self.params = params
        self._clock = clock

    def precheck(self, session: Session | None, proof: VDFProof) -> Verdict | None:
        """Run gates 1-3. Returns a rejection, or None when the VDF gate is next."""
        if session is None or session.state is not SessionState.CHALLENGE_ISSUED:
            return Verdict.reject(RejectReason.NO_OUTSTANDING_CHALLENGE)
        challenge = session.challenge
        if challenge is None:
            return Verdict.reject(RejectReason.NO_OUTSTANDING_CHALLENGE)

        seed_matches = hmac.compare_digest(proof.challenge, challenge.seed)
        if not seed_matches or proof.difficulty != challenge.difficulty:
            return Verdict.reject(RejectReason.MISMATCH)

        if challenge.is_expired(self._clock()):
            return Verdict.reject(RejectReason.EXPIRED)
        return None

    def check_vdf(self, challenge: Challenge, proof: VDFProof) -> Verdict:
        """Gate 4. Pure; safe to run concurrently."""
        try:
            vdf.check_proof(self.params, challenge.seed, challenge.difficulty, proof.vdf_proof)
        except CryptoError as e:
            logger.debug("vdf_check_failed", error_type=type(e).__name__, error=str(e))
            return Verdict.reject(RejectReason.INVALID_PROOF)
        return ACCEPT

    def check(self, session: Session | None, proof: VDFProof) -> Verdict:
        verdict = self.precheck(session, proof)
        if verdict is not None:
            return verdict
        return self.check_vdf(session.challenge, proof)
