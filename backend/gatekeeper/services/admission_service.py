"""
Admission state machine.

Per-connection lifecycle::

    AwaitingChallenge -> ChallengeIssued -> Verifying -> Permitted | Denied
                         ChallengeIssued -> Expired

Terminal sessions that receive another request start over as a fresh session.
This module owns the session table and is the only place that builds
``ChallengeReply`` and ``PermitReply`` messages.
"""

import asyncio
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

import structlog
from sqlalchemy.orm import sessionmaker

from gatekeeper.config import settings
from gatekeeper.schemas.messages import ChallengeReply, PermitReply, UnlockRequest, VDFProof
from gatekeeper.services import vdf
from gatekeeper.services.challenge_service import Challenge, ChallengeGenerator
from gatekeeper.services.difficulty_service import DifficultyController
from gatekeeper.services.proof_verifier import ProofVerifier, RejectReason, Verdict
from gatekeeper.services.replay_ledger import ReplayLedger
from gatekeeper.services.session_table import Session, SessionState, SessionTable
from gatekeeper.services.verifier_pool import VerifierPool

logger = structlog.get_logger()

Reply = ChallengeReply | PermitReply


@dataclass
class _PendingVerification:
    session: Session
    challenge: Challenge
    future: Future


class AdmissionStateMachine:
    def __init__(
        self,
        generator: ChallengeGenerator,
        verifier: ProofVerifier,
        difficulty: DifficultyController,
        table: SessionTable,
        pool: VerifierPool,
        ledger: ReplayLedger | None = None,
        clock: Callable[[], float] = time.monotonic,
        verify_timeout: float = 10.0,
        retention_seconds: float = 60.0,
    ):
        self.generator = generator
        self.verifier = verifier
        self.difficulty = difficulty
        self.table = table
        self.pool = pool
        self.ledger = ledger
        self._clock = clock
        self._verify_timeout = verify_timeout
        self._retention_seconds = retention_seconds
        self._in_flight: set[asyncio.Task] = set()
        # one writer; the ledger serialises writes anyway
        self._ledger_writer = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="replay-ledger")
            if ledger is not None
            else None
        )

    @property
    def params(self) -> vdf.GroupParameters:
        return self.verifier.params

    def session_state(self, session_key: str) -> SessionState | None:
        session = self.table.get(session_key)
        return None if session is None else session.state

    def handle(self, session_key: str, request: UnlockRequest) -> Reply:
        """Process one request, blocking while the proof is verified."""
        if request.proof is None:
            return self._issue(session_key)

        step = self._begin_verification(session_key, request.proof)
        if isinstance(step, PermitReply):
            return step

        verdict = Verdict.reject(RejectReason.INTERNAL_ERROR)
        try:
            if not self._consume_seed(step):
                verdict = Verdict.reject(RejectReason.REPLAYED)
            else:
                verdict = step.future.result(timeout=self._verify_timeout)
        except TimeoutError:
            step.future.cancel()
            verdict = Verdict.reject(RejectReason.VERIFIER_TIMEOUT)
        finally:
            reply = self._finish_verification(session_key, step, verdict)
        return reply

    async def handle_async(self, session_key: str, request: UnlockRequest) -> Reply:
        """
        Same transitions as :meth:`handle`, awaiting the verifier pool.

        Lock-taking steps run in worker threads so the event loop never waits
        on a stripe. A proof is carried through to a final state even if the
        caller is cancelled, so its session always leaves ``Verifying``.
        """
        if request.proof is None:
            return await asyncio.to_thread(self._issue, session_key)

        task = asyncio.ensure_future(self._verify_async(session_key, request.proof))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def reject_message_async(self, session_key: str) -> PermitReply:
        return await asyncio.to_thread(self.reject_message, session_key)

    async def drop_async(self, session_key: str) -> None:
        await asyncio.to_thread(self.drop, session_key)

    def reject_message(self, session_key: str) -> PermitReply:
        """Answer a message a client must never send, such as a reply kind."""
        with self.table.locked(session_key):
            session = self.table.get(session_key)
            if session is not None and session.state is SessionState.CHALLENGE_ISSUED:
                session.transition(SessionState.DENIED, self._clock())
        return self._deny(RejectReason.PROTOCOL_VIOLATION)

    def drop(self, session_key: str) -> None:
        """Forget a session whose connection closed."""
        with self.table.locked(session_key):
            session = self.table.get(session_key)
            if session is None:
                return
            if session.state is SessionState.VERIFYING:
                # reclaimed when the verification finishes
                session.dropped = True
                return
            self.table.remove(session_key)

    def sweep(self) -> tuple[int, int]:
        """
        Expire overdue challenges and reclaim old terminal sessions.

        A session left in ``Verifying`` longer than the verification timeout
        is denied, and reclaimed at once if its connection already closed.
        Returns (expired, reclaimed); stale verifications count as expired.
        """
        expired = reclaimed = 0
        for session_key in self.table.keys():
            with self.table.locked(session_key):
                session = self.table.get(session_key)
                if session is None:
                    continue
                now = self._clock()
                if session.state is SessionState.CHALLENGE_ISSUED:
                    if session.challenge is None or session.challenge.is_expired(now):
                        session.transition(SessionState.EXPIRED, now)
                        expired += 1
                elif session.state is SessionState.VERIFYING:
                    if now - session.last_activity >= self._verify_timeout:
                        session.transition(SessionState.DENIED, now)
                        expired += 1
                        logger.warning("stale_verification_denied")
                        if session.dropped:
                            self.table.remove(session_key)
                            reclaimed += 1
                elif (
                    session.state.is_terminal
                    and now - session.last_activity >= self._retention_seconds
                ):
                    self.table.remove(session_key)
                    reclaimed += 1

        if expired or reclaimed:
            logger.info("sessions_swept", expired=expired, reclaimed=reclaimed)
        return expired, reclaimed

    def shutdown(self, wait: bool = True) -> None:
        self.pool.shutdown(wait=wait)
        if self._ledger_writer is not None:
            self._ledger_writer.shutdown(wait=wait)

    # -- transitions ---------------------------------------------------------

    def _issue(self, session_key: str) -> Reply:
        self.difficulty.record_attempt()
        with self.table.locked(session_key):
            now = self._clock()
            session = self.table.get(session_key)
            if session is not None and session.state is SessionState.CHALLENGE_ISSUED:
                if session.challenge.is_expired(now):
                    session.transition(SessionState.EXPIRED, now)

            if session is not None and not session.state.is_terminal:
                # a challenge is already outstanding or being verified
                if session.state is SessionState.CHALLENGE_ISSUED:
                    session.transition(SessionState.DENIED, now)
                return self._deny(RejectReason.PROTOCOL_VIOLATION)

            session = Session(
                session_key=session_key,
                state=SessionState.AWAITING_CHALLENGE,
                created_at=now,
                last_activity=now,
            )
            # nothing is stored if issuance fails
            challenge = self.generator.issue(session_key)
            session.challenge = challenge
            session.transition(SessionState.CHALLENGE_ISSUED, now)
            self.table.put(session)

        logger.info(
            "challenge_issued",
            difficulty=challenge.difficulty,
            ttl_seconds=round(challenge.expires_at - challenge.issued_at, 2),
        )
        return ChallengeReply(challenge=challenge.seed, difficulty=challenge.difficulty)

    async def _verify_async(self, session_key: str, proof: VDFProof) -> PermitReply:
        step = await asyncio.to_thread(self._begin_verification, session_key, proof)
        if isinstance(step, PermitReply):
            return step

        loop = asyncio.get_running_loop()
        verdict = Verdict.reject(RejectReason.INTERNAL_ERROR)
        try:
            consumed = True
            if self._ledger_writer is not None:
                consumed = await loop.run_in_executor(
                    self._ledger_writer, self._consume_seed, step
                )
            if not consumed:
                verdict = Verdict.reject(RejectReason.REPLAYED)
            else:
                verdict = await asyncio.wait_for(
                    asyncio.wrap_future(step.future), self._verify_timeout
                )
        except TimeoutError:
            verdict = Verdict.reject(RejectReason.VERIFIER_TIMEOUT)
        finally:
            reply = await asyncio.to_thread(self._finish_verification, session_key, step, verdict)
        return reply

    def _begin_verification(
        self, session_key: str, proof: VDFProof
    ) -> _PendingVerification | PermitReply:
        with self.table.locked(session_key):
            now = self._clock()
            session = self.table.get(session_key)
            if session is not None and session.state.is_terminal:
                # starts over as a fresh session, which has no challenge yet
                session = None
            if session is not None and session.state is SessionState.VERIFYING:
                return self._deny(RejectReason.PROTOCOL_VIOLATION)

            verdict = self.verifier.precheck(session, proof)
            if verdict is not None:
                if session is not None and session.state is SessionState.CHALLENGE_ISSUED:
                    expired = verdict.reason is RejectReason.EXPIRED
                    session.transition(
                        SessionState.EXPIRED if expired else SessionState.DENIED, now
                    )
                return self._deny(verdict.reason)

            challenge = session.challenge
            # VerifierSaturated propagates with the session still ChallengeIssued
            future = self.pool.submit(self.verifier.check_vdf, challenge, proof)
            session.transition(SessionState.VERIFYING, now)
        return _PendingVerification(session=session, challenge=challenge, future=future)

    def _consume_seed(self, step: _PendingVerification) -> bool:
        """Record the seed in the replay ledger. Runs without any stripe held."""
        if self.ledger is None:
            return True
        challenge = step.challenge
        if self.ledger.consume(challenge.seed, challenge.expires_at - self._clock()):
            return True
        step.future.cancel()
        return False

    def _finish_verification(
        self, session_key: str, step: _PendingVerification, verdict: Verdict
    ) -> PermitReply:
        with self.table.locked(session_key):
            session = step.session
            if session.state is not SessionState.VERIFYING:
                # the sweep already gave up on this verification
                verdict = Verdict.reject(RejectReason.VERIFIER_TIMEOUT)
            else:
                state = SessionState.PERMITTED if verdict.accepted else SessionState.DENIED
                session.transition(state, self._clock())
            if session.dropped and self.table.get(session_key) is session:
                self.table.remove(session_key)

        if not verdict.accepted:
            return self._deny(verdict.reason)

        self.difficulty.record_verification(True)
        logger.info("permit_granted", difficulty=step.challenge.difficulty)
        return PermitReply(connection_allowed=True)

    def _deny(self, reason: RejectReason) -> PermitReply:
        # The reason stays in the server log; the client only learns "no"
        self.difficulty.record_verification(False)
        logger.warning("permit_denied", reason=reason.value)
        return PermitReply(connection_allowed=False)


def load_group_parameters() -> vdf.GroupParameters:
    if settings.vdf_modulus_hex:
        return vdf.GroupParameters.from_hex(settings.vdf_modulus_hex, settings.vdf_security_bits)
    params = vdf.setup(settings.vdf_security_bits)
    logger.warning(
        "vdf_modulus_generated",
        modulus_bits=params.modulus.bit_length(),
        hint="set VDF_MODULUS_HEX to share one group across processes",
    )
    return params


def build_gate(
    session_factory: sessionmaker | None = None,
    params: vdf.GroupParameters | None = None,
) -> AdmissionStateMachine:
    """Wire an admission state machine from settings."""
    difficulty = DifficultyController(
        base_difficulty=settings.base_difficulty,
        max_difficulty=settings.max_difficulty,
        adjustment_window=settings.difficulty_window_seconds,
        attempt_rate_ceiling=settings.attempt_rate_ceiling,
        failure_rate_ceiling=settings.failure_rate_ceiling,
    )
    generator = ChallengeGenerator(
        difficulty,
        seed_bytes=settings.vdf_seed_bytes,
        ttl_seconds=settings.challenge_ttl_seconds,
        squarings_per_second=settings.honest_squarings_per_second,
    )
    verifier = ProofVerifier(params or load_group_parameters())
    ledger = ReplayLedger(session_factory) if session_factory is not None else None
    return AdmissionStateMachine(
        generator=generator,
        verifier=verifier,
        difficulty=difficulty,
        table=SessionTable(stripes=settings.session_lock_stripes),
        pool=VerifierPool(
            max_workers=settings.verifier_workers,
            max_pending=settings.verifier_max_pending,
        ),
        ledger=ledger,
        verify_timeout=settings.verify_timeout_seconds,
        retention_seconds=settings.session_retention_seconds,
    )
