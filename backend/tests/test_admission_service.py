"""Tests for the admission state machine."""

import asyncio
import itertools
import threading
import time

import pytest

from gatekeeper.errors import VerifierSaturated
from gatekeeper.schemas.messages import ChallengeReply, PermitReply, UnlockRequest, VDFProof
from gatekeeper.services import vdf
from gatekeeper.services.admission_service import AdmissionStateMachine
from gatekeeper.services.challenge_service import ChallengeGenerator
from gatekeeper.services.difficulty_service import DifficultyController
from gatekeeper.services.proof_verifier import ProofVerifier
from gatekeeper.services.replay_ledger import ReplayLedger
from gatekeeper.services.session_table import SessionState, SessionTable
from gatekeeper.services.verifier_pool import VerifierPool
from tests.test_utils import FakeClock

KEY = "session-key-0001"


def counter_entropy():
    """Deterministic, distinct seeds."""
    counter = itertools.count()
    return lambda n: next(counter).to_bytes(n, "big")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_gate(group_params, clock):
    gates = []

    def factory(
        difficulty=20,
        entropy=None,
        ledger=None,
        pool=None,
        verify_timeout=10.0,
    ):
        controller = DifficultyController(
            base_difficulty=difficulty, max_difficulty=difficulty, clock=clock
        )
        generator = ChallengeGenerator(
            controller,
            ttl_seconds=30.0,
            squarings_per_second=1000,
            clock=clock,
            entropy=entropy or counter_entropy(),
        )
        gate = AdmissionStateMachine(
            generator=generator,
            verifier=ProofVerifier(group_params, clock=clock),
            difficulty=controller,
            table=SessionTable(stripes=8),
            pool=pool or VerifierPool(max_workers=2, max_pending=16),
            ledger=ledger,
            clock=clock,
            verify_timeout=verify_timeout,
            retention_seconds=60.0,
        )
        gates.append(gate)
        return gate

    yield factory
    for gate in gates:
        gate.shutdown(wait=False)


@pytest.fixture
def gate(make_gate):
    return make_gate()


def solve(params, reply: ChallengeReply) -> UnlockRequest:
    return UnlockRequest(
        proof=VDFProof(
            challenge=reply.challenge,
            difficulty=reply.difficulty,
            vdf_proof=vdf.prove(params, reply.challenge, reply.difficulty),
        )
    )


def hold_calls(target, name: str, monkeypatch):
    """Make ``target.name`` block until released. Returns (entered, release)."""
    entered = threading.Event()
    release = threading.Event()
    original = getattr(target, name)

    def held(*args):
        entered.set()
        release.wait(5)
        return original(*args)

    monkeypatch.setattr(target, name, held)
    return entered, release


def same_stripe_key(gate: AdmissionStateMachine, key: str) -> str:
    stripes = len(gate.table._stripes)
    return next(
        candidate
        for candidate in (f"neighbour-key-{i:06d}" for i in itertools.count())
        if hash(candidate) % stripes == hash(key) % stripes
    )


async def settle(gate: AdmissionStateMachine) -> None:
    """Wait for verifications that outlived their callers."""
    await asyncio.gather(*list(gate._in_flight))


class TestChallengeIssuance:
    def test_fixed_seed_and_difficulty(self, make_gate):
        gate = make_gate(difficulty=20, entropy=lambda n: b"abc")
        reply = gate.handle(KEY, UnlockRequest())

        assert reply == ChallengeReply(challenge=b"abc", difficulty=20)
        assert gate.session_state(KEY) is SessionState.CHALLENGE_ISSUED

    def test_unlock_while_challenge_outstanding_is_denied(self, gate):
        gate.handle(KEY, UnlockRequest())
        reply = gate.handle(KEY, UnlockRequest())

        assert reply == PermitReply(connection_allowed=False)
        assert gate.session_state(KEY) is SessionState.DENIED

    def test_terminal_session_starts_over(self, gate):
        gate.handle(KEY, UnlockRequest())
        gate.handle(KEY, UnlockRequest())
        assert gate.session_state(KEY) is SessionState.DENIED

        reply = gate.handle(KEY, UnlockRequest())
        assert isinstance(reply, ChallengeReply)
        assert gate.session_state(KEY) is SessionState.CHALLENGE_ISSUED

    def test_sessions_are_independent(self, gate):
        a = gate.handle("key-a-0000000000", UnlockRequest())
        b = gate.handle("key-b-0000000000", UnlockRequest())
        assert a.challenge != b.challenge
        assert len(gate.table) == 2

    def test_issuance_records_attempt(self, gate):
        for i in range(3):
            gate.handle(f"key-{i}-0000000000", UnlockRequest())
        assert sum(b.attempts for b in gate.difficulty._buckets.values()) == 3


class TestVerification:
    def test_honest_proof_is_permitted(self, make_gate, group_params):
        gate = make_gate(difficulty=20, entropy=lambda n: b"abc")
        challenge = gate.handle(KEY, UnlockRequest())
        reply = gate.handle(KEY, solve(group_params, challenge))

        assert reply == PermitReply(connection_allowed=True)
        assert gate.session_state(KEY) is SessionState.PERMITTED

    def test_identical_resend_is_denied(self, make_gate, group_params):
        gate = make_gate(difficulty=20, entropy=lambda n: b"abc")
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        assert request.proof.challenge == b"abc"

        assert gate.handle(KEY, request) == PermitReply(connection_allowed=True)
        assert gate.handle(KEY, request) == PermitReply(connection_allowed=False)

    def test_replayed_proof_is_denied(self, gate, group_params):
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        assert gate.handle(KEY, request).connection_allowed

        assert gate.handle(KEY, request) == PermitReply(connection_allowed=False)

    def test_proof_without_challenge_is_denied(self, gate, group_params):
        request = solve(group_params, ChallengeReply(challenge=b"x" * 16, difficulty=20))
        assert not gate.handle(KEY, request).connection_allowed
        assert gate.session_state(KEY) is None

    def test_wrong_difficulty_is_denied(self, gate, group_params):
        challenge = gate.handle(KEY, UnlockRequest())
        request = solve(group_params, challenge.model_copy(update={"difficulty": 21}))

        assert not gate.handle(KEY, request).connection_allowed
        assert gate.session_state(KEY) is SessionState.DENIED

    def test_proof_for_other_session_is_denied(self, gate, group_params):
        gate.handle(KEY, UnlockRequest())
        other = gate.handle("session-key-0002", UnlockRequest())

        assert not gate.handle(KEY, solve(group_params, other)).connection_allowed

    def test_expired_challenge_is_denied(self, gate, group_params, clock):
        challenge = gate.handle(KEY, UnlockRequest())
        request = solve(group_params, challenge)
        clock.advance(gate.generator.challenge_ttl(challenge.difficulty) + 1)

        assert not gate.handle(KEY, request).connection_allowed
        assert gate.session_state(KEY) is SessionState.EXPIRED

    def test_invalid_proof_is_denied(self, gate, group_params):
        challenge = gate.handle(KEY, UnlockRequest())
        request = solve(group_params, challenge)
        data = request.proof.vdf_proof
        request.proof.vdf_proof = data[:-1] + bytes([data[-1] ^ 0x01])

        assert not gate.handle(KEY, request).connection_allowed
        assert gate.session_state(KEY) is SessionState.DENIED

    def test_denied_session_cannot_retry_same_challenge(self, gate, group_params):
        challenge = gate.handle(KEY, UnlockRequest())
        good = solve(group_params, challenge)
        bad = good.model_copy(deep=True)
        bad.proof.vdf_proof = b"\x00" * len(good.proof.vdf_proof)

        assert not gate.handle(KEY, bad).connection_allowed
        assert not gate.handle(KEY, good).connection_allowed

    def test_concurrent_proofs_yield_one_permit(self, gate, group_params):
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def submit():
            barrier.wait()
            reply = gate.handle(KEY, request)
            with lock:
                results.append(reply.connection_allowed)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7
        assert gate.session_state(KEY) is SessionState.PERMITTED

    def test_handle_async(self, gate, group_params):
        async def flow():
            challenge = await gate.handle_async(KEY, UnlockRequest())
            return await gate.handle_async(KEY, solve(group_params, challenge))

        assert asyncio.run(flow()) == PermitReply(connection_allowed=True)


class TestVerifierBackpressure:
    def test_saturation_leaves_challenge_outstanding(self, make_gate, group_params):
        pool = VerifierPool(max_workers=1, max_pending=1)
        gate = make_gate(pool=pool)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))

        release = threading.Event()
        blocker = pool.submit(release.wait, 5)
        with pytest.raises(VerifierSaturated):
            gate.handle(KEY, request)
        assert gate.session_state(KEY) is SessionState.CHALLENGE_ISSUED

        # runs after the pool has released the blocker's slot
        freed = threading.Event()
        blocker.add_done_callback(lambda _: freed.set())
        release.set()
        assert freed.wait(5)
        assert gate.handle(KEY, request).connection_allowed

    def test_verification_timeout_fails_closed(self, make_gate, group_params, monkeypatch):
        gate = make_gate(verify_timeout=0.05)
        release = threading.Event()
        check_vdf = gate.verifier.check_vdf

        def slow_check(challenge, proof):
            release.wait(5)
            return check_vdf(challenge, proof)

        monkeypatch.setattr(gate.verifier, "check_vdf", slow_check)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        try:
            assert not gate.handle(KEY, request).connection_allowed
            assert gate.session_state(KEY) is SessionState.DENIED
        finally:
            release.set()

    def test_unlock_while_verifying_leaves_session_alone(
        self, make_gate, group_params, monkeypatch
    ):
        gate = make_gate()
        started = threading.Event()
        release = threading.Event()
        check_vdf = gate.verifier.check_vdf

        def slow_check(challenge, proof):
            started.set()
            release.wait(5)
            return check_vdf(challenge, proof)

        monkeypatch.setattr(gate.verifier, "check_vdf", slow_check)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        results = []
        worker = threading.Thread(target=lambda: results.append(gate.handle(KEY, request)))
        worker.start()
        assert started.wait(5)

        assert gate.session_state(KEY) is SessionState.VERIFYING
        assert gate.handle(KEY, UnlockRequest()) == PermitReply(connection_allowed=False)
        assert gate.session_state(KEY) is SessionState.VERIFYING

        release.set()
        worker.join(5)
        assert results == [PermitReply(connection_allowed=True)]

    def test_issuance_proceeds_during_ledger_write(
        self, make_gate, group_params, session_factory, monkeypatch
    ):
        ledger = ReplayLedger(session_factory)
        gate = make_gate(ledger=ledger)
        entered, release = hold_calls(ledger, "consume", monkeypatch)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        neighbour = same_stripe_key(gate, KEY)

        async def flow():
            verifying = asyncio.ensure_future(gate.handle_async(KEY, request))
            try:
                assert await asyncio.to_thread(entered.wait, 5)
                started = time.monotonic()
                reply = await asyncio.wait_for(gate.handle_async(neighbour, UnlockRequest()), 2)
                elapsed = time.monotonic() - started
                state = gate.session_state(KEY)
            finally:
                release.set()
            return reply, elapsed, state, await verifying

        reply, elapsed, state, permit = asyncio.run(flow())
        assert isinstance(reply, ChallengeReply)
        assert elapsed < 1.0
        assert state is SessionState.VERIFYING
        assert permit == PermitReply(connection_allowed=True)

    def test_cancelled_caller_still_finishes_verification(
        self, make_gate, group_params, session_factory, monkeypatch
    ):
        ledger = ReplayLedger(session_factory)
        gate = make_gate(ledger=ledger)
        entered, release = hold_calls(ledger, "consume", monkeypatch)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))

        async def flow():
            caller = asyncio.ensure_future(gate.handle_async(KEY, request))
            assert await asyncio.to_thread(entered.wait, 5)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            assert gate.session_state(KEY) is SessionState.VERIFYING

            release.set()
            await settle(gate)

        asyncio.run(flow())
        assert gate.session_state(KEY) is SessionState.PERMITTED
        assert isinstance(gate.handle(KEY, UnlockRequest()), ChallengeReply)


class TestReplayLedgerIntegration:
    def test_seed_consumed_elsewhere_is_denied(self, make_gate, group_params, session_factory):
        ledger = ReplayLedger(session_factory)
        first = make_gate(entropy=lambda n: b"s" * n, ledger=ledger)
        second = make_gate(entropy=lambda n: b"s" * n, ledger=ledger)

        request = solve(group_params, first.handle(KEY, UnlockRequest()))
        second.handle(KEY, UnlockRequest())

        assert first.handle(KEY, request).connection_allowed
        assert not second.handle(KEY, request).connection_allowed
        assert second.session_state(KEY) is SessionState.DENIED

    def test_distinct_seeds_all_consumed(self, make_gate, group_params, session_factory):
        gate = make_gate(ledger=ReplayLedger(session_factory))
        for i in range(3):
            key = f"session-key-{i:04d}"
            challenge = gate.handle(key, UnlockRequest())
            assert gate.handle(key, solve(group_params, challenge)).connection_allowed


class TestRejectMessage:
    def test_reply_kind_from_client_is_denied(self, gate):
        gate.handle(KEY, UnlockRequest())
        assert gate.reject_message(KEY) == PermitReply(connection_allowed=False)
        assert gate.session_state(KEY) is SessionState.DENIED

    def test_without_session(self, gate):
        assert not gate.reject_message(KEY).connection_allowed
        assert gate.session_state(KEY) is None


class TestSweepAndDrop:
    def test_sweep_expires_overdue_challenges(self, gate, clock):
        gate.handle(KEY, UnlockRequest())
        assert gate.sweep() == (0, 0)

        clock.advance(60.0)
        assert gate.sweep() == (1, 0)
        assert gate.session_state(KEY) is SessionState.EXPIRED

    def test_sweep_reclaims_old_terminal_sessions(self, gate, group_params, clock):
        gate.handle(KEY, solve(group_params, gate.handle(KEY, UnlockRequest())))
        clock.advance(59.0)
        assert gate.sweep() == (0, 0)

        clock.advance(1.0)
        assert gate.sweep() == (0, 1)
        assert gate.session_state(KEY) is None
        assert len(gate.table) == 0

    def test_lazy_expiry_on_unlock(self, gate, clock):
        first = gate.handle(KEY, UnlockRequest())
        clock.advance(60.0)

        second = gate.handle(KEY, UnlockRequest())
        assert isinstance(second, ChallengeReply)
        assert second.challenge != first.challenge

    def test_drop_removes_idle_session(self, gate):
        gate.handle(KEY, UnlockRequest())
        gate.drop(KEY)
        assert gate.session_state(KEY) is None

    def test_drop_unknown_session(self, gate):
        gate.drop(KEY)
        assert len(gate.table) == 0

    def test_drop_while_verifying_reclaims_after_finish(
        self, make_gate, group_params, monkeypatch
    ):
        gate = make_gate()
        started = threading.Event()
        release = threading.Event()
        check_vdf = gate.verifier.check_vdf

        def slow_check(challenge, proof):
            started.set()
            release.wait(5)
            return check_vdf(challenge, proof)

        monkeypatch.setattr(gate.verifier, "check_vdf", slow_check)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        worker = threading.Thread(target=gate.handle, args=(KEY, request))
        worker.start()
        assert started.wait(5)

        gate.drop(KEY)
        assert gate.session_state(KEY) is SessionState.VERIFYING
        assert gate.sweep() == (0, 0)

        release.set()
        worker.join(5)
        deadline = time.monotonic() + 5
        while gate.session_state(KEY) is not None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert gate.session_state(KEY) is None

    def test_cancel_before_verifying_does_not_strand_session(
        self, make_gate, group_params, monkeypatch
    ):
        gate = make_gate()
        entered, release = hold_calls(gate.verifier, "precheck", monkeypatch)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))

        async def flow():
            caller = asyncio.ensure_future(gate.handle_async(KEY, request))
            assert await asyncio.to_thread(entered.wait, 5)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            release.set()
            await settle(gate)
            assert gate.session_state(KEY) is SessionState.PERMITTED
            await gate.drop_async(KEY)

        asyncio.run(flow())
        assert gate.session_state(KEY) is None
        assert len(gate.table) == 0

    def test_disconnect_during_ledger_write_reclaims_session(
        self, make_gate, group_params, session_factory, monkeypatch
    ):
        ledger = ReplayLedger(session_factory)
        gate = make_gate(ledger=ledger)
        entered, release = hold_calls(ledger, "consume", monkeypatch)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))

        async def flow():
            caller = asyncio.ensure_future(gate.handle_async(KEY, request))
            assert await asyncio.to_thread(entered.wait, 5)
            caller.cancel()
            await gate.drop_async(KEY)
            assert gate.session_state(KEY) is SessionState.VERIFYING

            release.set()
            await settle(gate)

        asyncio.run(flow())
        assert gate.session_state(KEY) is None
        assert len(gate.table) == 0

    def test_sweep_denies_stale_verification(self, make_gate, group_params, clock, monkeypatch):
        gate = make_gate()
        entered, release = hold_calls(gate.verifier, "check_vdf", monkeypatch)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        results = []
        worker = threading.Thread(target=lambda: results.append(gate.handle(KEY, request)))
        worker.start()
        assert entered.wait(5)

        clock.advance(9.0)
        assert gate.sweep() == (0, 0)
        clock.advance(1.0)
        assert gate.sweep() == (1, 0)
        assert gate.session_state(KEY) is SessionState.DENIED

        release.set()
        worker.join(5)
        assert results == [PermitReply(connection_allowed=False)]
        assert gate.session_state(KEY) is SessionState.DENIED

    def test_sweep_reclaims_stale_dropped_verification(
        self, make_gate, group_params, clock, monkeypatch
    ):
        gate = make_gate()
        entered, release = hold_calls(gate.verifier, "check_vdf", monkeypatch)
        request = solve(group_params, gate.handle(KEY, UnlockRequest()))
        worker = threading.Thread(target=gate.handle, args=(KEY, request))
        worker.start()
        assert entered.wait(5)

        gate.drop(KEY)
        clock.advance(10.0)
        assert gate.sweep() == (1, 1)
        assert gate.session_state(KEY) is None

        release.set()
        worker.join(5)
        assert gate.session_state(KEY) is None
        assert len(gate.table) == 0
