import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from gatekeeper.errors import PolicyError, RandomSourceUnavailable
from gatekeeper.services import vdf
from gatekeeper.services.difficulty_service import DifficultyController

# Honest clients get twice the nominal computation time
TTL_SLACK = 2.0


@dataclass(frozen=True)
class Challenge:
    seed: bytes
    difficulty: int
    issued_at: float
    expires_at: float
    session_key: str

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ChallengeGenerator:
    """Issues VDF challenges at the controller's current difficulty."""

    def __init__(
        self,
        difficulty: DifficultyController,
        seed_bytes: int = 32,
        ttl_seconds: float = 30.0,
        squarings_per_second: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
        entropy: Callable[[int], bytes] = secrets.token_bytes,
    ):
        if seed_bytes < 16:
            raise PolicyError("Challenge seeds must be at least 16 bytes")
        self._difficulty = difficulty
        self._seed_bytes = seed_bytes
        self._ttl_seconds = ttl_seconds
        self._squarings_per_second = squarings_per_second
        self._clock = clock
        self._entropy = entropy

    def challenge_ttl(self, difficulty: int) -> float:
        """Time allowed to answer a challenge of ``difficulty`` squarings."""
        return self._ttl_seconds + TTL_SLACK * difficulty / self._squarings_per_second

    def issue(self, session_key: str) -> Challenge:
        """Generate a new challenge bound to ``session_key``."""
        # Read at issuance; concurrent sessions may see different values
        difficulty = self._difficulty.current_difficulty()
        if not vdf.is_valid_difficulty(difficulty):
            raise PolicyError(f"Difficulty out of range: {difficulty}")

        try:
            seed = self._entropy(self._seed_bytes)
        except (OSError, NotImplementedError) as e:
            raise RandomSourceUnavailable("Random source unavailable") from e

        issued_at = self._clock()
        return Challenge(
            seed=seed,
            difficulty=difficulty,
            issued_at=issued_at,
            expires_at=issued_at + self.challenge_ttl(difficulty),
            session_key=session_key,
        )
