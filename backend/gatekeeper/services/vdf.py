"""
Verifiable delay function over an RSA group of unknown order.

The delay is ``y = x^(2^t) mod N``: ``t`` squarings that cannot be run in
parallel without knowing the factorization of ``N``. The proof follows
Pietrzak's halving protocol, made non-interactive with Fiat-Shamir. The
prover publishes one midpoint per round, and the verifier folds the claim
``y = x^(2^t)`` into one of half the length until ``t == 1``. Verification
therefore costs O(log t) short exponentiations.

All arithmetic happens in the quotient group Z*_N / {+1, -1}. Every element
is represented by its canonical residue ``min(v, N - v)``.

Proof encoding: ``output || mu_1 || ... || mu_k``, each element fixed-width
big-endian. ``k`` is fully determined by ``t`` (see :func:`proof_length`).
"""

import hashlib
import hmac
import math
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric import rsa

from gatekeeper.errors import CryptoError, InvalidElement, InvalidEncoding, ProofRejected

MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 2**64 - 1
MIN_MODULUS_BITS = 1024

# Fiat-Shamir exponent size
CHALLENGE_BITS = 128

_DOMAIN = b"gatekeeper/vdf/v1"

# Symmetric strength -> RSA modulus size (NIST SP 800-57 Part 1, Table 2)
_MODULUS_BITS_BY_SECURITY = (
    (80, 1024),
    (112, 2048),
    (128, 3072),
    (192, 7680),
    (256, 15360),
)


@dataclass(frozen=True)
class GroupParameters:
    """Public parameters of the squaring group."""

    modulus: int
    security_bits: int

    @property
    def element_size(self) -> int:
        return (self.modulus.bit_length() + 7) // 8

    @property
    def modulus_hex(self) -> str:
        return format(self.modulus, "x")

    @classmethod
    def from_hex(cls, modulus_hex: str, security_bits: int) -> "GroupParameters":
        params = cls(modulus=int(modulus_hex, 16), security_bits=security_bits)
        params.validate()
        return params

    def validate(self) -> None:
        """Coarse sanity checks. Trapdoor-freeness cannot be tested here."""
        if self.modulus % 2 == 0:
            raise ValueError("VDF modulus must be odd")
        if self.modulus.bit_length() < MIN_MODULUS_BITS:
            raise ValueError(f"VDF modulus must be at least {MIN_MODULUS_BITS} bits")


def modulus_bits_for(security_bits: int) -> int:
    """Smallest standard RSA modulus size reaching ``security_bits``."""
    for strength, bits in _MODULUS_BITS_BY_SECURITY:
        if security_bits <= strength:
            return bits
    raise ValueError(f"Unsupported security level: {security_bits} bits")


def setup(security_bits: int = 112) -> GroupParameters:
    """
    Generate fresh group parameters.

    The modulus is the public half of a new RSA key. The private key, and with
    it the factorization, is dropped before returning.
    """
    key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=modulus_bits_for(security_bits),
    )
    modulus = key.public_key().public_numbers().n
    return GroupParameters(modulus=modulus, security_bits=security_bits)


def is_valid_difficulty(difficulty: int) -> bool:
    return isinstance(difficulty, int) and MIN_DIFFICULTY <= difficulty <= MAX_DIFFICULTY


def proof_length(difficulty: int) -> int:
    """Number of midpoints carried by a proof for ``difficulty`` squarings."""
    if not is_valid_difficulty(difficulty):
        raise InvalidEncoding(f"Difficulty out of range: {difficulty}")
    t = difficulty
    rounds = 0
    while t > 1:
        t = (t - t % 2) // 2
        rounds += 1
    return rounds


# ---------------------------------------------------------------------------
# Group arithmetic
# ---------------------------------------------------------------------------


def _canonical(value: int, n: int) -> int:
    v = value % n
    return min(v, n - v)


def _mul(a: int, b: int, n: int) -> int:
    return _canonical(a * b, n)


def _exp(base: int, exponent: int, n: int) -> int:
    return _canonical(pow(base, exponent, n), n)


def _square(x: int, times: int, n: int) -> int:
    for _ in range(times):
        x = x * x % n
    return _canonical(x, n)


def _check_element(value: int, n: int) -> None:
    if not 0 < value <= n // 2:
        raise InvalidElement("Element is not in canonical form")
    if math.gcd(value, n) != 1:
        raise InvalidElement("Element is not a unit")


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _frame(*chunks: bytes) -> bytes:
    """Length-prefix each chunk so concatenations are unambiguous."""
    out = bytearray()
    for chunk in chunks:
        out += len(chunk).to_bytes(8, "big")
        out += chunk
    return bytes(out)


def _element_bytes(value: int, width: int) -> bytes:
    return value.to_bytes(width, "big")


def hash_to_element(params: GroupParameters, seed: bytes) -> int:
    """Map a challenge seed to a group element."""
    n = params.modulus
    width = params.element_size
    material = _frame(_DOMAIN + b"/seed", _element_bytes(n, width), seed)
    # 128 extra bits keep the reduction mod N close to uniform
    digest = hashlib.shake_256(material).digest(width + 16)
    x = _canonical(int.from_bytes(digest, "big"), n)
    _check_element(x, n)
    return x


def _round_challenge(params: GroupParameters, x: int, y: int, mu: int, t: int) -> int:
    width = params.element_size
    material = _frame(
        _DOMAIN + b"/round",
        _element_bytes(params.modulus, width),
        _element_bytes(x, width),
        _element_bytes(y, width),
        _element_bytes(mu, width),
        t.to_bytes(8, "big"),
    )
    digest = hashlib.sha256(material).digest()
    return int.from_bytes(digest[: CHALLENGE_BITS // 8], "big")


# ---------------------------------------------------------------------------
# Evaluate / verify
# ---------------------------------------------------------------------------


def evaluate(params: GroupParameters, seed: bytes, difficulty: int) -> tuple[int, list[int]]:
    """
    Compute the delayed output and its proof midpoints.

    This is the client's work: ``difficulty`` sequential squarings for the
    output, and about as many again for the midpoints.
    """
    if not is_valid_difficulty(difficulty):
        raise InvalidEncoding(f"Difficulty out of range: {difficulty}")
    n = params.modulus
    x = hash_to_element(params, seed)
    y = _square(x, difficulty, n)
    output = y

    midpoints = []
    t = difficulty
    while t > 1:
        if t % 2:
            x = _square(x, 1, n)
            t -= 1
        half = t // 2
        mu = _square(x, half, n)
        r = _round_challenge(params, x, y, mu, t)
        x = _mul(_exp(x, r, n), mu, n)
        y = _mul(_exp(mu, r, n), y, n)
        midpoints.append(mu)
        t = half
    return output, midpoints


def verify(
    params: GroupParameters,
    seed: bytes,
    difficulty: int,
    output: int,
    midpoints: list[int],
) -> bool:
    """
    Check that ``output == H(seed)^(2^difficulty)`` using the midpoints.

    Raises :class:`InvalidEncoding` for a wrong midpoint count and
    :class:`InvalidElement` for values outside the group.
    """
    if len(midpoints) != proof_length(difficulty):
        raise InvalidEncoding("Wrong number of proof midpoints")
    n = params.modulus
    x = hash_to_element(params, seed)
    _check_element(output, n)
    y = output

    t = difficulty
    for mu in midpoints:
        _check_element(mu, n)
        if t % 2:
            x = _square(x, 1, n)
            t -= 1
        r = _round_challenge(params, x, y, mu, t)
        x = _mul(_exp(x, r, n), mu, n)
        y = _mul(_exp(mu, r, n), y, n)
        t //= 2

    width = params.element_size
    expected = _square(x, t, n)
    return hmac.compare_digest(_element_bytes(y, width), _element_bytes(expected, width))


def encode_proof(params: GroupParameters, output: int, midpoints: list[int]) -> bytes:
    width = params.element_size
    return b"".join(_element_bytes(value, width) for value in (output, *midpoints))


def decode_proof(params: GroupParameters, difficulty: int, data: bytes) -> tuple[int, list[int]]:
    """Split proof bytes into the output and midpoints."""
    width = params.element_size
    expected = (1 + proof_length(difficulty)) * width
    if not isinstance(data, (bytes, bytearray)) or len(data) != expected:
        raise InvalidEncoding(f"Proof must be exactly {expected} bytes")
    values = [int.from_bytes(data[i : i + width], "big") for i in range(0, expected, width)]
    if any(value >= params.modulus for value in values):
        raise InvalidElement("Element is not reduced modulo N")
    return values[0], values[1:]


def prove(params: GroupParameters, seed: bytes, difficulty: int) -> bytes:
    """Evaluate and encode in one step."""
    output, midpoints = evaluate(params, seed, difficulty)
    return encode_proof(params, output, midpoints)


def check_proof(params: GroupParameters, seed: bytes, difficulty: int, data: bytes) -> None:
    """Decode and verify wire proof bytes. Raises a :class:`CryptoError` subclass on failure."""
    output, midpoints = decode_proof(params, difficulty, data)
    if not verify(params, seed, difficulty, output, midpoints):
        raise ProofRejected("Proof does not verify")


def is_valid_proof(params: GroupParameters, seed: bytes, difficulty: int, data: bytes) -> bool:
    try:
        check_proof(params, seed, difficulty, data)
    except CryptoError:
        return False
    return True
