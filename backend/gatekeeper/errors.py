"""
Error taxonomy for the gate.

Rejections inside the admission protocol are returned as verdicts, not raised.
These exceptions cover messages a client may not send, decoding and group
faults in the VDF primitive, and internal faults surfaced to the transport as
backpressure.
"""


class GatekeeperError(Exception):
    """Base class for all gate errors."""


class ProtocolError(GatekeeperError):
    """Malformed or out-of-sequence message."""


class CryptoError(GatekeeperError):
    """Base class for VDF decoding and verification failures."""


class InvalidEncoding(CryptoError):
    """Proof bytes or difficulty do not match the expected encoding."""


class InvalidElement(CryptoError):
    """A decoded value is not a canonical unit of the group."""


class ProofRejected(CryptoError):
    """The proof is well formed but does not verify."""


class PolicyError(GatekeeperError):
    """A value violates the configured admission policy."""


class ServiceUnavailable(GatekeeperError):
    """Internal backpressure. Never results in a permit."""


class RandomSourceUnavailable(ServiceUnavailable):
    """The system random source could not produce a seed."""


class VerifierSaturated(ServiceUnavailable):
    """The verification pool has no free slot."""
