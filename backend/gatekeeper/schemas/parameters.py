from pydantic import BaseModel


class GroupParametersResponse(BaseModel):
    """Public VDF parameters a client needs before solving a challenge."""

    modulus: str  # hex, no prefix
    security_bits: int
    element_size: int
    base_difficulty: int
    max_difficulty: int
    current_difficulty: int
