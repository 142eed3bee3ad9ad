from fastapi import APIRouter, Request

from gatekeeper.schemas.parameters import GroupParametersResponse

router = APIRouter()


@router.get("/parameters", response_model=GroupParametersResponse)
async def get_parameters(request: Request):
    """Group modulus and current difficulty, for clients to precompute against."""
    gate = request.app.state.gate
    policy = gate.difficulty.policy
    return GroupParametersResponse(
        modulus=gate.params.modulus_hex,
        security_bits=gate.params.security_bits,
        element_size=gate.params.element_size,
        base_difficulty=policy.base_difficulty,
        max_difficulty=policy.max_difficulty,
        current_difficulty=policy.current_difficulty,
    )
