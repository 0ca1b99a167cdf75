"""
Wallet endpoints — deposit-address assignment per (user, platform).
"""

from fastapi import APIRouter, Depends

from app.api.deps import get_provisioner
from app.schemas.wallet import AssignWalletRequest, AssignWalletResponse
from app.settlement.provisioner import WalletProvisioner

router = APIRouter()


@router.post("/assign", response_model=AssignWalletResponse)
async def assign_wallet(
    payload: AssignWalletRequest,
    provisioner: WalletProvisioner = Depends(get_provisioner),
):
    """
    Return the user's deposit address on this platform, creating one on
    first use. Concurrent first calls all receive the same address.
    """
    assignment = await provisioner.assign(payload.user_id, payload.platform)
    return AssignWalletResponse(
        address=assignment.address,
        resource_id=assignment.resource_id,
        existing=assignment.existing,
    )
