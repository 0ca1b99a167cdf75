"""
Pydantic schemas for deposit-wallet assignment.

Field names follow the camelCase the mini-app clients send.
"""

from pydantic import BaseModel, ConfigDict, Field

from app.models.wallet_assignment import Platform


class AssignWalletRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1, max_length=128, examples=["fid:12345"])
    platform: Platform = Field(..., examples=["farcaster"])


class AssignWalletResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str
    resource_id: str | None = Field(None, alias="resourceId")
    existing: bool
