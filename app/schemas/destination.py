"""
Recipient destination — a tagged union discriminated on ``kind``.

    phone    mobile-money wallet (M-Pesa, MTN MoMo, Airtel ...)
    till     M-Pesa Buy Goods till number
    paybill  M-Pesa Paybill number + account reference
    bank     bank account number + bank code
"""

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class PhoneDestination(BaseModel):
    kind: Literal["phone"] = "phone"
    phone_number: str = Field(..., examples=["254712345678"])
    mobile_network: str | None = Field(None, examples=["Safaricom"])

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        digits = re.sub(r"\D", "", v)
        if not re.match(r"^\d{9,15}$", digits):
            raise ValueError("Phone number must be 9-15 digits")
        return digits


class TillDestination(BaseModel):
    kind: Literal["till"] = "till"
    till_number: str = Field(..., examples=["5123456"])

    @field_validator("till_number")
    @classmethod
    def validate_till(cls, v: str) -> str:
        if not re.match(r"^\d{5,8}$", v.strip()):
            raise ValueError("Till number must be 5-8 digits")
        return v.strip()


class PaybillDestination(BaseModel):
    kind: Literal["paybill"] = "paybill"
    paybill_number: str = Field(..., examples=["247247"])
    account_number: str = Field(..., min_length=1, max_length=64)

    @field_validator("paybill_number")
    @classmethod
    def validate_paybill(cls, v: str) -> str:
        if not re.match(r"^\d{5,7}$", v.strip()):
            raise ValueError("Paybill number must be 5-7 digits")
        return v.strip()


class BankDestination(BaseModel):
    kind: Literal["bank"] = "bank"
    account_number: str = Field(..., examples=["0123456789"])
    bank_code: str = Field(..., min_length=1, max_length=32)
    bank_name: str | None = Field(None, max_length=100)

    @field_validator("account_number")
    @classmethod
    def validate_account(cls, v: str) -> str:
        digits = re.sub(r"\D", "", v)
        if not re.match(r"^\d{6,20}$", digits):
            raise ValueError("Account number must be 6-20 digits")
        return digits


Destination = Annotated[
    Union[PhoneDestination, TillDestination, PaybillDestination, BankDestination],
    Field(discriminator="kind"),
]

_destination_adapter = TypeAdapter(Destination)


def parse_destination(data: dict) -> PhoneDestination | TillDestination | PaybillDestination | BankDestination:
    """Validate a plain dict into the matching Destination member."""
    return _destination_adapter.validate_python(data)
