"""Pydantic v2 schemas for the marketplace escrow listing API."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiEscrow(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: int
    seller: str = ""
    buyer: str = ""
    state: str = ""
    amount: str = "0"
    encrypted_data_ref: str | None = None
    buyer_pubkey: str | None = None

    @field_validator("state", "amount", mode="before")
    @classmethod
    def stringify(cls, v: object) -> object:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class EscrowPage(BaseModel):
    escrows: list[ApiEscrow] = Field(default_factory=list)
