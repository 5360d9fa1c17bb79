"""Pydantic models for the JSON the node emits with `--enc=json`.

Field names follow the node's wire keys through aliases; unknown keys are
ignored so newer node builds keep decoding.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def cid_from_wire(v: Any) -> str:
    """CIDs arrive either as plain strings or as IPLD links: {"/": "<cid>"}."""
    if isinstance(v, dict):
        v = v.get("/")
    if v is None:
        return ""
    return str(v).strip()


def _int_from_wire(v: Any) -> Any:
    if isinstance(v, bool):
        raise ValueError("bool is not a valid integer")
    if isinstance(v, str):
        return int(v.strip())
    return v


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class Ask(_WireModel):
    miner: str = Field(..., alias="Miner", min_length=1)
    id: int = Field(..., alias="ID", ge=0)
    price: str = Field(default="0", alias="Price")
    expiry: int = Field(default=0, alias="Expiry")
    error: Optional[str] = Field(default=None, alias="Error")

    @field_validator("id", "expiry", mode="before")
    @classmethod
    def _ints(cls, v: Any) -> Any:
        return _int_from_wire(v)

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v: Any) -> Any:
        if v is None:
            return "0"
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("error", mode="before")
    @classmethod
    def _error(cls, v: Any) -> Any:
        # Go `error` values marshal as {} or null when unset.
        if v is None or v == {} or v == "":
            return None
        return str(v)


class SectorInfo(_WireModel):
    size: int = Field(..., alias="Size", ge=0)
    max_piece_size: int = Field(..., alias="MaxPieceSize", gt=0)

    @field_validator("size", "max_piece_size", mode="before")
    @classmethod
    def _ints(cls, v: Any) -> Any:
        return _int_from_wire(v)


class ProtocolParams(_WireModel):
    network: str = Field(default="", alias="Network")
    auto_seal_interval: int = Field(default=0, alias="AutoSealInterval")
    block_time: int = Field(default=0, alias="BlockTime")
    supported_sectors: List[SectorInfo] = Field(default_factory=list, alias="SupportedSectors")

    @field_validator("auto_seal_interval", "block_time", mode="before")
    @classmethod
    def _ints(cls, v: Any) -> Any:
        return _int_from_wire(v)


class DealState(IntEnum):
    UNSET = 0
    UNKNOWN = 1
    REJECTED = 2
    ACCEPTED = 3
    STARTED = 4
    FAILED = 5
    STAGED = 6
    COMPLETE = 7

    @classmethod
    def from_wire(cls, v: Any) -> "DealState":
        if isinstance(v, DealState):
            return v
        if isinstance(v, bool):
            raise ValueError(f"invalid deal state: {v!r}")
        if isinstance(v, int):
            return cls(v)
        if isinstance(v, str):
            s = v.strip()
            if s.isdigit():
                return cls(int(s))
            try:
                return cls[s.upper()]
            except KeyError:
                raise ValueError(f"unknown deal state: {v!r}") from None
        raise ValueError(f"invalid deal state: {v!r}")

    @property
    def is_terminal_failure(self) -> bool:
        return self in (DealState.REJECTED, DealState.FAILED)


class DealResponse(_WireModel):
    """A storage deal as reported by the client; the deal handle."""

    state: DealState = Field(..., alias="State")
    message: str = Field(default="", alias="Message")
    proposal_cid: str = Field(..., alias="ProposalCid", min_length=1)

    @field_validator("state", mode="before")
    @classmethod
    def _state(cls, v: Any) -> Any:
        return DealState.from_wire(v)

    @field_validator("proposal_cid", mode="before")
    @classmethod
    def _cid(cls, v: Any) -> Any:
        return cid_from_wire(v)

    @field_validator("message", mode="before")
    @classmethod
    def _message(cls, v: Any) -> Any:
        return "" if v is None else str(v)
