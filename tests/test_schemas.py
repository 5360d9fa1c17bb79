from __future__ import annotations

import pytest
from pydantic import ValidationError

from dealmaker.node.schemas import DealResponse, DealState, ProtocolParams, cid_from_wire


def test_cid_from_wire_shapes() -> None:
    assert cid_from_wire({"/": "bafy1"}) == "bafy1"
    assert cid_from_wire(" bafy2 ") == "bafy2"
    assert cid_from_wire(None) == ""


@pytest.mark.parametrize(
    "raw, expected",
    [(7, DealState.COMPLETE), ("7", DealState.COMPLETE), ("complete", DealState.COMPLETE), ("Failed", DealState.FAILED)],
)
def test_deal_state_from_wire(raw, expected: DealState) -> None:
    assert DealState.from_wire(raw) == expected


def test_deal_state_rejects_unknown() -> None:
    with pytest.raises(ValueError):
        DealState.from_wire("sealed-ish")
    with pytest.raises(ValueError):
        DealState.from_wire(True)


def test_terminal_failure_states() -> None:
    assert {s for s in DealState if s.is_terminal_failure} == {DealState.REJECTED, DealState.FAILED}


def test_deal_response_requires_proposal_cid() -> None:
    with pytest.raises(ValidationError):
        DealResponse.model_validate({"State": 3, "ProposalCid": None})


def test_protocol_params_parses_string_sizes() -> None:
    params = ProtocolParams.model_validate(
        {"Network": "devnet-user", "SupportedSectors": [{"Size": "266338304", "MaxPieceSize": "266338296"}], "X": 1}
    )
    assert params.supported_sectors[0].max_piece_size == 266338296
    assert params.supported_sectors[0].size == 266338304


def test_module_docstring_is_attached() -> None:
    from dealmaker.node import schemas

    assert schemas.__doc__ and "--enc=json" in schemas.__doc__
