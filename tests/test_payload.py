from __future__ import annotations

import pytest

from dealmaker.market.payload import RandomPayload


def _payload_bytes(size: int) -> bytes:
    return RandomPayload(size).read()


def test_payload_has_exact_size() -> None:
    for size in (0, 1, 1016, 256 * 1024 + 3):
        assert len(_payload_bytes(size)) == size


def test_chunked_reads_stop_at_size() -> None:
    p = RandomPayload(1000)
    total = 0
    while True:
        chunk = p.read(300)
        if not chunk:
            break
        total += len(chunk)
    assert total == 1000
    assert p.remaining == 0
    assert p.read(10) == b""


def test_payloads_differ() -> None:
    assert _payload_bytes(1016) != _payload_bytes(1016)


def test_negative_size_rejected() -> None:
    with pytest.raises(ValueError):
        RandomPayload(-1)
