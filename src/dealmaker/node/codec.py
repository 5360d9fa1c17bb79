# src/dealmaker/node/codec.py
from __future__ import annotations

import json
from typing import IO, Any, Callable, Optional, Union

from pydantic import ValidationError

from dealmaker.errors import AskDecodeError
from dealmaker.node.schemas import Ask


def loads_json(data: Union[bytes, str]) -> Any:
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise AskDecodeError("invalid_json", f"invalid json: {e}", raw=_preview(data)) from e
    except UnicodeDecodeError as e:
        raise AskDecodeError("invalid_utf8", f"invalid utf-8: {e}") from e


def _preview(data: Union[bytes, str], limit: int = 200) -> str:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    return data[:limit]


def decode_ask(data: Union[bytes, str]) -> Ask:
    raw = loads_json(data)
    if not isinstance(raw, dict):
        raise AskDecodeError("invalid_ask", "ask must be an object", raw=_preview(data))

    try:
        ask = Ask.model_validate(raw)
    except ValidationError as e:
        raise AskDecodeError("invalid_ask_shape", f"invalid ask shape: {e}", raw=_preview(data)) from e

    # The node reports per-miner lookup failures inline, as an ask with Error set.
    if ask.error:
        raise AskDecodeError("ask_error", f"ask from {ask.miner} carries error: {ask.error}", raw=_preview(data))

    return ask


class AskStreamDecoder:
    """Decode newline-delimited ask records from a text or binary stream.

    decode() returns the next Ask, raises AskDecodeError for a malformed
    element (already consumed, so the next call moves on) and EOFError once
    the stream is exhausted.

    on_eof runs once when the stream is exhausted and may raise to report that
    the producer failed. on_close runs once from close().
    """

    def __init__(
        self,
        stream: IO[Any],
        *,
        on_eof: Optional[Callable[[], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self._stream = stream
        self._on_eof = on_eof
        self._on_close = on_close
        self._eof = False
        self._closed = False

    def decode(self) -> Ask:
        while True:
            line = "" if self._eof else self._stream.readline()
            if not line:
                self._mark_eof()
                raise EOFError("end of ask stream")
            if not line.strip():
                continue
            return decode_ask(line)

    def _mark_eof(self) -> None:
        if self._eof:
            return
        self._eof = True
        if self._on_eof is not None:
            self._on_eof()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        finally:
            if self._on_close is not None:
                self._on_close()

    def __enter__(self) -> "AskStreamDecoder":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
