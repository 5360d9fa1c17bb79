from __future__ import annotations

import logging
import threading
from typing import Iterator, Optional, Protocol

from dealmaker.errors import AskDecodeError, NodeCommandError, SourceUnavailable
from dealmaker.metrics import inc_counter
from dealmaker.node.codec import AskStreamDecoder
from dealmaker.node.schemas import Ask
from dealmaker.structured_logging import log_event


log = logging.getLogger("dealmaker.asks")


class AskLister(Protocol):
    def client_list_asks(self) -> AskStreamDecoder: ...


class AskSource:
    """Reads the node's standing asks, one decode stream per fetch().

    Counters for the most recent fetch are kept on the instance so a round
    can report how many elements were seen and how many failed to decode.
    """

    def __init__(self, node: AskLister, *, cancel: Optional[threading.Event] = None) -> None:
        self._node = node
        self._cancel = cancel
        self.last_seen = 0
        self.last_decode_errors = 0

    def fetch(self) -> Iterator[Ask]:
        """Open the stream now; decode lazily.

        Raises SourceUnavailable immediately when the stream cannot be opened.
        The returned iterator is finite and cannot be restarted.
        """
        self.last_seen = 0
        self.last_decode_errors = 0
        try:
            decoder = self._node.client_list_asks()
        except NodeCommandError as e:
            raise SourceUnavailable("ask_source_unavailable", f"failed to list asks: {e}") from e
        return self._iter(decoder)

    def _iter(self, decoder: AskStreamDecoder) -> Iterator[Ask]:
        with decoder:
            while True:
                if self._cancel is not None and self._cancel.is_set():
                    return
                try:
                    ask = decoder.decode()
                except EOFError:
                    return
                except AskDecodeError as e:
                    self.last_decode_errors += 1
                    inc_counter("asks_decode_errors_total", 1)
                    log_event(log, "ask_decode_error", level=logging.WARNING, code=e.code, error=str(e), raw=e.raw)
                    continue
                except NodeCommandError as e:
                    # Nothing decoded yet means the listing never got going.
                    if self.last_seen == 0 and self.last_decode_errors == 0:
                        raise SourceUnavailable("ask_source_unavailable", f"failed to list asks: {e}") from e
                    log_event(log, "ask_stream_aborted", level=logging.WARNING, code=e.code, error=str(e))
                    return

                self.last_seen += 1
                inc_counter("asks_seen_total", 1)
                yield ask


def fetch_asks(node: AskLister, *, cancel: Optional[threading.Event] = None) -> Iterator[Ask]:
    return AskSource(node, cancel=cancel).fetch()
