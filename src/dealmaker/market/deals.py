from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional, Protocol, Tuple

from dealmaker.config import DEFAULT_DEAL_DURATION
from dealmaker.errors import Cancelled, DealFailed, StartupError
from dealmaker.metrics import inc_counter
from dealmaker.market.payload import RandomPayload
from dealmaker.node.schemas import Ask, DealResponse, DealState, ProtocolParams
from dealmaker.structured_logging import log_event


log = logging.getLogger("dealmaker.deals")


class StorageClient(Protocol):
    def protocol(self) -> ProtocolParams: ...

    def client_import(self, data: BinaryIO) -> str: ...

    def client_propose_storage_deal(self, miner: str, data_cid: str, ask_id: int, duration: int) -> DealResponse: ...

    def client_query_storage_deal(self, proposal_cid: str) -> DealResponse: ...


@dataclass(frozen=True)
class DealOutcome:
    ask: Ask
    data_cid: str
    deal: DealResponse
    state: DealState
    duration_ms: int


class DealExecutor:
    """Stores one random payload under one ask and waits for the deal to complete.

    Protocol parameters are read from the node on first use and cached for the
    executor's lifetime. There is no retry: any failure propagates to the
    caller and the ask is abandoned for the round.
    """

    def __init__(
        self,
        node: StorageClient,
        *,
        duration: int = DEFAULT_DEAL_DURATION,
        poll_s: float = 5.0,
        timeout_s: float = 0.0,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._node = node
        self.duration = int(duration)
        self.poll_s = float(poll_s)
        self.timeout_s = float(timeout_s)
        self._cancel = cancel or threading.Event()
        self._clock = clock
        self._params: Optional[ProtocolParams] = None

    def protocol_params(self) -> ProtocolParams:
        if self._params is None:
            self._params = self._node.protocol()
        return self._params

    def max_piece_size(self) -> int:
        params = self.protocol_params()
        if not params.supported_sectors:
            raise StartupError("no_supported_sectors", "protocol parameters list no supported sectors")
        return int(params.supported_sectors[0].max_piece_size)

    def import_and_store(self, ask: Ask, data: BinaryIO) -> Tuple[str, DealResponse]:
        data_cid = self._node.client_import(data)
        deal = self._node.client_propose_storage_deal(ask.miner, data_cid, ask.id, self.duration)
        inc_counter("deals_proposed_total", 1)
        log_event(
            log,
            "deal_proposed",
            miner=ask.miner,
            ask_id=ask.id,
            data_cid=data_cid,
            proposal_cid=deal.proposal_cid,
            state=deal.state.name,
            duration=self.duration,
        )
        if deal.state.is_terminal_failure:
            raise DealFailed(
                "deal_" + deal.state.name.lower(),
                f"deal {deal.proposal_cid} with {ask.miner} {deal.state.name.lower()}: {deal.message}",
                details=deal.model_dump(),
            )
        return data_cid, deal

    def wait_for_deal_state(self, deal: DealResponse, state: DealState = DealState.COMPLETE) -> DealResponse:
        """Poll the deal until it reaches `state`.

        Raises DealFailed on a terminal failure state or on timeout (when
        timeout_s > 0), and Cancelled if the cancel event is set while waiting.
        """
        deadline = self._clock() + self.timeout_s if self.timeout_s > 0 else None
        current = deal
        last_state: Optional[DealState] = None

        while True:
            if current.state != last_state:
                last_state = current.state
                log_event(log, "deal_state", proposal_cid=current.proposal_cid, state=current.state.name)

            if current.state == state:
                return current
            if current.state.is_terminal_failure:
                raise DealFailed(
                    "deal_" + current.state.name.lower(),
                    f"deal {current.proposal_cid} {current.state.name.lower()}: {current.message}",
                    details=current.model_dump(),
                )
            if deadline is not None and self._clock() >= deadline:
                raise DealFailed(
                    "deal_timeout",
                    f"deal {current.proposal_cid} still {current.state.name.lower()} after {self.timeout_s}s",
                )

            if self._cancel.wait(self.poll_s):
                raise Cancelled("deal_wait")
            current = self._node.client_query_storage_deal(deal.proposal_cid)

    def execute(self, ask: Ask) -> DealOutcome:
        started = self._clock()
        payload = RandomPayload(self.max_piece_size())
        with payload:
            data_cid, deal = self.import_and_store(ask, payload)
        final = self.wait_for_deal_state(deal, DealState.COMPLETE)

        duration_ms = int((self._clock() - started) * 1000)
        inc_counter("deals_completed_total", 1)
        log_event(
            log,
            "deal_complete",
            miner=ask.miner,
            ask_id=ask.id,
            data_cid=data_cid,
            proposal_cid=final.proposal_cid,
            duration_ms=duration_ms,
        )
        return DealOutcome(ask=ask, data_cid=data_cid, deal=final, state=final.state, duration_ms=duration_ms)
