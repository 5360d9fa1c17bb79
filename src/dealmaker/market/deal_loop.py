from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Protocol

from dealmaker.config import DealMakerConfig
from dealmaker.errors import Cancelled, DealMakerError, SourceUnavailable
from dealmaker.market.asks import AskLister, AskSource
from dealmaker.market.deals import DealOutcome
from dealmaker.market.selector import select_asks
from dealmaker.metrics import inc_counter, set_gauge
from dealmaker.node.schemas import Ask
from dealmaker.structured_logging import log_event


log = logging.getLogger("dealmaker.deal_loop")

Json = Dict[str, Any]


class Executor(Protocol):
    def execute(self, ask: Ask) -> DealOutcome: ...


class DealLoop:
    """Poll asks, execute one deal per selected miner, repeat until cancelled.

    A round is Polling (fetch + select) followed by Executing (each selected
    ask in turn). When nothing qualifies the loop sleeps the idle interval
    before polling again. A failed ask listing abandons the round without
    sleeping. A failed deal only abandons that ask.
    """

    def __init__(
        self,
        cfg: DealMakerConfig,
        node: AskLister,
        executor: Executor,
        *,
        cancel: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.cfg = cfg
        self._cancel = cancel or threading.Event()
        self._source = AskSource(node, cancel=self._cancel)
        self._executor = executor
        self._sleep = sleep or self._cancel.wait
        self._allowlist = cfg.allowlist

        self._running = False
        self._rounds = 0
        self._last_round: Json = {}
        self._consecutive_failures = 0
        self._last_error = ""

    @property
    def cancel(self) -> threading.Event:
        return self._cancel

    @property
    def rounds(self) -> int:
        return self._rounds

    def stop(self) -> None:
        self._cancel.set()

    def status(self) -> Json:
        return {
            "running": self._running,
            "rounds": self._rounds,
            "last_round": dict(self._last_round),
            "last_error": self._last_error,
            "consecutive_failures": self._consecutive_failures,
            "miners": sorted(self._allowlist),
        }

    def run_round(self) -> Json:
        self._rounds += 1
        inc_counter("rounds_total", 1)
        stats: Json = {
            "ok": True,
            "round": self._rounds,
            "asks_seen": 0,
            "decode_errors": 0,
            "selected": 0,
            "attempted": 0,
            "completed": 0,
            "failed": 0,
            "idle": False,
        }

        # Polling
        try:
            selected = select_asks(self._source.fetch(), self._allowlist)
        except SourceUnavailable as e:
            inc_counter("ask_source_errors_total", 1)
            log_event(log, "ask_source_unavailable", level=logging.ERROR, round=self._rounds, code=e.code, error=str(e))
            stats["ok"] = False
            stats["error"] = e.code
            return stats
        finally:
            stats["asks_seen"] = self._source.last_seen
            stats["decode_errors"] = self._source.last_decode_errors

        stats["selected"] = len(selected)
        set_gauge("selected_asks", len(selected))

        if self._cancel.is_set():
            raise Cancelled("poll")

        if not selected:
            stats["idle"] = True
            inc_counter("idle_rounds_total", 1)
            log_event(log, "no_eligible_asks", round=self._rounds, idle_s=self.cfg.idle_interval_s)
            self._sleep(self.cfg.idle_interval_s)
            return stats

        # Executing
        for miner, ask in selected.items():
            if self._cancel.is_set():
                raise Cancelled("execute")
            stats["attempted"] += 1
            try:
                self._executor.execute(ask)
            except Cancelled:
                raise
            except DealMakerError as err:
                stats["failed"] += 1
                inc_counter("deals_failed_total", 1)
                log_event(
                    log,
                    "deal_failed",
                    level=logging.WARNING,
                    round=self._rounds,
                    miner=miner,
                    ask_id=ask.id,
                    code=err.code,
                    error=str(err),
                )
                continue
            except Exception:
                stats["failed"] += 1
                inc_counter("deals_failed_total", 1)
                log.exception("deal with %s (ask %s) failed unexpectedly", miner, ask.id)
                continue
            stats["completed"] += 1

        log_event(log, "round_complete", **stats)
        return stats

    def _mark_error(self, err: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = f"round:{type(err).__name__}:{err}"
        inc_counter("round_errors_total", 1)
        set_gauge("round_consecutive_failures", self._consecutive_failures)
        log.exception("deal loop round error failures=%s", self._consecutive_failures)

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self._last_error:
            return
        self._consecutive_failures = 0
        self._last_error = ""
        set_gauge("round_consecutive_failures", 0)

    def run(self) -> int:
        """Run rounds until cancelled (or a single round with cfg.once). Returns rounds run."""
        self._running = True
        log_event(log, "deal_loop_started", miners=sorted(self._allowlist), network=self.cfg.network)
        try:
            while not self._cancel.is_set():
                try:
                    self._last_round = self.run_round()
                    self._clear_error()
                except Cancelled:
                    break
                except Exception as err:
                    self._mark_error(err)
                if self.cfg.once:
                    break
        finally:
            self._running = False
            log_event(log, "deal_loop_stopped", rounds=self._rounds, cancelled=self._cancel.is_set())
        return self._rounds
