from __future__ import annotations

import threading
from typing import List

import pytest

from dealmaker.config import DealMakerConfig
from dealmaker.errors import Cancelled, DealFailed
from dealmaker.market.deal_loop import DealLoop
from dealmaker.market.deals import DealExecutor
from dealmaker.metrics import get_counter
from dealmaker.node.schemas import Ask
from dealmaker.testing.fake_node import FakeNode, ask_record


def _cfg(*miners: str, once: bool = False) -> DealMakerConfig:
    return DealMakerConfig(network="test", workdir="", binpath="", miners=tuple(miners), idle_interval_s=60.0, once=once)


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> bool:
        self.calls.append(seconds)
        return False


def _loop(node: FakeNode, *miners: str, **kw) -> tuple[DealLoop, _SleepRecorder]:
    sleep = _SleepRecorder()
    executor = kw.pop("executor", None) or DealExecutor(node, poll_s=0.0)
    loop = DealLoop(_cfg(*miners, once=kw.pop("once", False)), node, executor, sleep=sleep, **kw)
    return loop, sleep


def test_round_selects_and_executes_one_deal_per_miner() -> None:
    node = FakeNode(
        ask_rounds=[[ask_record("P1", 5), ask_record("P1", 3), ask_record("P3", 1), ask_record("P2", 9)]]
    )
    loop, sleep = _loop(node, "P1", "P2")

    stats = loop.run_round()

    assert stats["ok"] is True
    assert stats["asks_seen"] == 4
    assert stats["selected"] == 2
    assert stats["completed"] == 2
    assert stats["idle"] is False
    assert sorted((p["miner"], p["ask_id"]) for p in node.proposals) == [("P1", 3), ("P2", 9)]
    assert sleep.calls == []


def test_empty_market_sleeps_idle_interval_without_executing() -> None:
    node = FakeNode(ask_rounds=[[]])
    loop, sleep = _loop(node, "P1")

    stats = loop.run_round()

    assert stats["idle"] is True
    assert stats["attempted"] == 0
    assert sleep.calls == [60.0]
    assert node.proposals == []
    assert node.imports == []


def test_only_unlisted_asks_counts_as_empty() -> None:
    node = FakeNode(ask_rounds=[[ask_record("P9", 1)]])
    loop, sleep = _loop(node, "P1")

    stats = loop.run_round()

    assert stats["idle"] is True
    assert sleep.calls == [60.0]


def test_one_failing_offer_does_not_stop_the_others() -> None:
    node = FakeNode(
        ask_rounds=[[ask_record("P1", 1), ask_record("P2", 1), ask_record("P3", 1)]],
        fail_propose=["P2"],
    )
    loop, _ = _loop(node, "P1", "P2", "P3")

    stats = loop.run_round()

    assert stats["attempted"] == 3
    assert stats["failed"] == 1
    assert stats["completed"] == 2
    assert sorted(node.proposed_miners()) == ["P1", "P3"]
    assert get_counter("deals_failed_total") == 1


class _ExplodingExecutor:
    def __init__(self) -> None:
        self.seen: List[str] = []

    def execute(self, ask: Ask):
        self.seen.append(ask.miner)
        if ask.miner == "P1":
            raise ZeroDivisionError("unexpected")
        if ask.miner == "P2":
            raise DealFailed("deal_failed", "sealing failed")
        return None


def test_unexpected_offer_errors_are_isolated_too() -> None:
    node = FakeNode(ask_rounds=[[ask_record("P1", 1), ask_record("P2", 1), ask_record("P3", 1)]])
    ex = _ExplodingExecutor()
    loop, _ = _loop(node, "P1", "P2", "P3", executor=ex)

    stats = loop.run_round()

    assert sorted(ex.seen) == ["P1", "P2", "P3"]
    assert stats["failed"] == 2
    assert stats["completed"] == 1


def test_source_failure_abandons_round_without_idle_sleep() -> None:
    node = FakeNode(list_failures=1)
    loop, sleep = _loop(node, "P1")

    stats = loop.run_round()

    assert stats["ok"] is False
    assert stats["error"] == "ask_source_unavailable"
    assert sleep.calls == []
    assert get_counter("ask_source_errors_total") == 1


def test_selection_is_rebuilt_every_round() -> None:
    node = FakeNode(ask_rounds=[[ask_record("P1", 3)], [ask_record("P1", 7)]])
    loop, _ = _loop(node, "P1")

    loop.run_round()
    loop.run_round()

    assert [p["ask_id"] for p in node.proposals] == [3, 7]


def test_run_once_runs_a_single_round() -> None:
    node = FakeNode(ask_rounds=[[ask_record("P1", 1)]])
    loop, _ = _loop(node, "P1", once=True)

    assert loop.run() == 1
    assert loop.status()["last_round"]["completed"] == 1
    assert loop.status()["running"] is False


def test_run_continues_after_failed_rounds_until_cancelled() -> None:
    cancel = threading.Event()
    node = FakeNode(list_failures=2, ask_rounds=[[ask_record("P1", 1)]])

    class _StopAfterDeal(DealExecutor):
        def execute(self, ask: Ask):
            out = super().execute(ask)
            cancel.set()
            return out

    loop, _ = _loop(node, "P1", cancel=cancel, executor=_StopAfterDeal(node, poll_s=0.0, cancel=cancel))

    rounds = loop.run()

    assert rounds == 3
    assert node.list_calls == 3
    assert len(node.proposals) == 1


class _BrokenSource(FakeNode):
    def client_list_asks(self):
        self.list_calls += 1
        if self.list_calls == 1:
            raise RuntimeError("decoder exploded")
        return super().client_list_asks()


def test_unexpected_round_fault_is_contained() -> None:
    cancel = threading.Event()
    node = _BrokenSource(ask_rounds=[[]])
    sleep = _SleepRecorder()

    def _sleep_then_stop(seconds: float) -> bool:
        sleep(seconds)
        cancel.set()
        return True

    loop = DealLoop(_cfg("P1"), node, DealExecutor(node, poll_s=0.0), cancel=cancel, sleep=_sleep_then_stop)

    assert loop.run() == 2
    status = loop.status()
    assert status["consecutive_failures"] == 0
    assert status["last_round"]["idle"] is True
    assert get_counter("round_errors_total") == 1


def test_cancel_between_offers_stops_the_round() -> None:
    cancel = threading.Event()
    node = FakeNode(ask_rounds=[[ask_record("P1", 1), ask_record("P2", 1)]])

    class _CancelOnFirst:
        calls = 0

        def execute(self, ask: Ask):
            self.calls += 1
            cancel.set()

    ex = _CancelOnFirst()
    loop, _ = _loop(node, "P1", "P2", cancel=cancel, executor=ex)

    with pytest.raises(Cancelled):
        loop.run_round()

    assert ex.calls == 1
    assert loop.run() == 1
