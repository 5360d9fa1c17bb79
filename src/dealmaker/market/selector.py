from __future__ import annotations

from typing import AbstractSet, Dict, Iterable

from dealmaker.node.schemas import Ask


def select_asks(asks: Iterable[Ask], allowlist: AbstractSet[str]) -> Dict[str, Ask]:
    """Reduce one poll's asks to at most one ask per allowlisted miner.

    Asks from miners outside the allowlist are dropped. When a miner has
    several asks, the one with the LOWEST id is kept; a later ask with an equal
    or higher id never replaces the recorded one.
    """
    selected: Dict[str, Ask] = {}
    for ask in asks:
        miner = ask.miner
        if miner not in allowlist:
            continue

        current = selected.get(miner)
        if current is not None and ask.id >= current.id:
            continue

        selected[miner] = ask
    return selected
