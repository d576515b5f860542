"""Fair division of a byte budget among competing sessions."""

from __future__ import annotations

from collections.abc import Sequence

__all__ = ["balance"]


def balance(sizes: Sequence[int], budget: int) -> list[int]:
    """Share ``budget`` among ``sizes`` without giving any entry more than it asks.

    The budget is handed out in equal rounds; entries that are satisfied drop
    out and the remainder goes to the others. Returns the share for each
    entry, in the same order as ``sizes``.
    """
    wanted = list(sizes)
    given = [0] * len(wanted)
    order = list(range(len(wanted)))
    remaining = budget
    active = len(wanted)

    while remaining and active:
        step = remaining // active
        if step == 0 and remaining % active:
            step = 1

        i = 0
        while i < active:
            room = wanted[i] - given[i]
            used = min(room, step)
            if remaining <= 1 and used:
                given[i] += 1
                return _restore(given, order)
            if remaining > 1:
                given[i] += used
                remaining -= used

            if used == room:
                active -= 1
                for column in (wanted, given, order):
                    column[i], column[active] = column[active], column[i]
                continue
            i += 1

    return _restore(given, order)


def _restore(given: list[int], order: list[int]) -> list[int]:
    result = [0] * len(given)
    for share, index in zip(given, order):
        result[index] = share
    return result