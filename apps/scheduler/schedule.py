# apps/scheduler/schedule.py
#
# ADAPTIVE SCHEDULE ENGINE (pure, no I/O)
#
# One ScheduleState lives per (airport, report kind). The poll loop in
# apps/scheduler/main.py owns them and is the ONLY caller that mutates them.
#
#   should_fetch()   → is this kind due?
#   observe()        → a fetch came back with an issuance timestamp:
#                        - new issuance?            → forward
#                        - arrived before window?   → missed-cycle reset
#                        - remember sample, learn   → learned_period
#                        - advance next_fetch       → learned or fallback
#
# Cadence learning:
#   The upstream republishes on a fixed cadence per station (METAR usually 30
#   or 60 minutes, TAF a few hours). We keep the last LEARN_SAMPLES issuance
#   timestamps, take the smallest positive delta, and accept it as the period
#   only if every other delta is (within LEARN_TOLERANCE_SECONDS) a multiple
#   of it. A skipped cycle therefore still "fits"; random specials do not.
#
# All times are integer epoch seconds (UTC). `now` is always passed in so the
# engine is deterministic under test.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

log = logging.getLogger("avwpulse.schedule")

LEARN_SAMPLES = 5
LEARN_TOLERANCE_SECONDS = 120
SLACK_SECONDS = 60

# fallback interval floor; matches the poll loop's default tick
MIN_INTERVAL_SECONDS = 5


class ReportKind(str, Enum):
    METAR = "metar"   # routine observation
    TAF = "taf"       # forecast

    @property
    def cap_seconds(self) -> int:
        return _CAP_MINUTES[self] * 60

    @property
    def label(self) -> str:
        return self.value.upper()


_CAP_MINUTES = {
    ReportKind.METAR: 35,
    ReportKind.TAF: 65,
}


# =====================================================================
# Sample buffer
# =====================================================================

class SampleBuffer:
    """Bounded FIFO of issuance timestamps, oldest first."""

    def __init__(self, capacity: int = LEARN_SAMPLES, items: Iterable[int] = ()):
        self.capacity = capacity
        self._items: List[int] = []
        for ts in items:
            self.add(ts)

    def add(self, issued: int) -> None:
        if not issued:
            return
        if len(self._items) >= self.capacity:
            del self._items[0]
        self._items.append(int(issued))

    def keep_last(self, n: int) -> None:
        if len(self._items) > n:
            self._items = self._items[-n:]

    @property
    def full(self) -> bool:
        return len(self._items) >= self.capacity

    def deltas(self) -> List[int]:
        """Positive consecutive deltas; out-of-order or repeated samples are skipped."""
        out: List[int] = []
        for prev, cur in zip(self._items, self._items[1:]):
            d = cur - prev
            if d > 0:
                out.append(d)
        return out

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def __repr__(self) -> str:
        return f"SampleBuffer({self._items!r})"


# =====================================================================
# Schedule state
# =====================================================================

@dataclass
class ScheduleState:
    kind: ReportKind
    samples: SampleBuffer = field(default_factory=SampleBuffer)
    learned_period: int = 0   # seconds; 0 = not learned yet
    last_issued: int = 0      # epoch of last accepted issuance; 0 = never
    next_fetch: int = 0       # epoch; 0 = unscheduled, fetch asap

    def snapshot(self) -> dict:
        return {
            "kind": self.kind.value,
            "samples": list(self.samples),
            "learned_period": self.learned_period,
            "last_issued": self.last_issued,
            "next_fetch": self.next_fetch,
        }


@dataclass(frozen=True)
class Observation:
    """What observe() decided for one fetched report."""
    forward: bool
    changed: bool = False
    missed_cycle: bool = False
    learned_period: int = 0
    next_fetch: int = 0


# =====================================================================
# Period learner
# =====================================================================

def _is_consistent(deltas: List[int], base: int) -> bool:
    for d in deltas:
        r = d % base
        if LEARN_TOLERANCE_SECONDS < r < base - LEARN_TOLERANCE_SECONDS:
            return False
    return True


def learn_period(state: ScheduleState, tag: str = "") -> int:
    """
    Derive state.learned_period from the sample buffer.

    Commits only with a full buffer whose deltas are all near-multiples of the
    smallest one; otherwise the previous period sticks. The kind's cap is
    re-applied on every pass.
    """
    if len(state.samples) >= 2:
        deltas = state.samples.deltas()
        if deltas:
            min_delta = min(deltas)
            if state.samples.full and _is_consistent(deltas, min_delta):
                state.learned_period = min_delta
                log.debug("%s %s learned period: %d seconds (%d minutes)",
                          tag, state.kind.label, min_delta, min_delta // 60)

    cap = state.kind.cap_seconds
    if state.learned_period > cap:
        log.debug("%s %s period capped from %d to %d seconds",
                  tag, state.kind.label, state.learned_period, cap)
        state.learned_period = cap
    return state.learned_period


# =====================================================================
# Schedule advancer
# =====================================================================

def advance(state: ScheduleState, default_interval_minutes: int, now: int, tag: str = "") -> int:
    """Compute and store state.next_fetch; always lands after `now`."""
    if state.learned_period > 0 and state.last_issued > 0:
        period = state.learned_period
        nxt = state.last_issued + period
        if nxt <= now:
            # jump straight to the first slot after now
            nxt += ((now - nxt) // period + 1) * period
        state.next_fetch = nxt + SLACK_SECONDS
        log.debug("%s %s next fetch at %d (in %d seconds)",
                  tag, state.kind.label, state.next_fetch, state.next_fetch - now)
    else:
        interval = min(int(default_interval_minutes) * 60, state.kind.cap_seconds)
        interval = max(interval, MIN_INTERVAL_SECONDS)
        state.next_fetch = now + interval
        log.debug("%s %s next fetch in %d seconds (default)", tag, state.kind.label, interval)
    return state.next_fetch


# =====================================================================
# Missed-cycle detector
# =====================================================================

def is_missed_cycle(state: ScheduleState, observed: int) -> bool:
    return state.last_issued != 0 and observed < state.next_fetch - SLACK_SECONDS


def reset_missed(state: ScheduleState, tag: str = "") -> None:
    """Drop all but the last two samples and forget the learned period."""
    if len(state.samples) > 2:
        log.debug("%s %s unexpected timing, reducing samples %d -> 2",
                  tag, state.kind.label, len(state.samples))
        state.samples.keep_last(2)
    state.learned_period = 0


# =====================================================================
# Change detector / fetch decision
# =====================================================================

def should_fetch(state: ScheduleState, now: int) -> bool:
    return state.next_fetch == 0 or now >= state.next_fetch


def observe(
    state: ScheduleState,
    observed: int,
    now: int,
    default_interval_minutes: int,
    forward_all: bool = False,
    learn: bool = True,
    tag: str = "",
) -> Observation:
    """
    Feed one fetched issuance timestamp through the engine.

    observed == 0 means the report had no usable timestamp: nothing changes
    and nothing is forwarded. In forward_all mode everything usable is
    forwarded, and the state is only maintained when learning is on.
    """
    if not observed:
        return Observation(forward=False, learned_period=state.learned_period,
                           next_fetch=state.next_fetch)

    if forward_all and not learn:
        return Observation(forward=True, learned_period=state.learned_period,
                           next_fetch=state.next_fetch)

    changed = False
    missed = False
    if observed != state.last_issued:
        changed = True
        if is_missed_cycle(state, observed):
            missed = True
            reset_missed(state, tag)
        log.debug("%s %s changed: %d -> %d", tag, state.kind.label, state.last_issued, observed)
        if learn:
            state.samples.add(observed)
            learn_period(state, tag)
        state.last_issued = observed
    else:
        log.debug("%s %s unchanged", tag, state.kind.label)

    if learn:
        advance(state, default_interval_minutes, now, tag)

    return Observation(
        forward=changed or forward_all,
        changed=changed,
        missed_cycle=missed,
        learned_period=state.learned_period,
        next_fetch=state.next_fetch,
    )


def new_state(kind: ReportKind, samples: Optional[Iterable[int]] = None) -> ScheduleState:
    return ScheduleState(kind=kind, samples=SampleBuffer(items=samples or ()))
