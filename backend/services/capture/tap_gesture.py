"""Single/double tap disambiguation driven by an injectable clock."""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Optional

Clock = Callable[[], float]


class TapState(str, Enum):
    IDLE = "idle"
    ARMED_FOR_DOUBLE_TAP = "armed_for_double_tap"


class TapEvent(str, Enum):
    SINGLE = "single"
    DOUBLE = "double"


class TapDisambiguator:
    """Decide whether a tap is a single tap (take a photo) or a double tap
    (toggle the document panel).

    A first tap arms a deadline. A second tap before the deadline confirms a
    double tap; otherwise ``poll`` reports a single tap once the deadline has
    passed. While ``photo_mode`` is off, single taps are dropped so the panel
    cannot trigger a capture.
    """

    def __init__(self, double_tap_window: float = 0.3, clock: Optional[Clock] = None) -> None:
        if double_tap_window <= 0:
            raise ValueError("double_tap_window must be positive")
        self.double_tap_window = float(double_tap_window)
        self.clock: Clock = clock or time.monotonic
        self.state = TapState.IDLE
        self.deadline: Optional[float] = None
        self.photo_mode = True

    def tap(self) -> Optional[TapEvent]:
        now = self.clock()
        if self.state is TapState.ARMED_FOR_DOUBLE_TAP and self.deadline is not None:
            if now <= self.deadline:
                self._disarm()
                self.photo_mode = not self.photo_mode
                return TapEvent.DOUBLE
            # Stale arm: the earlier tap timed out before anyone polled
            self._disarm()
            pending = TapEvent.SINGLE if self.photo_mode else None
            self._arm(now)
            return pending
        self._arm(now)
        return None

    def poll(self) -> Optional[TapEvent]:
        if self.state is not TapState.ARMED_FOR_DOUBLE_TAP or self.deadline is None:
            return None
        if self.clock() <= self.deadline:
            return None
        self._disarm()
        return TapEvent.SINGLE if self.photo_mode else None

    def _arm(self, now: float) -> None:
        self.state = TapState.ARMED_FOR_DOUBLE_TAP
        self.deadline = now + self.double_tap_window

    def _disarm(self) -> None:
        self.state = TapState.IDLE
        self.deadline = None
