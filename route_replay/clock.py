"""Playback clock: maps wall time to trajectory time.

The clock is a small state machine (idle, playing, paused with a reason,
seeking) advanced only by :meth:`PlaybackClock.tick`, which a single
cooperative loop calls repeatedly. Other components never write its state;
the camera controller communicates through a :class:`FramingSignal`.
"""

from __future__ import annotations

import logging
import time
from bisect import bisect_left, bisect_right, insort
from dataclasses import dataclass
from typing import Callable, Sequence

from route_replay.camera import FramingSignal
from route_replay.models import ClockPhase, PauseReason, PlaybackState

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3_600_000.0


@dataclass(frozen=True, slots=True)
class ClockParams:
    """Playback timing parameters."""

    # Wall seconds needed to play one hour of trajectory time.
    rate_seconds_per_hour: float = 5.0
    event_dwell_s: float = 1.0

    def __post_init__(self) -> None:
        if self.rate_seconds_per_hour <= 0:
            raise ValueError("rate_seconds_per_hour must be positive")
        if self.event_dwell_s < 0:
            raise ValueError("event_dwell_s must not be negative")


class PlaybackClock:
    """Deterministic, scrubbable playback clock for one track.

    Args:
        track_start_ms: First trajectory timestamp.
        track_end_ms: Last trajectory timestamp.
        params: Timing parameters.
        timestamps: Point timestamps used by :meth:`step`.
        framing: Camera busy flag; ticks are skipped while it is set.
        wall_clock: Monotonic seconds source.
    """

    def __init__(
        self,
        track_start_ms: int,
        track_end_ms: int,
        params: ClockParams | None = None,
        *,
        timestamps: Sequence[int] = (),
        framing: FramingSignal | None = None,
        wall_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if track_end_ms < track_start_ms:
            raise ValueError("track_end_ms must not be before track_start_ms")
        self.params = params or ClockParams()
        self.track_start_ms = track_start_ms
        self.track_end_ms = track_end_ms
        self._framing = framing
        self._wall_clock = wall_clock
        self._timestamps = sorted(timestamps)
        self._rate = self.params.rate_seconds_per_hour

        self._current = float(track_start_ms)
        self._phase = ClockPhase.IDLE
        self._reason = PauseReason.NONE
        self._playing = False
        self._anchor_wall = 0.0
        self._anchor_ms = self._current

        self._window: tuple[int, int] | None = None
        self._events: list[int] = []
        self._dwelt: set[int] = set()
        self._dwell_started: float | None = None
        self._active_event: int | None = None

    # ----------------------------------------------------------------- state

    @property
    def current_ms(self) -> float:
        return self._current

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def phase(self) -> ClockPhase:
        return self._phase

    @property
    def window(self) -> tuple[int, int] | None:
        return self._window

    @property
    def sim_ms_per_wall_second(self) -> float:
        return MS_PER_HOUR / self._rate

    @property
    def state(self) -> PlaybackState:
        return PlaybackState(
            current_ms=self._current,
            is_playing=self._playing,
            sim_seconds_per_wall_second=self.sim_ms_per_wall_second / 1000.0,
            pause_reason=self._reason,
            phase=self._phase,
            active_event_ms=self._active_event,
            track_start_ms=self.track_start_ms,
            track_end_ms=self.track_end_ms,
        )

    def _bounds(self) -> tuple[int, int]:
        if self._window is not None:
            return self._window
        return (self.track_start_ms, self.track_end_ms)

    def _now(self, now: float | None) -> float:
        return self._wall_clock() if now is None else now

    def _transition(self, phase: ClockPhase, reason: PauseReason = PauseReason.NONE) -> None:
        if phase != self._phase or reason != self._reason:
            logger.debug("clock %s(%s) -> %s(%s) at %.0f", self._phase.value, self._reason.value, phase.value, reason.value, self._current)
        self._phase = phase
        self._reason = reason

    def _anchor(self, now: float) -> None:
        self._anchor_wall = now
        self._anchor_ms = self._current

    def _cancel_dwell(self) -> None:
        self._dwell_started = None
        self._active_event = None

    # -------------------------------------------------------------- controls

    def play(self, now: float | None = None) -> None:
        """Start or resume playback from the current timestamp."""

        now = self._now(now)
        lo, hi = self._bounds()
        if self._current >= hi or self._current < lo:
            self._current = float(lo)
        self._cancel_dwell()
        self._anchor(now)
        self._playing = True
        self._transition(ClockPhase.PLAYING)

    def pause(self) -> None:
        """User pause; keeps the last committed timestamp."""

        if not self._playing:
            return
        self._playing = False
        self._cancel_dwell()
        self._transition(ClockPhase.PAUSED)

    def stop(self) -> None:
        """Stop playback and return to idle at the last committed timestamp."""

        self._playing = False
        self._cancel_dwell()
        self._transition(ClockPhase.IDLE)

    def seek(self, timestamp_ms: float, now: float | None = None) -> None:
        """Jump to a timestamp, clamped to the track. Cancels any dwell."""

        was_playing = self._playing
        self._transition(ClockPhase.SEEKING)
        self._cancel_dwell()
        target = min(max(float(timestamp_ms), float(self.track_start_ms)), float(self.track_end_ms))
        if self._window is not None and not (self._window[0] <= target <= self._window[1]):
            self._window = None
        self._current = target
        if was_playing:
            self._anchor(self._now(now))
            self._transition(ClockPhase.PLAYING)
        else:
            self._transition(ClockPhase.IDLE)

    def step(self, direction: int) -> None:
        """Pause and move to the next (+1) or previous (-1) point timestamp."""

        if direction not in (1, -1):
            raise ValueError("direction must be +1 or -1")
        self._playing = False
        if not self._timestamps:
            self.seek(self._current)
            return
        if direction > 0:
            i = bisect_right(self._timestamps, self._current)
            target = self._timestamps[i] if i < len(self._timestamps) else self._current
        else:
            i = bisect_left(self._timestamps, self._current) - 1
            target = self._timestamps[i] if i >= 0 else self._current
        self.seek(target)

    def set_rate(self, rate_seconds_per_hour: float, now: float | None = None) -> None:
        if rate_seconds_per_hour <= 0:
            raise ValueError("rate_seconds_per_hour must be positive")
        self._rate = rate_seconds_per_hour
        if self._playing:
            self._anchor(self._now(now))

    def focus_window(self, start_ms: int, end_ms: int, now: float | None = None) -> None:
        """Bound playback to [start_ms, end_ms] (break focus) and jump to its start."""

        lo = max(start_ms, self.track_start_ms)
        hi = min(end_ms, self.track_end_ms)
        if hi < lo:
            raise ValueError("focus window lies outside the track")
        self._window = (lo, hi)
        self.seek(lo, now)

    def clear_focus(self) -> None:
        self._window = None

    def register_event(self, timestamp_ms: int) -> None:
        """Register a significant moment to dwell on during playback."""

        if self.track_start_ms <= timestamp_ms <= self.track_end_ms and timestamp_ms not in self._events:
            insort(self._events, timestamp_ms)

    # ------------------------------------------------------------------ tick

    def tick(self, now: float | None = None) -> PlaybackState:
        """Advance trajectory time to the given wall-clock instant."""

        if not self._playing:
            return self.state
        now = self._now(now)

        if self._dwell_started is not None:
            if now - self._dwell_started < self.params.event_dwell_s:
                return self.state
            self._cancel_dwell()
            self._anchor(now)
            self._transition(ClockPhase.PLAYING)

        if self._framing is not None and self._framing.is_busy(now):
            self._transition(ClockPhase.PAUSED, PauseReason.FRAMING)
            return self.state
        if self._reason is PauseReason.FRAMING:
            self._anchor(now)
            self._transition(ClockPhase.PLAYING)

        target = self._anchor_ms + (now - self._anchor_wall) * self.sim_ms_per_wall_second
        lo, hi = self._bounds()

        event = self._next_event(target)
        if event is not None and event <= hi:
            self._current = float(event)
            self._dwelt.add(event)
            self._active_event = event
            self._dwell_started = now
            self._transition(ClockPhase.PAUSED, PauseReason.EVENT_DWELL)
            return self.state

        if target >= hi:
            self._current = float(hi)
            self._playing = False
            self._transition(ClockPhase.PAUSED, PauseReason.WINDOW_END)
            return self.state

        self._current = max(target, float(lo))
        return self.state

    def _next_event(self, target: float) -> int | None:
        # events at the current instant count; _dwelt keeps each one to a single dwell
        i = bisect_left(self._events, self._current)
        while i < len(self._events) and self._events[i] <= target:
            e = self._events[i]
            if e not in self._dwelt:
                return e
            i += 1
        return None
