from __future__ import annotations

import logging
import time as _time
from typing import Callable, Literal, Protocol

from pydantic import BaseModel, ConfigDict

from .config import Composition, NarrationLine, Note
from .timeline import TimelineIndex, progress

_LOGGER = logging.getLogger("echodepict.playback")

TransportState = Literal["stopped", "started", "paused"]


class PlaybackClock(Protocol):
    """Monotonic playback time source; the only writer of the current time."""

    @property
    def seconds(self) -> float: ...

    @property
    def is_running(self) -> bool: ...


class TransportClock:
    """Start/pause/seek transport over a monotonic time function.

    Time never runs past ``duration``; reaching it marks the transport as
    ended and stops it.
    """

    def __init__(
        self,
        duration: float,
        *,
        now: Callable[[], float] = _time.monotonic,
    ) -> None:
        self._duration = max(0.0, float(duration))
        self._now = now
        self._state: TransportState = "stopped"
        self._offset = 0.0
        self._started_at = 0.0

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def state(self) -> TransportState:
        self._clamp()
        return self._state

    @property
    def is_running(self) -> bool:
        return self.state == "started"

    @property
    def ended(self) -> bool:
        return self.seconds >= self._duration

    @property
    def seconds(self) -> float:
        self._clamp()
        if self._state != "started":
            return self._offset
        return min(self._duration, self._offset + (self._now() - self._started_at))

    def start(self) -> None:
        if self._state == "started":
            return
        if self._offset >= self._duration:
            self._offset = 0.0
        self._started_at = self._now()
        self._state = "started"

    def pause(self) -> None:
        if self._state != "started":
            return
        self._offset = self.seconds
        self._state = "paused"

    def stop(self) -> None:
        self._state = "stopped"
        self._offset = 0.0

    def seek(self, seconds: float) -> None:
        target = min(self._duration, max(0.0, float(seconds)))
        self._offset = target
        if self._state == "started":
            self._started_at = self._now()

    def _clamp(self) -> None:
        if self._state != "started":
            return
        elapsed = self._offset + (self._now() - self._started_at)
        if elapsed >= self._duration:
            self._offset = self._duration
            self._state = "stopped"


class PlaybackFrame(BaseModel):
    """What every consumer sees for one tick of the playback clock."""

    time: float
    progress: float
    note: Note | None = None
    narration_line: NarrationLine | None = None
    narration_index: int | None = None
    ended: bool = False

    model_config = ConfigDict(frozen=True, extra="forbid")


class PlaybackSession:
    """Pairs one composition with one clock and answers per-tick queries."""

    def __init__(
        self,
        composition: Composition,
        clock: PlaybackClock | None = None,
        *,
        on_ended: Callable[[], None] | None = None,
    ) -> None:
        self._index = TimelineIndex(composition)
        self._clock: PlaybackClock = clock or TransportClock(composition.duration)
        self._on_ended = on_ended
        self._ended_fired = False

    @property
    def clock(self) -> PlaybackClock:
        return self._clock

    @property
    def index(self) -> TimelineIndex:
        return self._index

    def frame_at(self, time: float) -> PlaybackFrame:
        duration = self._index.duration
        narration_index = self._index.active_narration_index(time)
        return PlaybackFrame(
            time=time,
            progress=progress(time, duration),
            note=self._index.active_note(time),
            narration_line=(
                None if narration_index is None else self._index.narration[narration_index]
            ),
            narration_index=narration_index,
            ended=time >= duration,
        )

    def tick(self) -> PlaybackFrame:
        frame = self.frame_at(self._clock.seconds)
        if frame.ended and not self._ended_fired:
            self._ended_fired = True
            if self._on_ended is not None:
                try:
                    self._on_ended()
                except Exception as exc:
                    _LOGGER.warning("Playback on_ended hook failed: %s", exc, exc_info=True)
        elif not frame.ended:
            self._ended_fired = False
        return frame
