"""Timing-driven state machine turning key edges into decoded text.

The decoder consumes ``press_down``/``press_up`` edges stamped in integer
milliseconds.  Each release becomes a :class:`~telegraph_key.code_table.Signal`
(a press longer than ``dot_max_ms`` is a dash), signals accumulate until the
key stays silent for ``letter_gap_ms`` after the last release, and a longer
``word_gap_ms`` silence separates words.  Gap deadlines are delegated to an
injected :class:`~telegraph_key.timer.Timer`; every callback carries the
epoch it was scheduled in and is ignored once a later press or reset has
moved the epoch on.

Word breaks are deferred: the word-gap deadline only marks a space as
pending and the space is written immediately before the next committed
letter, so decoded text never ends with a dangling space.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from threading import RLock
from typing import Callable, List, Optional, Tuple

from .code_table import DEFAULT_CODE_TABLE, MAX_SIGNALS_PER_LETTER, CodeTable, Signal, signals_to_code
from .events import DecoderListener, ListenerRegistry, Subscription
from .timer import Clock, ThreadedTimer, Timer

LOGGER = logging.getLogger(__name__)

DEFAULT_DOT_MAX_MS = 150
DEFAULT_LETTER_GAP_MS = 800
DEFAULT_WORD_GAP_MS = 1500

UNKNOWN_CHARACTER = "?"
WORD_SEPARATOR = " "


class KeyDecoderError(RuntimeError):
    """Base class for errors raised by the key decoder."""


class ConfigurationError(KeyDecoderError, ValueError):
    """Raised when decoder thresholds are invalid."""


class TimerScheduleError(KeyDecoderError):
    """Raised when the timer refuses to schedule a gap deadline."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class DecoderState(str, Enum):
    IDLE = "idle"
    PRESSING = "pressing"
    AWAITING_NEXT = "awaiting_next"


@dataclass(frozen=True)
class Thresholds:
    """Immutable timing thresholds in milliseconds."""

    dot_max_ms: int = DEFAULT_DOT_MAX_MS
    letter_gap_ms: int = DEFAULT_LETTER_GAP_MS
    word_gap_ms: int = DEFAULT_WORD_GAP_MS

    def __post_init__(self) -> None:
        for name in ("dot_max_ms", "letter_gap_ms", "word_gap_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer number of milliseconds")
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if not self.dot_max_ms < self.letter_gap_ms < self.word_gap_ms:
            raise ConfigurationError(
                "Thresholds must satisfy dot_max_ms < letter_gap_ms < word_gap_ms "
                f"(got {self.dot_max_ms}, {self.letter_gap_ms}, {self.word_gap_ms})"
            )


@dataclass(frozen=True)
class DecoderSnapshot:
    buffer: str
    text: str
    state: DecoderState

    def as_dict(self) -> dict:
        return {"buffer": self.buffer, "text": self.text, "state": self.state.value}


@dataclass(frozen=True)
class _Checkpoint:
    state: DecoderState
    buffer: Tuple[Signal, ...]
    text: str
    press_start: Optional[int]
    epoch: int
    pending_space: bool
    outbox_len: int


class KeyDecoder:
    """Decode a Morse key from timed press and release edges.

    All public operations are serialised by a re-entrant lock that is held for
    the whole handling of one event, listener notification included.
    """

    _serials = itertools.count(1)

    def __init__(
        self,
        *,
        dot_max_ms: int = DEFAULT_DOT_MAX_MS,
        letter_gap_ms: int = DEFAULT_LETTER_GAP_MS,
        word_gap_ms: int = DEFAULT_WORD_GAP_MS,
        clock: Optional[Clock] = None,
        timer: Optional[Timer] = None,
        code_table: Optional[CodeTable] = None,
    ) -> None:
        self.thresholds = Thresholds(dot_max_ms, letter_gap_ms, word_gap_ms)

        self._owns_timer = timer is None
        self._timer: Timer = timer if timer is not None else ThreadedTimer(clock)
        self._clock: Clock = clock if clock is not None else self._timer
        self._code_table = code_table if code_table is not None else DEFAULT_CODE_TABLE

        serial = next(self._serials)
        self.name = f"key-decoder-{serial}"
        self._letter_timer_id = f"{self.name}:letter"
        self._word_timer_id = f"{self.name}:word"

        self._lock = RLock()
        self._listeners = ListenerRegistry()
        self._outbox: List[Tuple[str, tuple]] = []

        self._state = DecoderState.IDLE
        self._buffer: List[Signal] = []
        self._text = ""
        self._press_start: Optional[int] = None
        self._epoch = 0
        self._pending_space = False

    @classmethod
    def from_thresholds(cls, thresholds: Thresholds, **collaborators) -> "KeyDecoder":
        return cls(
            dot_max_ms=thresholds.dot_max_ms,
            letter_gap_ms=thresholds.letter_gap_ms,
            word_gap_ms=thresholds.word_gap_ms,
            **collaborators,
        )

    @property
    def state(self) -> DecoderState:
        with self._lock:
            return self._state

    @property
    def buffer(self) -> str:
        with self._lock:
            return signals_to_code(self._buffer)

    @property
    def text(self) -> str:
        with self._lock:
            return self._text

    @property
    def is_pressed(self) -> bool:
        with self._lock:
            return self._state is DecoderState.PRESSING

    @property
    def timer(self) -> Timer:
        return self._timer

    @property
    def code_table(self) -> CodeTable:
        return self._code_table

    def snapshot(self) -> DecoderSnapshot:
        with self._lock:
            return DecoderSnapshot(
                buffer=signals_to_code(self._buffer),
                text=self._text,
                state=self._state,
            )

    def subscribe(self, listener: DecoderListener) -> Subscription:
        return self._listeners.subscribe(listener)

    def press_down(self, t_ms: Optional[int] = None) -> None:
        with self._lock:
            now = self._resolve_time(t_ms)
            if self._state is DecoderState.PRESSING:
                LOGGER.debug("%s: ignoring repeated press at %sms", self.name, now)
                return
            self._epoch += 1
            self._cancel_timers()
            self._press_start = now
            self._transition(DecoderState.PRESSING)

    def press_up(self, t_ms: Optional[int] = None) -> None:
        """End the current press.

        Raises :class:`TimerScheduleError` when the timer cannot schedule the
        gap deadlines; the decoder is then left exactly as it was before the
        release and no events are delivered.
        """

        with self._lock:
            now = self._resolve_time(t_ms)
            if self._state is not DecoderState.PRESSING or self._press_start is None:
                LOGGER.debug("%s: dropping release at %sms without a press", self.name, now)
                return
            checkpoint = self._checkpoint()
            try:
                self._release(now)
            except TimerScheduleError:
                self._restore(checkpoint)
                raise
            self._dispatch()

    def flush(self) -> None:
        """Commit the buffered signals now instead of waiting for the letter gap."""

        with self._lock:
            self._timer.cancel(self._letter_timer_id)
            self._commit_letter()
            self._dispatch()

    def reset(self) -> None:
        with self._lock:
            self._epoch += 1
            self._cancel_timers()
            self._buffer.clear()
            self._text = ""
            self._press_start = None
            self._pending_space = False
            self._transition(DecoderState.IDLE)
            self._queue("reset")
            self._dispatch()

    def close(self) -> None:
        with self._lock:
            self._epoch += 1
            self._cancel_timers()
        if self._owns_timer:
            close = getattr(self._timer, "close", None)
            if callable(close):
                close()

    def __enter__(self) -> "KeyDecoder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _resolve_time(self, t_ms: Optional[int]) -> int:
        return int(self._clock.now() if t_ms is None else t_ms)

    def _release(self, now: int) -> None:
        assert self._press_start is not None
        duration = now - self._press_start
        if duration < 0:
            LOGGER.warning(
                "%s: release at %sms precedes press at %sms; treating as zero length",
                self.name,
                now,
                self._press_start,
            )
            duration = 0
        signal = Signal.DASH if duration > self.thresholds.dot_max_ms else Signal.DOT
        LOGGER.debug("%s: %sms press classified as %s", self.name, duration, signal.name)

        self._press_start = None
        self._buffer.append(signal)
        self._queue("signal_appended", signal, tuple(self._buffer))
        self._transition(DecoderState.AWAITING_NEXT)

        if len(self._buffer) >= MAX_SIGNALS_PER_LETTER:
            self._commit_letter()
        else:
            self._schedule(
                self._letter_timer_id, now + self.thresholds.letter_gap_ms, self._on_letter_gap
            )
        self._schedule(self._word_timer_id, now + self.thresholds.word_gap_ms, self._on_word_gap)

    def _schedule(self, timer_id: str, deadline: int, handler: Callable[[int], None]) -> None:
        try:
            self._timer.schedule(timer_id, deadline, partial(handler, self._epoch))
        except Exception as exc:
            LOGGER.error("%s: failed to schedule %s at %sms: %s", self.name, timer_id, deadline, exc)
            raise TimerScheduleError(f"Could not schedule {timer_id}", cause=exc) from exc
        LOGGER.debug("%s: scheduled %s at %sms", self.name, timer_id, deadline)

    def _cancel_timers(self) -> None:
        self._timer.cancel(self._letter_timer_id)
        self._timer.cancel(self._word_timer_id)

    def _is_stale(self, epoch: int, kind: str) -> bool:
        if epoch == self._epoch:
            return False
        LOGGER.debug(
            "%s: discarding stale %s deadline from epoch %s (now %s)", self.name, kind, epoch, self._epoch
        )
        return True

    def _on_letter_gap(self, epoch: int) -> None:
        with self._lock:
            if self._is_stale(epoch, "letter") or self._state is not DecoderState.AWAITING_NEXT:
                return
            self._commit_letter()
            self._dispatch()

    def _on_word_gap(self, epoch: int) -> None:
        with self._lock:
            if self._is_stale(epoch, "word") or self._state is not DecoderState.AWAITING_NEXT:
                return
            self._commit_letter()
            if self._text and not self._text.endswith(WORD_SEPARATOR):
                self._pending_space = True
            self._transition(DecoderState.IDLE)
            self._dispatch()

    def _commit_letter(self) -> None:
        if not self._buffer:
            return
        signals = tuple(self._buffer)
        self._buffer.clear()

        if len(signals) > self._code_table.longest:
            character = None
        else:
            character = self._code_table.lookup(signals)
        unknown = character is None
        if unknown:
            LOGGER.debug("%s: unrecognised sequence %s", self.name, signals_to_code(signals))
            character = UNKNOWN_CHARACTER

        if self._pending_space:
            self._pending_space = False
            if self._text and not self._text.endswith(WORD_SEPARATOR):
                self._text += WORD_SEPARATOR
                self._queue("word_break")
        self._text += character
        LOGGER.debug("%s: committed %r from %s", self.name, character, signals_to_code(signals))
        self._queue("letter_committed", character, signals)
        if unknown:
            self._queue("unknown_letter", signals)

    def _transition(self, state: DecoderState) -> None:
        if state is not self._state:
            LOGGER.debug("%s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state

    def _queue(self, hook: str, *args: object) -> None:
        self._outbox.append((hook, args))

    def _dispatch(self) -> None:
        while self._outbox:
            hook, args = self._outbox.pop(0)
            self._listeners.emit(hook, *args)

    def _checkpoint(self) -> _Checkpoint:
        return _Checkpoint(
            state=self._state,
            buffer=tuple(self._buffer),
            text=self._text,
            press_start=self._press_start,
            epoch=self._epoch,
            pending_space=self._pending_space,
            outbox_len=len(self._outbox),
        )

    def _restore(self, checkpoint: _Checkpoint) -> None:
        self._cancel_timers()
        del self._outbox[checkpoint.outbox_len :]
        self._state = checkpoint.state
        self._buffer = list(checkpoint.buffer)
        self._text = checkpoint.text
        self._press_start = checkpoint.press_start
        self._epoch = checkpoint.epoch
        self._pending_space = checkpoint.pending_space


__all__ = [
    "ConfigurationError",
    "DecoderSnapshot",
    "DecoderState",
    "KeyDecoder",
    "KeyDecoderError",
    "Thresholds",
    "TimerScheduleError",
    "DEFAULT_DOT_MAX_MS",
    "DEFAULT_LETTER_GAP_MS",
    "DEFAULT_WORD_GAP_MS",
]
