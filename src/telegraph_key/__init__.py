"""Headless decoder for a hand-keyed Morse telegraph.

The :class:`~telegraph_key.decoder.KeyDecoder` class is the main entry point
and can be imported directly::

    from telegraph_key import KeyDecoder, VirtualTimer

    timer = VirtualTimer()
    decoder = KeyDecoder(timer=timer)
    decoder.press_down(0)
    decoder.press_up(50)
    timer.advance_to(850)
    assert decoder.text == "E"

Any event source able to report press and release timestamps in
milliseconds can drive the decoder; rendering and sound are left to
listeners subscribed through :meth:`KeyDecoder.subscribe`.
"""

from __future__ import annotations

from .code_table import (
    DEFAULT_CODE_TABLE,
    MAX_SIGNALS_PER_LETTER,
    MORSE_CODE_TABLE,
    CodeTable,
    Signal,
)
from .decoder import (
    ConfigurationError,
    DecoderSnapshot,
    DecoderState,
    KeyDecoder,
    KeyDecoderError,
    Thresholds,
    TimerScheduleError,
)
from .events import DecoderListener, Subscription
from .replay import KeyEdge, KeyingTiming, decode_edges, edges_for_signals, edges_for_text, replay_edges
from .timer import Clock, MonotonicClock, ThreadedTimer, Timer, VirtualTimer

__all__ = [
    "KeyDecoder",
    "DecoderState",
    "DecoderSnapshot",
    "Thresholds",
    "KeyDecoderError",
    "ConfigurationError",
    "TimerScheduleError",
    "DecoderListener",
    "Subscription",
    "CodeTable",
    "Signal",
    "MORSE_CODE_TABLE",
    "DEFAULT_CODE_TABLE",
    "MAX_SIGNALS_PER_LETTER",
    "Clock",
    "Timer",
    "MonotonicClock",
    "ThreadedTimer",
    "VirtualTimer",
    "KeyEdge",
    "KeyingTiming",
    "decode_edges",
    "edges_for_signals",
    "edges_for_text",
    "replay_edges",
]

__version__ = "0.1.0"
