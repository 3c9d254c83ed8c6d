"""Drive a :class:`KeyDecoder` from recorded key edges in virtual time."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .code_table import DEFAULT_CODE_TABLE, CodeTable, Signal, code_to_signals
from .decoder import DecoderSnapshot, KeyDecoder
from .timer import VirtualTimer

LOGGER = logging.getLogger(__name__)

_WORD_SPLIT = re.compile(r"\s+")


@dataclass(frozen=True)
class KeyEdge:
    """A key transition at ``time_ms``; ``pressed`` is true for key-down."""

    time_ms: int
    pressed: bool


@dataclass(frozen=True)
class KeyingTiming:
    """Durations used when laying out edges for a known message.

    Gaps are measured from a release to the following press.
    """

    dot_ms: int = 60
    dash_ms: int = 300
    element_gap_ms: int = 100
    letter_gap_ms: int = 900
    word_gap_ms: int = 1600

    def __post_init__(self) -> None:
        for name in ("dot_ms", "dash_ms", "element_gap_ms", "letter_gap_ms", "word_gap_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


def edges_for_signals(
    signals: Sequence[Signal] | str,
    *,
    start_ms: int = 0,
    timing: Optional[KeyingTiming] = None,
) -> List[KeyEdge]:
    """Lay out press/release edges keying ``signals`` as one letter."""

    timing = timing or KeyingTiming()
    if isinstance(signals, str):
        signals = code_to_signals(signals)
    edges: List[KeyEdge] = []
    cursor = start_ms
    for index, signal in enumerate(signals):
        if index:
            cursor += timing.element_gap_ms
        edges.append(KeyEdge(cursor, True))
        cursor += timing.dash_ms if signal is Signal.DASH else timing.dot_ms
        edges.append(KeyEdge(cursor, False))
    return edges


def edges_for_text(
    text: str,
    *,
    start_ms: int = 0,
    timing: Optional[KeyingTiming] = None,
    code_table: CodeTable = DEFAULT_CODE_TABLE,
) -> List[KeyEdge]:
    """Lay out edges that key ``text`` with the given timing.

    Runs of whitespace become a single word gap.  Characters missing from
    ``code_table`` raise :class:`ValueError`.
    """

    timing = timing or KeyingTiming()
    edges: List[KeyEdge] = []
    cursor = start_ms
    words = [word for word in _WORD_SPLIT.split(text.strip()) if word]
    for word in words:
        for letter_index, character in enumerate(word):
            code = code_table.encode(character)
            if code is None:
                raise ValueError(f"Character {character!r} has no Morse code")
            if edges:
                gap = timing.letter_gap_ms if letter_index else timing.word_gap_ms
                cursor = edges[-1].time_ms + gap
            edges.extend(edges_for_signals(code, start_ms=cursor, timing=timing))
    return edges


def replay_edges(
    decoder: KeyDecoder,
    timer: VirtualTimer,
    edges: Iterable[KeyEdge],
    *,
    settle: bool = True,
) -> DecoderSnapshot:
    """Feed ``edges`` to ``decoder`` advancing ``timer`` to each edge first.

    With ``settle`` the timer then runs until no deadline is pending, so the
    returned snapshot reflects the decoder after the key has gone quiet.
    """

    count = 0
    for edge in edges:
        timer.advance_to(max(edge.time_ms, timer.now()))
        if edge.pressed:
            decoder.press_down(edge.time_ms)
        else:
            decoder.press_up(edge.time_ms)
        count += 1
    if settle:
        timer.run_until_idle()
    LOGGER.debug("Replayed %s edges into %s", count, decoder.name)
    return decoder.snapshot()


def decode_edges(
    edges: Iterable[KeyEdge],
    *,
    start_ms: int = 0,
    code_table: Optional[CodeTable] = None,
    **thresholds: int,
) -> DecoderSnapshot:
    """Decode ``edges`` with a throwaway decoder running on virtual time."""

    timer = VirtualTimer(start_ms)
    decoder = KeyDecoder(timer=timer, code_table=code_table, **thresholds)
    return replay_edges(decoder, timer, edges)


__all__ = [
    "KeyEdge",
    "KeyingTiming",
    "decode_edges",
    "edges_for_signals",
    "edges_for_text",
    "replay_edges",
]
