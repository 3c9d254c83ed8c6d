"""Tests covering the key decoder state machine."""

from __future__ import annotations

import logging
from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from telegraph_key.code_table import CodeTable, Signal
from telegraph_key.decoder import (
    ConfigurationError,
    DecoderState,
    KeyDecoder,
    Thresholds,
    TimerScheduleError,
)
from telegraph_key.events import DecoderListener
from telegraph_key.timer import VirtualTimer


class _RecordingListener(DecoderListener):
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def signal_appended(self, signal, buffer):
        self.events.append(("signal", signal, buffer))

    def letter_committed(self, character, signals):
        self.events.append(("letter", character, signals))

    def word_break(self):
        self.events.append(("word",))

    def reset(self):
        self.events.append(("reset",))


class _FailingTimer(VirtualTimer):
    def __init__(self, *, fail_on_call: int | None = None) -> None:
        super().__init__()
        self.fail_on_call = fail_on_call
        self.calls = 0

    def schedule(self, timer_id, deadline_ms, callback):
        self.calls += 1
        if self.fail_on_call is not None and self.calls >= self.fail_on_call:
            raise OSError("timer backend unavailable")
        super().schedule(timer_id, deadline_ms, callback)


class _LeakyTimer(VirtualTimer):
    """Timer that never cancels and never replaces, exposing stale callbacks."""

    def __init__(self) -> None:
        super().__init__()
        self._count = 0

    def schedule(self, timer_id, deadline_ms, callback):
        self._count += 1
        super().schedule(f"{timer_id}#{self._count}", deadline_ms, callback)

    def cancel(self, timer_id):
        pass


class _FixedClock:
    def __init__(self, value: int) -> None:
        self.value = value

    def now(self) -> int:
        return self.value


def _decoder(**options) -> tuple[KeyDecoder, VirtualTimer, _RecordingListener]:
    timer = options.pop("timer", None) or VirtualTimer()
    decoder = KeyDecoder(timer=timer, **options)
    listener = _RecordingListener()
    decoder.subscribe(listener)
    return decoder, timer, listener


def test_single_dot_commits_letter_after_letter_gap():
    decoder, timer, _ = _decoder()

    decoder.press_down(0)
    assert decoder.state is DecoderState.PRESSING
    assert decoder.is_pressed
    decoder.press_up(50)
    assert decoder.buffer == "."
    assert decoder.state is DecoderState.AWAITING_NEXT

    timer.advance_to(849)
    assert decoder.text == ""

    timer.advance_to(850)
    snapshot = decoder.snapshot()
    assert snapshot.text == "E"
    assert snapshot.buffer == ""
    assert snapshot.state is DecoderState.AWAITING_NEXT

    timer.advance_to(1550)
    snapshot = decoder.snapshot()
    assert snapshot.text == "E"
    assert snapshot.state is DecoderState.IDLE
    assert timer.pending() == []


@pytest.mark.parametrize(
    "release, expected",
    [(100, Signal.DOT), (150, Signal.DOT), (151, Signal.DASH), (900, Signal.DASH)],
)
def test_dot_dash_boundary_is_inclusive_for_dots(release, expected):
    decoder, _, listener = _decoder()

    decoder.press_down(0)
    decoder.press_up(release)

    assert listener.events == [("signal", expected, (expected,))]


def test_zero_length_press_is_a_dot():
    decoder, _, _ = _decoder()

    decoder.press_down(200)
    decoder.press_up(200)

    assert decoder.buffer == "."


def test_release_before_press_is_treated_as_zero_length(caplog):
    decoder, _, _ = _decoder()

    decoder.press_down(500)
    with caplog.at_level(logging.WARNING, logger="telegraph_key.decoder"):
        decoder.press_up(400)

    assert decoder.buffer == "."
    assert any("precedes press" in record.getMessage() for record in caplog.records)


def test_spurious_release_is_ignored():
    decoder, timer, listener = _decoder()

    decoder.press_up(10)

    assert decoder.snapshot().as_dict() == {"buffer": "", "text": "", "state": "idle"}
    assert listener.events == []
    assert timer.pending() == []


def test_repeated_press_keeps_original_start():
    decoder, _, _ = _decoder()

    decoder.press_down(0)
    decoder.press_down(100)
    decoder.press_up(200)

    assert decoder.buffer == "-"


def test_rapid_retrigger_accumulates_before_letter_gap():
    decoder, timer, _ = _decoder()

    decoder.press_down(0)
    decoder.press_up(50)
    decoder.press_down(100)
    decoder.press_up(160)

    assert decoder.buffer == ".."
    assert decoder.text == ""

    timer.advance_to(1060)
    assert decoder.text == "I"
    assert decoder.buffer == ""


def test_letter_gap_is_measured_from_last_release():
    decoder, timer, _ = _decoder()

    decoder.press_down(0)
    decoder.press_up(50)
    timer.advance_to(700)
    decoder.press_down(700)
    decoder.press_up(1000)

    timer.advance_to(1799)
    assert decoder.buffer == ".-"
    timer.advance_to(1800)
    assert decoder.text == "A"


def test_stale_timer_callbacks_are_discarded_by_epoch():
    decoder, timer, _ = _decoder(timer=_LeakyTimer())

    decoder.press_down(0)
    decoder.press_up(50)
    decoder.press_down(100)
    decoder.press_up(160)

    timer.advance_to(900)
    assert decoder.text == ""
    assert decoder.buffer == ".."

    timer.advance_to(960)
    assert decoder.text == "I"


def test_unknown_sequence_commits_question_mark():
    decoder, timer, listener = _decoder()

    for start in (0, 400, 800, 1200):
        decoder.press_down(start)
        decoder.press_up(start + 300)
    timer.advance_to(1500 + 900)

    assert decoder.text == "?"
    dash = Signal.DASH
    assert listener.events[-1] == ("letter", "?", (dash, dash, dash, dash))


def test_full_buffer_forces_immediate_commit():
    decoder, timer, listener = _decoder()

    for index in range(6):
        decoder.press_down(index * 100)
        decoder.press_up(index * 100 + 40)

    snapshot = decoder.snapshot()
    assert snapshot.text == "?"
    assert snapshot.buffer == ""
    assert snapshot.state is DecoderState.AWAITING_NEXT
    assert [event[0] for event in listener.events] == ["signal"] * 6 + ["letter"]

    timer.run_until_idle()
    assert decoder.state is DecoderState.IDLE
    assert decoder.text == "?"


def test_full_buffer_uses_custom_table_entries():
    table = CodeTable.from_mapping({"E": ".", "H": "......"})
    decoder, _, _ = _decoder(code_table=table)

    for index in range(6):
        decoder.press_down(index * 100)
        decoder.press_up(index * 100 + 40)

    assert decoder.text == "H"


def test_word_break_is_deferred_until_next_letter():
    decoder, timer, listener = _decoder()

    decoder.press_down(0)
    decoder.press_up(50)
    timer.advance_to(3000)
    assert decoder.text == "E"
    assert ("word",) not in listener.events

    decoder.press_down(3000)
    decoder.press_up(3300)
    timer.advance_to(4100)

    assert decoder.text == "E T"
    kinds = [event[0] for event in listener.events]
    assert kinds == ["signal", "letter", "signal", "word", "letter"]


def test_flush_commits_immediately_and_keeps_word_timer():
    decoder, timer, listener = _decoder()

    decoder.press_down(0)
    decoder.press_up(300)
    decoder.flush()

    assert decoder.text == "T"
    assert [timer_id.rsplit(":", 1)[1] for timer_id, _ in timer.pending()] == ["word"]

    decoder.flush()
    assert [event[0] for event in listener.events] == ["signal", "letter"]

    timer.advance_to(1800)
    assert decoder.state is DecoderState.IDLE


def test_reset_clears_everything_and_ignores_pending_deadlines():
    decoder, timer, listener = _decoder()

    decoder.press_down(0)
    decoder.press_up(50)
    decoder.reset()

    snapshot = decoder.snapshot()
    assert snapshot.buffer == ""
    assert snapshot.text == ""
    assert snapshot.state is DecoderState.IDLE
    assert listener.events[-1] == ("reset",)

    timer.advance_to(5000)
    assert decoder.snapshot() == snapshot


def test_reset_ignores_leaked_deadlines():
    decoder, timer, _ = _decoder(timer=_LeakyTimer())

    decoder.press_down(0)
    decoder.press_up(50)
    decoder.reset()
    timer.advance_to(5000)

    assert decoder.text == ""
    assert decoder.state is DecoderState.IDLE


def test_reset_is_idempotent():
    decoder, timer, _ = _decoder()

    decoder.press_down(0)
    decoder.press_up(50)
    timer.advance_to(900)
    decoder.reset()
    once = decoder.snapshot()
    decoder.reset()

    assert decoder.snapshot() == once


def test_timer_failure_rolls_back_release():
    timer = _FailingTimer(fail_on_call=1)
    decoder, _, listener = _decoder(timer=timer)

    decoder.press_down(0)
    with pytest.raises(TimerScheduleError) as excinfo:
        decoder.press_up(50)

    assert isinstance(excinfo.value.cause, OSError)
    assert excinfo.value.__cause__ is excinfo.value.cause
    snapshot = decoder.snapshot()
    assert snapshot.state is DecoderState.PRESSING
    assert snapshot.buffer == ""
    assert listener.events == []

    timer.fail_on_call = None
    decoder.press_up(60)
    assert decoder.buffer == "."


def test_timer_failure_cancels_partially_scheduled_deadlines():
    timer = _FailingTimer(fail_on_call=2)
    decoder, _, _ = _decoder(timer=timer)

    decoder.press_down(0)
    with pytest.raises(TimerScheduleError):
        decoder.press_up(50)

    assert timer.pending() == []
    assert decoder.is_pressed


def test_timer_failure_rolls_back_forced_commit():
    timer = _FailingTimer()
    decoder, _, listener = _decoder(timer=timer)

    for index in range(5):
        decoder.press_down(index * 100)
        decoder.press_up(index * 100 + 40)
    decoder.press_down(500)
    recorded = list(listener.events)
    timer.fail_on_call = timer.calls + 1

    with pytest.raises(TimerScheduleError):
        decoder.press_up(540)

    snapshot = decoder.snapshot()
    assert snapshot.text == ""
    assert snapshot.buffer == "....."
    assert snapshot.state is DecoderState.PRESSING
    assert listener.events == recorded


def test_timestamps_default_to_clock():
    timer = VirtualTimer(start_ms=1000)
    decoder, _, _ = _decoder(timer=timer)

    decoder.press_down()
    timer.advance(200)
    decoder.press_up()

    assert decoder.buffer == "-"
    assert timer.pending()[0][1] == 1200 + 800


def test_explicit_clock_is_preferred_over_timer():
    clock = _FixedClock(50)
    decoder, _, _ = _decoder(clock=clock)

    decoder.press_down()
    clock.value = 120
    decoder.press_up()

    assert decoder.buffer == "."


def test_custom_thresholds_change_classification():
    decoder, timer, _ = _decoder(dot_max_ms=50, letter_gap_ms=200, word_gap_ms=400)

    decoder.press_down(0)
    decoder.press_up(80)
    timer.advance_to(280)

    assert decoder.text == "T"
    assert decoder.thresholds == Thresholds(50, 200, 400)


@pytest.mark.parametrize(
    "options",
    [
        {"dot_max_ms": 800},
        {"letter_gap_ms": 1500},
        {"letter_gap_ms": 2000},
        {"dot_max_ms": 0},
        {"word_gap_ms": -1},
        {"dot_max_ms": 1.5},
        {"dot_max_ms": True},
    ],
)
def test_invalid_thresholds_fail_construction(options):
    with pytest.raises(ConfigurationError):
        KeyDecoder(timer=VirtualTimer(), **options)


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        Thresholds(dot_max_ms=200, letter_gap_ms=100, word_gap_ms=300)


def test_unknown_options_are_rejected():
    with pytest.raises(TypeError):
        KeyDecoder(timer=VirtualTimer(), wpm=20)


def test_from_thresholds_passes_collaborators():
    timer = VirtualTimer()
    decoder = KeyDecoder.from_thresholds(Thresholds(100, 500, 1000), timer=timer)

    assert decoder.timer is timer
    assert decoder.thresholds.letter_gap_ms == 500


def test_decoders_sharing_a_timer_use_distinct_ids():
    timer = VirtualTimer()
    first = KeyDecoder(timer=timer)
    second = KeyDecoder(timer=timer)

    first.press_down(0)
    first.press_up(50)
    second.press_down(0)
    second.press_up(300)
    timer.advance_to(1200)

    assert first.text == "E"
    assert second.text == "T"


def test_unknown_sequence_reports_unknown_letter_after_commit():
    class _Unknowns(DecoderListener):
        def __init__(self) -> None:
            self.seen: list[tuple] = []

        def letter_committed(self, character, signals):
            self.seen.append(("letter_committed", character))

        def unknown_letter(self, signals):
            self.seen.append(("unknown_letter", signals))

    timer = VirtualTimer()
    decoder = KeyDecoder(timer=timer)
    listener = _Unknowns()
    decoder.subscribe(listener)

    for start in (0, 400, 800, 1200):
        decoder.press_down(start)
        decoder.press_up(start + 300)
    timer.advance_to(1500 + 900)

    dashes = (Signal.DASH,) * 4
    assert listener.seen == [("letter_committed", "?"), ("unknown_letter", dashes)]


def test_known_letter_does_not_report_unknown_letter():
    class _Unknowns(DecoderListener):
        def __init__(self) -> None:
            self.count = 0

        def unknown_letter(self, signals):
            self.count += 1

    timer = VirtualTimer()
    decoder = KeyDecoder(timer=timer)
    listener = _Unknowns()
    decoder.subscribe(listener)

    decoder.press_down(0)
    decoder.press_up(50)
    timer.advance_to(900)

    assert decoder.text == "E"
    assert listener.count == 0


def test_at_most_one_letter_and_one_word_deadline_pending():
    decoder, timer, _ = _decoder()

    for start in (0, 100, 200):
        decoder.press_down(start)
        decoder.press_up(start + 50)
        pending = timer.pending()
        assert len(pending) == 2
        assert sorted(timer_id.rsplit(":", 1)[1] for timer_id, _ in pending) == ["letter", "word"]

    assert dict(timer.pending()) == {
        f"{decoder.name}:letter": 250 + 800,
        f"{decoder.name}:word": 250 + 1500,
    }
