"""International Morse lookup table for letters and digits."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

MAX_SIGNALS_PER_LETTER = 6


class Signal(str, Enum):
    """A single keyed element derived from one press duration."""

    DOT = "."
    DASH = "-"

    @property
    def symbol(self) -> str:
        return self.value


MORSE_CODE_TABLE: Mapping[str, str] = {
    "A": ".-",
    "B": "-...",
    "C": "-.-.",
    "D": "-..",
    "E": ".",
    "F": "..-.",
    "G": "--.",
    "H": "....",
    "I": "..",
    "J": ".---",
    "K": "-.-",
    "L": ".-..",
    "M": "--",
    "N": "-.",
    "O": "---",
    "P": ".--.",
    "Q": "--.-",
    "R": ".-.",
    "S": "...",
    "T": "-",
    "U": "..-",
    "V": "...-",
    "W": ".--",
    "X": "-..-",
    "Y": "-.--",
    "Z": "--..",
    "1": ".----",
    "2": "..---",
    "3": "...--",
    "4": "....-",
    "5": ".....",
    "6": "-....",
    "7": "--...",
    "8": "---..",
    "9": "----.",
    "0": "-----",
}


def signals_to_code(signals: Iterable[Signal]) -> str:
    return "".join(Signal(signal).value for signal in signals)


def code_to_signals(code: str) -> Tuple[Signal, ...]:
    try:
        return tuple(Signal(symbol) for symbol in code)
    except ValueError as exc:
        raise ValueError(f"Morse code {code!r} may only contain '.' and '-'") from exc


class CodeTable:
    """Read-only, bidirectional mapping between characters and signal strings."""

    def __init__(self, table: Mapping[str, str] = MORSE_CODE_TABLE) -> None:
        by_char: Dict[str, str] = {}
        by_code: Dict[str, str] = {}
        for character, code in table.items():
            if len(character) != 1:
                raise ValueError(f"Table keys must be single characters, got {character!r}")
            key = character.upper()
            if key in by_char:
                raise ValueError(f"Character {key!r} appears more than once")
            code_to_signals(code)
            if not code:
                raise ValueError(f"Character {character!r} has an empty code")
            if code in by_code:
                raise ValueError(
                    f"Code {code!r} is assigned to both {by_code[code]!r} and {key!r}"
                )
            by_char[key] = code
            by_code[code] = key
        if not by_code:
            raise ValueError("A code table needs at least one entry")
        self._by_char = by_char
        self._by_code = by_code
        self._longest = max(len(code) for code in by_code)

    @classmethod
    def from_mapping(cls, table: Mapping[str, str]) -> "CodeTable":
        return cls(table)

    @property
    def longest(self) -> int:
        """Length of the longest code in the table."""

        return self._longest

    def lookup(self, signals: Sequence[Signal] | str) -> Optional[str]:
        """Return the character for ``signals`` or ``None`` when unknown.

        Sequences longer than :attr:`longest` are rejected without touching
        the table.
        """

        if len(signals) > self._longest:
            return None
        code = signals if isinstance(signals, str) else signals_to_code(signals)
        return self._by_code.get(code)

    def encode(self, character: str) -> Optional[str]:
        return self._by_char.get(character.upper())

    def __contains__(self, character: object) -> bool:
        return isinstance(character, str) and character.upper() in self._by_char

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        yield from self._by_char.items()

    def __len__(self) -> int:
        return len(self._by_char)


DEFAULT_CODE_TABLE = CodeTable()


__all__ = [
    "CodeTable",
    "DEFAULT_CODE_TABLE",
    "MAX_SIGNALS_PER_LETTER",
    "MORSE_CODE_TABLE",
    "Signal",
    "code_to_signals",
    "signals_to_code",
]
