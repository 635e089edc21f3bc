"""Timer text grammar.

A timer format is written with the same letters speedrunners use to describe
their timers, for example ``H:MM:SS.mmm`` or ``MM:SS``.  Tokens:

    H / HH      hours (one or more digits / exactly two digits)
    M / MM      minutes (one-two digits / exactly two digits); unbounded when
                the format has no hours field
    SS          seconds, exactly two digits, < 60
    m, mm, mmm  fractional seconds: tenths, hundredths, milliseconds
    P           completion percentage: one to three digits followed by ``%``
    : .         literal separators
    (space)     optional whitespace

Parsing is strict: a grammar mismatch or an out-of-range field raises
``ParseFailure`` no matter how confident the OCR engine was.
"""

from __future__ import annotations

import re
import string

from igtsplit.errors import ParseFailure
from igtsplit.models import TimerValue

_TOKEN_RE = re.compile(r"H+|M+|S+|m+|P|[:.]| +|.")


class TimerFormat:
    """A compiled timer format."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._has_hours = "H" in pattern
        self._fraction_digits = 0
        self._separators: set[str] = set()

        fields_seen: set[str] = set()
        parts: list[str] = []
        for token in _TOKEN_RE.findall(pattern):
            kind = token[0]
            if kind in "HMSmP":
                if kind in fields_seen:
                    raise ValueError(f"Timer format {pattern!r} repeats field {kind!r}")
                fields_seen.add(kind)
            parts.append(self._token_regex(token))

        if "S" not in fields_seen:
            raise ValueError(f"Timer format {pattern!r} has no seconds field (SS)")

        self._regex = re.compile("".join(parts))

    def _token_regex(self, token: str) -> str:
        kind, width = token[0], len(token)
        if kind == "H":
            if width > 2:
                raise ValueError(f"Unsupported hours token {token!r}")
            return r"(?P<hours>\d+)" if width == 1 else r"(?P<hours>\d{2})"
        if kind == "M":
            if width > 2:
                raise ValueError(f"Unsupported minutes token {token!r}")
            if self._has_hours:
                return r"(?P<minutes>\d{1,2})" if width == 1 else r"(?P<minutes>\d{2})"
            return r"(?P<minutes>\d+)" if width == 1 else r"(?P<minutes>\d{2,})"
        if kind == "S":
            if width != 2:
                raise ValueError(f"Seconds must be written SS, got {token!r}")
            return r"(?P<seconds>\d{2})"
        if kind == "m":
            if width > 3:
                raise ValueError(f"At most three fraction digits are supported, got {token!r}")
            self._fraction_digits = width
            return rf"(?P<fraction>\d{{{width}}})"
        if kind == "P":
            self._separators.add("%")
            return r"(?P<percent>\d{1,3})%"
        if token in (":", "."):
            self._separators.add(token)
            return re.escape(token)
        if token.strip() == "":
            return r"\s*"
        raise ValueError(f"Unsupported character {token!r} in timer format {self.pattern!r}")

    @property
    def charset(self) -> str:
        """OCR allow-list: digits plus the separators this format uses."""
        return string.digits + "".join(sorted(self._separators))

    @property
    def resolution_ms(self) -> int:
        """Smallest increment the timer can display."""
        if self._fraction_digits == 0:
            return 1000
        return 10 ** (3 - self._fraction_digits)

    @property
    def has_percent(self) -> bool:
        return "%" in self._separators

    def parse(self, text: str) -> TimerValue:
        """Parse *text* into a :class:`TimerValue` or raise :class:`ParseFailure`."""
        s = text.strip()
        # A stray leading colon is what remains of a cropped "IGT:" label.
        if s.startswith(":") and not self.pattern.startswith(":"):
            s = s[1:].strip()

        match = self._regex.fullmatch(s)
        if match is None:
            raise ParseFailure(text, f"does not match {self.pattern}")

        groups = match.groupdict()
        hours = int(groups.get("hours") or 0)
        minutes = int(groups.get("minutes") or 0)
        seconds = int(groups["seconds"])

        if seconds >= 60:
            raise ParseFailure(text, "seconds must be < 60")
        if self._has_hours and minutes >= 60:
            raise ParseFailure(text, "minutes must be < 60")

        millis = 0
        if groups.get("fraction") is not None:
            millis = int(groups["fraction"]) * 10 ** (3 - self._fraction_digits)

        percent = int(groups["percent"]) if groups.get("percent") is not None else None

        if not self._has_hours:
            hours, minutes = divmod(minutes, 60)

        return TimerValue(hours=hours, minutes=minutes, seconds=seconds, millis=millis, percent=percent)

    def __repr__(self) -> str:
        return f"TimerFormat({self.pattern!r})"
