from __future__ import annotations

import sys
from typing import Callable, Optional


LogFn = Callable[[str], None]


def round_up(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


def round_down(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return value // alignment * alignment


def is_power_of_two(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0 and value & (value - 1) == 0


def parse_channels(text: str) -> set[str]:
    return {item.strip() for item in text.split(",") if item.strip()}


def make_log(channel: str, verbose: Optional[set[str]]) -> Optional[LogFn]:
    if not verbose or (channel not in verbose and "all" not in verbose):
        return None

    def _log(msg: str, *, _channel: str = channel) -> None:
        print(f"[bytewise:{_channel}] {msg}", file=sys.stderr)

    return _log
