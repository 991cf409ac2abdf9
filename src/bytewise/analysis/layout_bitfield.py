from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union as _Union

from .layout_align import Extent
from .layout_errors import BitfieldTooWide, UnsupportedConstruct
from .layout_profile import FILL_HIGH_TO_LOW, PACKING_BITS, ABIProfile
from .layout_types import Primitive
from .layout_utils import LogFn, round_down, round_up


@dataclass(frozen=True)
class NoUnit:
    pass


@dataclass(frozen=True)
class InUnit:
    base: Primitive
    size: int
    alignment: int
    unit_offset: int
    bits_used: int

    @property
    def end_bit(self) -> int:
        return self.unit_offset * 8 + self.bits_used


UnitState = _Union[NoUnit, InUnit]


def allocation_bit(byte_offset: int, storage_size: int, bit_offset: int, bit_width: int, fill_direction: str) -> int:
    """Position of a bitfield's first allocated bit, counted from bit 0 of the
    aggregate in declaration order regardless of the fill direction."""
    if fill_direction == FILL_HIGH_TO_LOW:
        return byte_offset * 8 + storage_size * 8 - bit_offset - bit_width
    return byte_offset * 8 + bit_offset


@dataclass(frozen=True)
class BitfieldPlacement:
    byte_offset: int
    bit_offset: int
    bit_width: int
    unit_size: int
    alignment: int
    padding_before: int


class BitfieldAllocator:
    """Tracks the open storage unit while a struct's bitfields are sequenced.

    In ``unit`` packing a field shares the open unit while it fits and the base
    types match (or the profile allows mixing), and a flush advances the cursor
    to the end of the unit. In ``bits`` packing fields are laid down at the
    running bit position and only skip ahead when they would straddle an
    aligned window of their base type; a flush advances to the next byte.

    A placement's ``unit_size`` is the storage it is reported against: the
    whole unit in ``unit`` packing, the bytes the field touches in ``bits``
    packing. ``bit_offset`` counts from the low bit of that storage.
    """

    def __init__(self, profile: ABIProfile, log: Optional[LogFn] = None) -> None:
        self.profile = profile
        self.state: UnitState = NoUnit()
        self._log = log

    def log(self, message: str) -> None:
        if self._log is not None:
            self._log(message)

    @property
    def bits_mode(self) -> bool:
        return self.profile.bitfield_packing == PACKING_BITS

    def flush(self, cursor: int) -> int:
        state = self.state
        if isinstance(state, NoUnit):
            return cursor
        if self.bits_mode:
            end = round_up(state.end_bit, 8) // 8
        else:
            end = state.unit_offset + state.size
        self.state = NoUnit()
        self.log(f"flush {state.base.name} unit at {state.unit_offset} ({state.bits_used} bits used), cursor -> {max(cursor, end)}")
        return max(cursor, end)

    def place(
        self,
        name: Optional[str],
        base: Primitive,
        extent: Extent,
        natural_alignment: int,
        width: int,
        cursor: int,
    ) -> tuple[Optional[BitfieldPlacement], int]:
        """Place one bitfield. Returns the placement (``None`` for a zero-width
        reset) and the updated byte cursor."""
        label = name or "<unnamed>"
        if not isinstance(width, int) or isinstance(width, bool) or width < 0:
            raise UnsupportedConstruct(f"bitfield width {width!r} is not a non-negative constant")
        capacity = extent.size * 8
        if width > capacity:
            raise BitfieldTooWide(f"width {width} exceeds the {capacity} bits of '{base.name}'")

        if width == 0:
            if isinstance(self.state, InUnit):
                self.log(f"zero-width {base.name} resets the open unit")
                cursor = self.flush(cursor)
            if self.bits_mode:
                cursor = round_up(cursor, extent.alignment)
            return None, cursor

        if self.bits_mode:
            return self._place_bits(label, base, extent, natural_alignment, width, cursor)
        return self._place_unit(label, base, extent, width, cursor)

    def _same_unit_type(self, state: InUnit, extent: Extent) -> bool:
        return state.size == extent.size and state.alignment == extent.alignment

    def _place_unit(
        self, label: str, base: Primitive, extent: Extent, width: int, cursor: int
    ) -> tuple[BitfieldPlacement, int]:
        state = self.state
        if isinstance(state, InUnit):
            compatible = self._same_unit_type(state, extent) or self.profile.bitfield_unit_reuse_across_base_types
            if compatible and state.bits_used + width <= state.size * 8:
                low = state.bits_used
                self.state = InUnit(state.base, state.size, state.alignment, state.unit_offset, low + width)
                self.log(f"{label}: reuse {state.base.name} unit at {state.unit_offset}, bits {low}..{low + width}")
                return self._placement(state.unit_offset, low, width, state.size, extent.alignment, 0), cursor
            cursor = self.flush(cursor)

        unit_offset = round_up(cursor, extent.alignment)
        self.state = InUnit(base, extent.size, extent.alignment, unit_offset, width)
        self.log(f"{label}: allocate {base.name} unit at {unit_offset}, bits 0..{width}")
        return self._placement(unit_offset, 0, width, extent.size, extent.alignment, unit_offset - cursor), cursor

    def _place_bits(
        self,
        label: str,
        base: Primitive,
        extent: Extent,
        natural_alignment: int,
        width: int,
        cursor: int,
    ) -> tuple[BitfieldPlacement, int]:
        state = self.state
        if isinstance(state, InUnit):
            if not self._same_unit_type(state, extent) and not self.profile.bitfield_unit_reuse_across_base_types:
                cursor = self.flush(cursor)
        state = self.state
        start = state.end_bit if isinstance(state, InUnit) else cursor * 8
        prev_end = round_up(start, 8) // 8

        align_bits = extent.alignment * 8
        # Capped (packed) fields may straddle their type's windows.
        if extent.alignment >= natural_alignment and (start % align_bits) + width > extent.size * 8:
            start = round_up(start, align_bits)

        window = round_down(start, align_bits) // 8
        self.state = InUnit(base, extent.size, extent.alignment, window, start - window * 8 + width)
        self.log(f"{label}: {base.name} window at {window}, bits {start}..{start + width}")
        # The window can reach back over earlier plain members, so the field is
        # reported by the bytes its bits occupy.
        byte_offset = start // 8
        low = start % 8
        span = round_up(low + width, 8) // 8
        padding = max(0, byte_offset - prev_end)
        return self._placement(byte_offset, low, width, span, extent.alignment, padding), cursor

    def _placement(
        self, unit_offset: int, low: int, width: int, unit_size: int, alignment: int, padding: int
    ) -> BitfieldPlacement:
        bit_offset = low
        if self.profile.bitfield_fill_direction == FILL_HIGH_TO_LOW:
            bit_offset = unit_size * 8 - low - width
        return BitfieldPlacement(
            byte_offset=unit_offset,
            bit_offset=bit_offset,
            bit_width=width,
            unit_size=unit_size,
            alignment=alignment,
            padding_before=max(0, padding),
        )
