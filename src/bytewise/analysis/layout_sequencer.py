from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .layout_align import AlignmentResolver
from .layout_bitfield import BitfieldAllocator
from .layout_errors import FlexibleArrayInUnion, LayoutError, TrailingMemberAfterFlexibleArray, UnsupportedConstruct
from .layout_profile import PACKING_BITS, ABIProfile
from .layout_types import (
    Aggregate,
    Bitfield,
    FlexibleArray,
    LayoutResult,
    Member,
    MemberLayout,
    Struct,
    Union,
    aligned_value,
    is_packed,
)
from .layout_utils import LogFn, round_up


@dataclass(frozen=True)
class Sequenced:
    members: tuple[MemberLayout, ...]
    end_offset: int
    alignment: int


def member_key(member: Member, index: int) -> str:
    if member.name is None:
        return f"<anonymous {index}>"
    return member.name


class MemberSequencer:
    def __init__(
        self,
        profile: ABIProfile,
        resolver: AlignmentResolver,
        layout_fn: Callable[[Aggregate], LayoutResult],
        log: Optional[LogFn] = None,
    ) -> None:
        self.profile = profile
        self.resolver = resolver
        self.layout_fn = layout_fn
        self.log = log

    def sequence(self, members: tuple[Member, ...], pack_cap: Optional[int], kind: str = "struct") -> Sequenced:
        if kind == "union":
            return self._sequence_union(members, pack_cap)
        return self._sequence_struct(members, pack_cap)

    def _sequence_struct(self, members: tuple[Member, ...], pack_cap: Optional[int]) -> Sequenced:
        allocator = BitfieldAllocator(self.profile, log=self.log)
        out: list[MemberLayout] = []
        cursor = 0
        alignment = 1
        flexible: Optional[str] = None

        for index, member in enumerate(members):
            try:
                if flexible is not None:
                    raise TrailingMemberAfterFlexibleArray(f"member declared after flexible array member '{flexible}'")

                if isinstance(member.type, Bitfield):
                    placed, cursor = self._place_bitfield(allocator, member, pack_cap, cursor)
                    if placed is not None:
                        layout, contributes = placed
                        if contributes:
                            alignment = max(alignment, layout.alignment)
                        if layout.name is not None:
                            out.append(layout)
                    continue

                cursor = allocator.flush(cursor)
                extent = self.resolver.member_extent(member, pack_cap)
                offset = round_up(cursor, extent.alignment)
                alignment = max(alignment, extent.alignment)

                if isinstance(member.type, FlexibleArray):
                    if member.name is None:
                        raise UnsupportedConstruct("flexible array member without a name")
                    out.append(self._layout(member, index, offset, extent.size, extent.alignment, offset - cursor))
                    flexible = member.name
                    cursor = offset
                    continue

                out.extend(self._place_value(member, index, offset, extent.size, extent.alignment, offset - cursor))
                cursor = offset + extent.size
            except LayoutError as exc:
                exc.push(member.name or "")
                raise

        cursor = allocator.flush(cursor)
        return Sequenced(tuple(out), cursor, alignment)

    def _sequence_union(self, members: tuple[Member, ...], pack_cap: Optional[int]) -> Sequenced:
        out: list[MemberLayout] = []
        end = 0
        alignment = 1

        for index, member in enumerate(members):
            try:
                if isinstance(member.type, FlexibleArray):
                    raise FlexibleArrayInUnion("flexible array members are not allowed in a union")
                if isinstance(member.type, Bitfield):
                    allocator = BitfieldAllocator(self.profile, log=self.log)
                    placed, _ = self._place_bitfield(allocator, member, pack_cap, 0)
                    if placed is not None:
                        layout, contributes = placed
                        if contributes:
                            alignment = max(alignment, layout.alignment)
                        end = max(end, layout.size)
                        if layout.name is not None:
                            out.append(layout)
                    continue

                extent = self.resolver.member_extent(member, pack_cap)
                alignment = max(alignment, extent.alignment)
                end = max(end, extent.size)
                out.extend(self._place_value(member, index, 0, extent.size, extent.alignment, 0))
            except LayoutError as exc:
                exc.push(member.name or "")
                raise

        return Sequenced(tuple(out), end, alignment)

    def _place_bitfield(
        self, allocator: BitfieldAllocator, member: Member, pack_cap: Optional[int], cursor: int
    ) -> tuple[Optional[tuple[MemberLayout, bool]], int]:
        field_type = member.type
        if aligned_value(member.attributes) is not None:
            raise UnsupportedConstruct("aligned attribute on a bitfield")
        cap = 1 if is_packed(member.attributes) else pack_cap
        natural = self.resolver.resolve(field_type.base)
        extent = self.resolver.resolve(field_type.base, cap)
        placement, cursor = allocator.place(member.name, field_type.base, extent, natural.alignment, field_type.width, cursor)
        if placement is None:
            return None, cursor
        layout = MemberLayout(
            key=member.name or "",
            name=member.name,
            type=field_type,
            byte_offset=placement.byte_offset,
            size=placement.unit_size,
            alignment=placement.alignment,
            bit_offset=placement.bit_offset,
            bit_width=placement.bit_width,
            padding_before=placement.padding_before,
        )
        # System V: unnamed bitfields do not raise the aggregate's alignment.
        contributes = member.name is not None or self.profile.bitfield_packing != PACKING_BITS
        return (layout, contributes), cursor

    def _place_value(
        self, member: Member, index: int, offset: int, size: int, alignment: int, padding: int
    ) -> list[MemberLayout]:
        nested = None
        if isinstance(member.type, (Struct, Union)):
            nested = self.layout_fn(member.type)
        elif member.is_anonymous:
            raise UnsupportedConstruct("unnamed member must be a struct or union")

        layout = self._layout(member, index, offset, size, alignment, padding, nested)
        if member.name is not None:
            return [layout]
        # Anonymous aggregate: its named fields are promoted into this scope.
        promoted = [inner.translated(offset) for inner in nested.members if inner.name is not None]
        return [layout] + promoted

    def _layout(
        self,
        member: Member,
        index: int,
        offset: int,
        size: int,
        alignment: int,
        padding: int,
        nested: Optional[LayoutResult] = None,
    ) -> MemberLayout:
        return MemberLayout(
            key=member_key(member, index),
            name=member.name,
            type=member.type,
            byte_offset=offset,
            size=size,
            alignment=alignment,
            padding_before=padding,
            layout=nested,
        )
