from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from .layout_engine import LayoutEngine
from .layout_profile import ABIProfile
from .layout_sequencer import member_key
from .layout_types import Bitfield, FlexibleArray, LayoutResult, Member, Struct


@dataclass(frozen=True)
class ReorderSuggestion:
    members: tuple[Member, ...]
    layout: LayoutResult
    original_size: int

    @property
    def optimized_size(self) -> int:
        return self.layout.size

    @property
    def bytes_saved(self) -> int:
        return max(0, self.original_size - self.optimized_size)

    @property
    def saving_ratio(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return self.bytes_saved / self.original_size * 100


def suggest_reorder(struct: Struct, profile: ABIProfile, engine: LayoutEngine) -> Optional[ReorderSuggestion]:
    """Sort members by alignment then size, largest first.

    Bitfield runs depend on declaration order, so structs holding bitfields are
    left alone. A flexible array member stays last.
    """
    if not isinstance(struct, Struct):
        return None
    if any(isinstance(member.type, Bitfield) for member in struct.members):
        return None

    original = engine.compute_layout(struct, profile)
    by_member = {}
    movable: list[Member] = []
    trailing: list[Member] = []
    for index, member in enumerate(struct.members):
        if isinstance(member.type, FlexibleArray):
            trailing.append(member)
            continue
        movable.append(member)
        by_member[id(member)] = original.members[_layout_index(original, member, index)]

    ordered = sorted(
        movable,
        key=lambda member: (-by_member[id(member)].alignment, -by_member[id(member)].size),
    )
    reordered = replace(struct, members=tuple(ordered + trailing))
    layout = engine.compute_layout(reordered, profile)
    return ReorderSuggestion(members=reordered.members, layout=layout, original_size=original.size)


def _layout_index(result: LayoutResult, member: Member, index: int) -> int:
    key = member_key(member, index)
    for position, layout in enumerate(result.members):
        if layout.key == key and not layout.promoted:
            return position
    raise KeyError(key)
