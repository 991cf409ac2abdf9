from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .layout_errors import InvalidAttribute, UnsupportedConstruct
from .layout_profile import ABIProfile
from .layout_types import (
    Aggregate,
    Array,
    Bitfield,
    FlexibleArray,
    LayoutResult,
    Member,
    Opaque,
    Primitive,
    Struct,
    TypeNode,
    Union,
    aligned_value,
    is_packed,
)
from .layout_utils import is_power_of_two


@dataclass(frozen=True)
class Extent:
    size: int
    alignment: int


def cap_alignment(alignment: int, pack_cap: Optional[int]) -> int:
    if pack_cap is None:
        return alignment
    return min(alignment, pack_cap)


def check_aligned(value: int, what: str) -> None:
    if not is_power_of_two(value):
        raise InvalidAttribute(f"aligned({value}) on {what} is not a power of two")


def effective_pack_cap(aggregate: Aggregate) -> Optional[int]:
    """Combine the pack pragma and a ``packed`` attribute into one cap."""
    cap = None
    if aggregate.pack is not None:
        if not is_power_of_two(aggregate.pack):
            raise InvalidAttribute(f"pack({aggregate.pack}) is not a power of two")
        cap = aggregate.pack
    if is_packed(aggregate.attributes):
        cap = 1
    return cap


class AlignmentResolver:
    """Size and alignment of type nodes under an ABI profile.

    Aggregates are measured through ``layout_fn`` so nested structs reuse the
    engine (and its cache) instead of being re-sequenced here.
    """

    def __init__(self, profile: ABIProfile, layout_fn: Callable[[Aggregate], LayoutResult]) -> None:
        self.profile = profile
        self.layout_fn = layout_fn

    def resolve(self, node: TypeNode, pack_cap: Optional[int] = None) -> Extent:
        natural = self._natural(node)
        return Extent(natural.size, cap_alignment(natural.alignment, pack_cap))

    def _natural(self, node: TypeNode) -> Extent:
        if isinstance(node, Primitive):
            return self._primitive(node)
        if isinstance(node, Array):
            if not node.dimensions:
                raise UnsupportedConstruct(f"array of {node.element!r} has no dimensions")
            for dim in node.dimensions:
                if not isinstance(dim, int) or isinstance(dim, bool) or dim <= 0:
                    raise UnsupportedConstruct(f"array dimension {dim!r} is not a positive constant")
            if isinstance(node.element, (FlexibleArray, Bitfield)):
                raise UnsupportedConstruct(f"array of {type(node.element).__name__} elements")
            element = self._natural(node.element)
            return Extent(element.size * node.count, element.alignment)
        if isinstance(node, FlexibleArray):
            if isinstance(node.element, (FlexibleArray, Bitfield)):
                raise UnsupportedConstruct(f"flexible array of {type(node.element).__name__} elements")
            element = self._natural(node.element)
            return Extent(0, element.alignment)
        if isinstance(node, Bitfield):
            return self._primitive(node.base)
        if isinstance(node, (Struct, Union)):
            layout = self.layout_fn(node)
            return Extent(layout.size, layout.alignment)
        if isinstance(node, Opaque):
            raise UnsupportedConstruct(f"incomplete type '{node.name}'")
        raise UnsupportedConstruct(f"unsupported type node {type(node).__name__}")

    def _primitive(self, node: Primitive) -> Extent:
        size = node.size
        if size is None:
            size = self.profile.size_of(node.name)
            if size is None:
                raise UnsupportedConstruct(
                    f"primitive '{node.name}' has no size in ABI profile {self.profile.name}"
                )
        if size <= 0:
            raise UnsupportedConstruct(f"primitive '{node.name}' has non-positive size {size}")
        alignment = node.alignment
        if alignment is None:
            alignment = self.profile.alignment_for_size(size)
        elif not is_power_of_two(alignment):
            raise InvalidAttribute(f"primitive '{node.name}' alignment {alignment} is not a power of two")
        return Extent(size, alignment)

    def member_extent(self, member: Member, pack_cap: Optional[int]) -> Extent:
        cap = 1 if is_packed(member.attributes) else pack_cap
        natural = self._natural(member.type)
        alignment = cap_alignment(natural.alignment, cap)
        requested = aligned_value(member.attributes)
        if requested is None:
            return Extent(natural.size, alignment)
        check_aligned(requested, f"member {member.name or '<anonymous>'}")
        if is_packed(member.attributes) and self.profile.aligned_with_packed_is_error:
            raise InvalidAttribute(
                f"aligned({requested}) conflicts with packed under ABI profile {self.profile.name}"
            )
        if self.profile.aligned_overrides_pack:
            return Extent(natural.size, max(alignment, requested))
        return Extent(natural.size, cap_alignment(max(natural.alignment, requested), cap))
