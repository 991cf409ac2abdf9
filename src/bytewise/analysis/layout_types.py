from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union as _Union


@dataclass(frozen=True)
class Packed:
    pass


@dataclass(frozen=True)
class Aligned:
    value: int


Attribute = _Union[Packed, Aligned]


@dataclass(frozen=True)
class Primitive:
    name: str
    size: Optional[int] = None
    alignment: Optional[int] = None


@dataclass(frozen=True)
class Array:
    element: "TypeNode"
    dimensions: tuple[int, ...]

    @property
    def count(self) -> int:
        total = 1
        for dim in self.dimensions:
            total *= dim
        return total


@dataclass(frozen=True)
class FlexibleArray:
    element: "TypeNode"


@dataclass(frozen=True)
class Bitfield:
    base: Primitive
    width: int


@dataclass(frozen=True)
class Opaque:
    name: str


@dataclass(frozen=True)
class Member:
    type: "TypeNode"
    name: Optional[str] = None
    attributes: frozenset = frozenset()

    @property
    def is_anonymous(self) -> bool:
        return self.name is None


@dataclass(frozen=True)
class Struct:
    members: tuple[Member, ...]
    name: Optional[str] = None
    pack: Optional[int] = None
    attributes: frozenset = frozenset()

    kind = "struct"


@dataclass(frozen=True)
class Union:
    members: tuple[Member, ...]
    name: Optional[str] = None
    pack: Optional[int] = None
    attributes: frozenset = frozenset()

    kind = "union"


Aggregate = _Union[Struct, Union]
TypeNode = _Union[Primitive, Struct, Union, Array, FlexibleArray, Bitfield, Opaque]


def aligned_value(attributes: frozenset) -> Optional[int]:
    values = [attr.value for attr in attributes if isinstance(attr, Aligned)]
    if not values:
        return None
    return max(values)


def is_packed(attributes: frozenset) -> bool:
    return any(isinstance(attr, Packed) for attr in attributes)


def describe_type(node: TypeNode) -> str:
    if isinstance(node, Primitive):
        return node.name
    if isinstance(node, (Struct, Union)):
        if node.name:
            return f"{node.kind} {node.name}"
        return f"{node.kind} {{...}}"
    if isinstance(node, Array):
        dims = "".join(f"[{dim}]" for dim in node.dimensions)
        return f"{describe_type(node.element)}{dims}"
    if isinstance(node, FlexibleArray):
        return f"{describe_type(node.element)}[]"
    if isinstance(node, Bitfield):
        return f"{node.base.name} : {node.width}"
    if isinstance(node, Opaque):
        return node.name
    return type(node).__name__


@dataclass(frozen=True)
class MemberLayout:
    key: str
    name: Optional[str]
    type: TypeNode
    byte_offset: int
    size: int
    alignment: int
    bit_offset: Optional[int] = None
    bit_width: Optional[int] = None
    padding_before: int = 0
    promoted: bool = False
    layout: Optional["LayoutResult"] = None

    @property
    def is_bitfield(self) -> bool:
        return self.bit_width is not None

    def translated(self, base: int) -> "MemberLayout":
        return MemberLayout(
            key=self.key,
            name=self.name,
            type=self.type,
            byte_offset=self.byte_offset + base,
            size=self.size,
            alignment=self.alignment,
            bit_offset=self.bit_offset,
            bit_width=self.bit_width,
            padding_before=0,
            promoted=True,
            layout=self.layout,
        )

    def to_dict(self) -> dict:
        out = {
            "name": self.key,
            "type": describe_type(self.type),
            "offset": self.byte_offset,
            "size": self.size,
            "alignment": self.alignment,
            "padding_before": self.padding_before,
        }
        if self.bit_width is not None:
            out["bit_offset"] = self.bit_offset
            out["bit_width"] = self.bit_width
        if self.promoted:
            out["promoted"] = True
        if self.layout is not None and self.layout.members:
            out["members"] = [member.to_dict() for member in self.layout.members]
        return out


@dataclass(frozen=True)
class LayoutResult:
    kind: str
    name: Optional[str]
    size: int
    alignment: int
    members: tuple[MemberLayout, ...] = field(default_factory=tuple)
    tail_padding: int = 0

    @property
    def padding_bytes(self) -> int:
        return sum(member.padding_before for member in self.members if not member.promoted) + self.tail_padding

    def member(self, key: str) -> MemberLayout:
        for member in self.members:
            if member.key == key:
                return member
        raise KeyError(key)

    def offsets(self) -> dict[str, int]:
        return {member.key: member.byte_offset for member in self.members}

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "name": self.name,
            "size": self.size,
            "alignment": self.alignment,
            "padding_bytes": self.padding_bytes,
            "members": [member.to_dict() for member in self.members],
        }
