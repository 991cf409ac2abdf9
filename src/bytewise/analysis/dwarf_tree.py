from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from elftools.dwarf.dwarf_expr import DWARFExprParser

from .layout_errors import UnsupportedConstruct
from .layout_types import (
    Aligned,
    Array,
    Bitfield,
    FlexibleArray,
    Member,
    Opaque,
    Primitive,
    Struct,
    TypeNode,
    Union,
)
from .layout_utils import LogFn


STRUCT_TAG = "DW_TAG_structure_type"
CLASS_TAG = "DW_TAG_class_type"
UNION_TAG = "DW_TAG_union_type"
STRUCT_TAGS = {STRUCT_TAG, CLASS_TAG, UNION_TAG}
ENUM_TAG = "DW_TAG_enumeration_type"
TYPEDEF_TAG = "DW_TAG_typedef"
BASE_TAG = "DW_TAG_base_type"
POINTER_TAGS = {
    "DW_TAG_pointer_type",
    "DW_TAG_reference_type",
    "DW_TAG_rvalue_reference_type",
    "DW_TAG_ptr_to_member_type",
}
ARRAY_TAG = "DW_TAG_array_type"
QUALIFIER_TAGS = {
    "DW_TAG_const_type",
    "DW_TAG_volatile_type",
    "DW_TAG_restrict_type",
    "DW_TAG_atomic_type",
}

INDEX_TAGS = STRUCT_TAGS | {TYPEDEF_TAG}


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def _attr_int(die, name: str) -> Optional[int]:
    attr = die.attributes.get(name)
    if attr is None or not isinstance(attr.value, int):
        return None
    return attr.value


def die_name(die) -> Optional[str]:
    attr = die.attributes.get("DW_AT_name")
    if attr is None:
        return None
    return _decode(attr.value) or None


def _type_die(die):
    if "DW_AT_type" not in die.attributes:
        return None
    return die.get_DIE_from_attribute("DW_AT_type")


@dataclass
class DwarfMember:
    """Placement the compiler recorded for one (possibly promoted) member."""

    name: str
    byte_offset: Optional[int]
    bit_offset: Optional[int] = None
    bit_size: Optional[int] = None


@dataclass
class DwarfType:
    name: str
    node: TypeNode
    size: Optional[int]
    members: list[DwarfMember] = field(default_factory=list)


class DwarfTreeBuilder:
    """Builds layout type trees from DWARF struct/union DIEs.

    Sizes of scalars come from the DIEs, so a tree describes the binary's own
    data model; only alignment and packing are left to the ABI profile.
    """

    def __init__(self, dwarfinfo, log: Optional[LogFn] = None) -> None:
        self.dwarfinfo = dwarfinfo
        self._log = log
        self.expr_parser = DWARFExprParser(dwarfinfo.structs)
        self._best_by_name_tag, self._name_index = self._build_type_index()
        self._built: dict[int, TypeNode] = {}
        self._building: set[int] = set()

    def log(self, message: str) -> None:
        if self._log is not None:
            self._log(message)

    def _build_type_index(self):
        best_by_name_tag: dict[tuple[str, str], object] = {}
        name_index: dict[str, list[object]] = {}

        def score(die) -> int:
            value = 0
            declaration = die.attributes.get("DW_AT_declaration")
            value += -5 if declaration is not None and declaration.value else 5
            if "DW_AT_byte_size" in die.attributes:
                value += 2
            if die.has_children:
                value += 1
            return value

        for cu in self.dwarfinfo.iter_CUs():
            for die in cu.iter_DIEs():
                if die.tag not in INDEX_TAGS:
                    continue
                name = die_name(die)
                if not name:
                    continue
                name_index.setdefault(name, []).append(die)
                key = (name, die.tag)
                current = best_by_name_tag.get(key)
                if current is None or score(die) > score(current):
                    best_by_name_tag[key] = die
        return best_by_name_tag, name_index

    def _canonical(self, die):
        name = die_name(die)
        if name and die.tag in STRUCT_TAGS:
            return self._best_by_name_tag.get((name, die.tag), die)
        return die

    def find_root_die(self, type_name: str):
        name = type_name.strip()
        wanted_tags = [STRUCT_TAG, CLASS_TAG, UNION_TAG, TYPEDEF_TAG]
        for prefix, tag in (("struct ", STRUCT_TAG), ("union ", UNION_TAG), ("class ", CLASS_TAG)):
            if name.startswith(prefix):
                name = name[len(prefix):].strip()
                wanted_tags = [tag]
                break
        if not self._name_index.get(name):
            raise ValueError(f"Type '{type_name}' not found in DWARF.")
        for tag in wanted_tags:
            die = self._best_by_name_tag.get((name, tag))
            if die is None:
                continue
            if tag == TYPEDEF_TAG:
                die = self._strip_typedefs(die)
                if die is None or die.tag not in STRUCT_TAGS:
                    continue
            return die
        raise ValueError(f"Type '{type_name}' is not a struct or union in DWARF.")

    def _strip_typedefs(self, die):
        while die is not None and die.tag in QUALIFIER_TAGS | {TYPEDEF_TAG}:
            die = _type_die(die)
        return die

    def build(self, die) -> TypeNode:
        if die is None:
            return Opaque("void")
        die = self._canonical(die)
        cached = self._built.get(die.offset)
        if cached is not None:
            return cached
        node = self._build(die)
        self._built[die.offset] = node
        return node

    def _build(self, die) -> TypeNode:
        tag = die.tag
        if tag == TYPEDEF_TAG or tag in QUALIFIER_TAGS:
            return self.build(_type_die(die))
        if tag == BASE_TAG:
            size = _attr_int(die, "DW_AT_byte_size")
            name = die_name(die) or "void"
            if not size:
                return Opaque(name)
            return Primitive(name, size)
        if tag == ENUM_TAG:
            size = _attr_int(die, "DW_AT_byte_size")
            name = f"enum {die_name(die) or '<anonymous>'}"
            if not size:
                return Opaque(name)
            return Primitive(name, size)
        if tag in POINTER_TAGS:
            size = _attr_int(die, "DW_AT_byte_size") or die.cu["address_size"]
            return Primitive("pointer", size)
        if tag == ARRAY_TAG:
            return self._build_array(die)
        if tag in STRUCT_TAGS:
            return self._build_aggregate(die)
        self.log(f"{tag} at 0x{die.offset:x} has no layout, treating as opaque")
        return Opaque(die_name(die) or tag)

    def _build_array(self, die) -> TypeNode:
        element = self.build(_type_die(die))
        counts: list[Optional[int]] = []
        for child in die.iter_children():
            if child.tag != "DW_TAG_subrange_type":
                continue
            count = _attr_int(child, "DW_AT_count")
            if count is None:
                upper = _attr_int(child, "DW_AT_upper_bound")
                if upper is not None and upper >= 0:
                    count = upper + 1
            counts.append(count)
        if not counts:
            return FlexibleArray(element)
        inner = [count for count in counts[1:]]
        if any(not count for count in inner):
            raise UnsupportedConstruct(f"array at 0x{die.offset:x} has a variable inner dimension")
        if inner:
            element = Array(element, tuple(inner))
        if not counts[0]:
            return FlexibleArray(element)
        if isinstance(element, Array):
            return Array(element.element, (counts[0],) + element.dimensions)
        return Array(element, (counts[0],))

    def _build_aggregate(self, die) -> TypeNode:
        kind_cls = Union if die.tag == UNION_TAG else Struct
        name = die_name(die)
        declaration = die.attributes.get("DW_AT_declaration")
        if declaration is not None and declaration.value:
            prefix = "union" if kind_cls is Union else "struct"
            return Opaque(f"{prefix} {name}" if name else prefix)
        if die.offset in self._building:
            raise UnsupportedConstruct(f"'{name}' contains itself by value")

        self._building.add(die.offset)
        try:
            members = []
            for child in die.iter_children():
                if child.tag == "DW_TAG_inheritance":
                    self.log(f"{name}: base class subobjects are not modelled")
                    continue
                if child.tag != "DW_TAG_member" or _attr_int(child, "DW_AT_artificial"):
                    continue
                members.append(self._build_member(child))
        finally:
            self._building.discard(die.offset)

        attributes = frozenset()
        alignment = _attr_int(die, "DW_AT_alignment")
        if alignment is not None and alignment > 1:
            attributes = frozenset({Aligned(alignment)})
        return kind_cls(members=tuple(members), name=name, attributes=attributes)

    def _build_member(self, die) -> Member:
        name = die_name(die)
        member_type = self.build(_type_die(die))
        bit_size = _attr_int(die, "DW_AT_bit_size")
        if bit_size is not None:
            if not isinstance(member_type, Primitive):
                raise UnsupportedConstruct(f"bitfield '{name}' has a non-scalar base type")
            member_type = Bitfield(member_type, bit_size)
        attributes = frozenset()
        alignment = _attr_int(die, "DW_AT_alignment")
        if alignment is not None and alignment > 1:
            attributes = frozenset({Aligned(alignment)})
        return Member(type=member_type, name=name, attributes=attributes)

    def member_offset(self, die, parent_tag: str) -> Optional[int]:
        attr = die.attributes.get("DW_AT_data_member_location")
        if attr is None:
            return 0 if parent_tag == UNION_TAG else None
        value = attr.value
        if isinstance(value, int):
            return value
        if isinstance(value, (bytes, list)):
            ops = self.expr_parser.parse_expr(value)
            if len(ops) == 1 and ops[0].op_name in {"DW_OP_plus_uconst", "DW_OP_constu", "DW_OP_consts"}:
                return int(ops[0].args[0])
        return None

    def absolute_bit_offset(self, die, byte_offset: Optional[int]) -> Optional[int]:
        data_bit_offset = _attr_int(die, "DW_AT_data_bit_offset")
        if data_bit_offset is not None:
            return data_bit_offset
        bit_offset = _attr_int(die, "DW_AT_bit_offset")
        bit_size = _attr_int(die, "DW_AT_bit_size")
        if bit_offset is None or bit_size is None or byte_offset is None:
            return None
        if not self.dwarfinfo.config.little_endian:
            return byte_offset * 8 + bit_offset
        storage = _attr_int(die, "DW_AT_byte_size")
        if storage is None:
            base = self._strip_typedefs(_type_die(die))
            storage = _attr_int(base, "DW_AT_byte_size") if base is not None else None
        if storage is None:
            return None
        return byte_offset * 8 + storage * 8 - bit_offset - bit_size

    def expected_members(self, die, base: int = 0) -> list[DwarfMember]:
        """Compiler-recorded placements, with anonymous members promoted."""
        out: list[DwarfMember] = []
        for child in die.iter_children():
            if child.tag != "DW_TAG_member" or _attr_int(child, "DW_AT_artificial"):
                continue
            offset = self.member_offset(child, die.tag)
            absolute = None if offset is None else base + offset
            name = die_name(child)
            if name is None:
                inner = self._strip_typedefs(_type_die(child))
                if inner is not None and inner.tag in STRUCT_TAGS and absolute is not None:
                    out.extend(self.expected_members(self._canonical(inner), absolute))
                continue
            bit_size = _attr_int(child, "DW_AT_bit_size")
            bit_offset = None
            if bit_size is not None:
                bit_offset = self.absolute_bit_offset(child, offset)
                if bit_offset is not None:
                    bit_offset += base * 8
            out.append(DwarfMember(name=name, byte_offset=absolute, bit_offset=bit_offset, bit_size=bit_size))
        return out

    def build_type(self, type_name: str) -> DwarfType:
        die = self._canonical(self.find_root_die(type_name))
        node = self.build(die)
        return DwarfType(
            name=type_name,
            node=node,
            size=_attr_int(die, "DW_AT_byte_size"),
            members=self.expected_members(die),
        )
