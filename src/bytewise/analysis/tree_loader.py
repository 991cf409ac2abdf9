from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .layout_errors import TypeTreeFormatError, UnsupportedConstruct
from .layout_profile import ABIProfile, get_profile, normalize_type_name, profile_from_dict
from .layout_types import (
    Aligned,
    Array,
    Bitfield,
    FlexibleArray,
    Member,
    Opaque,
    Packed,
    Primitive,
    Struct,
    TypeNode,
    Union,
)


AGGREGATE_KINDS = {"struct", "union"}
ENTRY_KINDS = AGGREGATE_KINDS | {"array", "flexible_array", "bitfield", "primitive", "typedef"}
MEMBER_KEYS = {"name", "type", "bits", "dims", "flexible", "packed", "aligned"}
AGGREGATE_KEYS = {"kind", "name", "members", "pack", "packed", "aligned"}


@dataclass
class TreeDocument:
    types: dict[str, TypeNode] = field(default_factory=dict)
    profile: Optional[ABIProfile] = None
    source: str = "<document>"

    def aggregates(self) -> list[tuple[str, TypeNode]]:
        out: list[tuple[str, TypeNode]] = []
        seen: list[TypeNode] = []
        for name, node in self.types.items():
            if not isinstance(node, (Struct, Union)) or any(node is other for other in seen):
                continue
            seen.append(node)
            out.append((name, node))
        return out

    def get(self, name: str) -> TypeNode:
        node = self.types.get(name)
        if node is None:
            for prefix in ("struct ", "union "):
                if name.startswith(prefix):
                    node = self.types.get(name[len(prefix):].strip())
                    break
        if node is None:
            available = ", ".join(self.types) or "none"
            raise TypeTreeFormatError(f"Type '{name}' not found in {self.source}. Available: {available}.")
        return node


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class _DocumentBuilder:
    def __init__(self, raw_types: dict, source: str) -> None:
        self.raw_types = raw_types
        self.source = source
        self.resolved: dict[str, TypeNode] = {}
        self._resolving: list[str] = []

    def fail(self, where: str, message: str) -> TypeTreeFormatError:
        return TypeTreeFormatError(f"{self.source}: {where}: {message}")

    def build_all(self) -> dict[str, TypeNode]:
        for name in self.raw_types:
            self.resolve_entry(name)
        return {name: self.resolved[name] for name in self.raw_types}

    def resolve_entry(self, name: str) -> TypeNode:
        if name in self.resolved:
            return self.resolved[name]
        if name in self._resolving:
            chain = " -> ".join(self._resolving[self._resolving.index(name):] + [name])
            raise UnsupportedConstruct(f"type contains itself by value ({chain})", path=[name])
        self._resolving.append(name)
        try:
            node = self.build_spec(self.raw_types[name], f"types.{name}", default_name=name)
        finally:
            self._resolving.pop()
        self.resolved[name] = node
        return node

    def resolve_name(self, spelled: str, where: str) -> TypeNode:
        text = normalize_type_name(spelled)
        if not text:
            raise self.fail(where, "empty type name")
        if text.endswith("*"):
            return Primitive(text)
        for kind in AGGREGATE_KINDS:
            prefix = f"{kind} "
            if text.startswith(prefix):
                tag = text[len(prefix):].strip()
                raw = self.raw_types.get(tag)
                if isinstance(raw, dict) and raw.get("kind") == kind:
                    return self.resolve_entry(tag)
                return Opaque(text)
        if text in self.raw_types:
            return self.resolve_entry(text)
        return Primitive(text)

    def build_spec(self, spec, where: str, default_name: Optional[str] = None) -> TypeNode:
        if isinstance(spec, str):
            return self.resolve_name(spec, where)
        if not isinstance(spec, dict):
            raise self.fail(where, "type must be a string or an object")
        kind = spec.get("kind")
        if kind not in ENTRY_KINDS:
            raise self.fail(where, f"kind must be one of {sorted(ENTRY_KINDS)}, got {kind!r}")

        if kind in AGGREGATE_KINDS:
            return self.build_aggregate(kind, spec, where, default_name)
        if kind == "typedef":
            if "type" not in spec:
                raise self.fail(where, "typedef needs a 'type'")
            return self.build_spec(spec["type"], f"{where}.type")
        if kind == "primitive":
            name = spec.get("name", default_name)
            if not isinstance(name, str) or not name:
                raise self.fail(where, "primitive needs a 'name'")
            size = spec.get("size")
            alignment = spec.get("alignment")
            for key, value in (("size", size), ("alignment", alignment)):
                if value is not None and not _is_int(value):
                    raise self.fail(where, f"primitive {key} must be an integer")
            return Primitive(normalize_type_name(name), size, alignment)
        if kind == "bitfield":
            width = spec.get("width")
            if not _is_int(width):
                raise self.fail(where, "bitfield needs an integer 'width'")
            return Bitfield(self.build_base(spec.get("base"), f"{where}.base"), width)

        if "element" not in spec:
            raise self.fail(where, f"{kind} needs an 'element'")
        element = self.build_spec(spec["element"], f"{where}.element")
        if kind == "flexible_array":
            return FlexibleArray(element)
        return Array(element, self.build_dims(spec.get("dimensions"), f"{where}.dimensions"))

    def build_base(self, spec, where: str) -> Primitive:
        if spec is None:
            raise self.fail(where, "bitfield needs a base type")
        base = self.build_spec(spec, where)
        if not isinstance(base, Primitive):
            raise self.fail(where, "bitfield base must be a primitive type")
        return base

    def build_dims(self, dims, where: str) -> tuple:
        if not isinstance(dims, list) or not dims:
            raise self.fail(where, "dimensions must be a non-empty list")
        for dim in dims:
            # Non-constant dimensions are kept so the engine can reject them.
            if not (_is_int(dim) or isinstance(dim, str)):
                raise self.fail(where, f"dimension {dim!r} must be an integer")
        return tuple(dims)

    def build_attributes(self, spec: dict, where: str) -> frozenset:
        attributes = set()
        packed = spec.get("packed", False)
        if not isinstance(packed, bool):
            raise self.fail(where, "'packed' must be true or false")
        if packed:
            attributes.add(Packed())
        if "aligned" in spec:
            aligned = spec["aligned"]
            if not _is_int(aligned):
                raise self.fail(where, "'aligned' must be an integer")
            attributes.add(Aligned(aligned))
        return frozenset(attributes)

    def build_aggregate(self, kind: str, spec: dict, where: str, default_name: Optional[str]) -> TypeNode:
        unknown = sorted(set(spec) - AGGREGATE_KEYS)
        if unknown:
            raise self.fail(where, f"unknown key(s) {', '.join(unknown)}")
        name = spec.get("name", default_name)
        if name is not None and not isinstance(name, str):
            raise self.fail(where, "'name' must be a string")
        pack = spec.get("pack")
        if pack is not None and not _is_int(pack):
            raise self.fail(where, "'pack' must be an integer")
        raw_members = spec.get("members")
        if not isinstance(raw_members, list):
            raise self.fail(where, f"{kind} needs a 'members' list")
        members = tuple(
            self.build_member(raw, f"{where}.members[{index}]") for index, raw in enumerate(raw_members)
        )
        node_cls = Struct if kind == "struct" else Union
        return node_cls(members=members, name=name, pack=pack, attributes=self.build_attributes(spec, where))

    def build_member(self, raw, where: str) -> Member:
        if not isinstance(raw, dict):
            raise self.fail(where, "member must be an object")
        unknown = sorted(set(raw) - MEMBER_KEYS)
        if unknown:
            raise self.fail(where, f"unknown key(s) {', '.join(unknown)}")
        name = raw.get("name")
        if name is not None and (not isinstance(name, str) or not name):
            raise self.fail(where, "'name' must be a non-empty string or null")
        if "type" not in raw:
            raise self.fail(where, "member needs a 'type'")

        shapes = [key for key in ("bits", "dims", "flexible") if key in raw]
        if len(shapes) > 1:
            raise self.fail(where, f"'{shapes[0]}' and '{shapes[1]}' cannot be combined")

        if "bits" in raw:
            width = raw["bits"]
            if not _is_int(width):
                raise self.fail(where, "'bits' must be an integer")
            member_type: TypeNode = Bitfield(self.build_base(raw["type"], f"{where}.type"), width)
        else:
            member_type = self.build_spec(raw["type"], f"{where}.type")
            if "dims" in raw:
                member_type = Array(member_type, self.build_dims(raw["dims"], f"{where}.dims"))
            elif raw.get("flexible", False) is True:
                member_type = FlexibleArray(member_type)
            elif "flexible" in raw and raw["flexible"] is not False:
                raise self.fail(where, "'flexible' must be true or false")

        return Member(type=member_type, name=name, attributes=self.build_attributes(raw, where))


def parse_document(data, source: str = "<document>") -> TreeDocument:
    if not isinstance(data, dict):
        raise TypeTreeFormatError(f"{source}: document must be a JSON object")
    unknown = sorted(set(data) - {"profile", "types"})
    if unknown:
        raise TypeTreeFormatError(f"{source}: unknown top-level key(s) {', '.join(unknown)}")
    raw_types = data.get("types")
    if not isinstance(raw_types, dict):
        raise TypeTreeFormatError(f"{source}: 'types' must be an object mapping names to types")

    profile = None
    raw_profile = data.get("profile")
    if isinstance(raw_profile, str):
        profile = get_profile(raw_profile)
    elif isinstance(raw_profile, dict):
        profile = profile_from_dict(raw_profile, default_name=Path(source).stem)
    elif raw_profile is not None:
        raise TypeTreeFormatError(f"{source}: 'profile' must be a name or an object")

    builder = _DocumentBuilder(raw_types, source)
    return TreeDocument(types=builder.build_all(), profile=profile, source=source)


def load_document(path: str) -> TreeDocument:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise TypeTreeFormatError(f"{path}: invalid JSON: {exc}") from None
    return parse_document(data, source=path)
