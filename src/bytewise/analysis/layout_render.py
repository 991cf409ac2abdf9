from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from .layout_profile import ABIProfile
from .layout_reorder import ReorderSuggestion
from .layout_types import (
    Array,
    Bitfield,
    FlexibleArray,
    LayoutResult,
    Member,
    MemberLayout,
    Opaque,
    Primitive,
    Struct,
    TypeNode,
    Union,
    aligned_value,
    describe_type,
    is_packed,
)


@dataclass
class ReportEntry:
    name: str
    node: Optional[TypeNode]
    result: LayoutResult
    suggestion: Optional[ReorderSuggestion] = None


def _bit_note(member: MemberLayout) -> str:
    if not member.is_bitfield:
        return ""
    return f"bits {member.bit_offset}..{member.bit_offset + member.bit_width}"


def _type_label(entry: ReportEntry) -> str:
    kind = entry.result.kind
    if kind in {"struct", "union"}:
        return f"{kind} {entry.name}"
    return entry.name


def render_text(entry: ReportEntry) -> str:
    result = entry.result
    lines = [
        f"{_type_label(entry)}  size={result.size} align={result.alignment} padding={result.padding_bytes}",
    ]
    if result.members:
        lines.append(f"  {'offset':>6}  {'size':>4}  {'align':>5}  {'pad':>3}  member")
    for member in result.members:
        label = member.key if not member.promoted else f"{member.key} (promoted)"
        note = _bit_note(member)
        text = f"  {member.byte_offset:>6}  {member.size:>4}  {member.alignment:>5}  {member.padding_before:>3}  {label:<24} {describe_type(member.type)}"
        if note:
            text += f"  [{note}]"
        lines.append(text.rstrip())
    if result.tail_padding:
        lines.append(f"  tail padding: {result.tail_padding}")
    suggestion = entry.suggestion
    if suggestion is not None and suggestion.bytes_saved > 0:
        order = ", ".join(member.name or "<anonymous>" for member in suggestion.members)
        lines.append(
            f"  reorder ({order}) saves {suggestion.bytes_saved} bytes: "
            f"{suggestion.original_size} -> {suggestion.optimized_size}"
        )
    return "\n".join(lines) + "\n"


def render_json(entries: list[ReportEntry], profile: ABIProfile) -> str:
    items = []
    for entry in entries:
        item = entry.result.to_dict()
        item["name"] = entry.name
        if entry.suggestion is not None:
            item["reorder"] = {
                "members": [member.name for member in entry.suggestion.members],
                "optimized_size": entry.suggestion.optimized_size,
                "bytes_saved": entry.suggestion.bytes_saved,
            }
        items.append(item)
    payload = {"profile": profile.name, "types": items}
    return json.dumps(payload, indent=2, sort_keys=False) + "\n"


def render_markdown(entries: list[ReportEntry], title: str) -> str:
    total_bytes = sum(entry.result.size for entry in entries)
    total_padding = sum(entry.result.padding_bytes for entry in entries)
    total_savings = sum(entry.suggestion.bytes_saved for entry in entries if entry.suggestion is not None)
    optimizable = sum(1 for entry in entries if entry.suggestion is not None and entry.suggestion.bytes_saved > 0)
    ratio = f"{total_padding / total_bytes * 100:.1f}" if total_bytes else "0"

    lines = [
        f"# Struct Layout Report - {title}",
        "",
        "## Summary Statistics",
        "",
        "| Metric | Value |",
        "| :--- | :--- |",
        f"| Types Analyzed | {len(entries)} |",
        f"| Total Bytes | {total_bytes} bytes |",
        f"| Total Padding Bytes | {total_padding} bytes |",
        f"| Potential Savings | {total_savings} bytes |",
        f"| Optimizable Types | {optimizable} |",
        f"| Overall Padding Ratio | {ratio}% |",
        "",
        "---",
        "",
    ]

    for entry in entries:
        result = entry.result
        suggestion = entry.suggestion
        padding_ratio = f"{result.padding_bytes / result.size * 100:.1f}" if result.size else "0"
        lines.extend(
            [
                f"## `{_type_label(entry)}`",
                "",
                "| Statistic | Value |",
                "| :--- | :--- |",
                f"| Size | {result.size} bytes |",
                f"| Alignment | {result.alignment} bytes |",
                f"| Padding Bytes | {result.padding_bytes} bytes |",
                f"| Fields | {len(result.members)} |",
                f"| Padding Ratio | {padding_ratio}% |",
            ]
        )
        if suggestion is not None and suggestion.bytes_saved > 0:
            lines.append(f"| Optimized Size | {suggestion.optimized_size} bytes |")
            lines.append(f"| Memory Saved | {suggestion.bytes_saved} bytes ({suggestion.saving_ratio:.1f}%) |")
        lines.append("")

        if result.members:
            lines.extend(
                [
                    "| Field | Type | Size (B) | Offset (B) | Alignment (B) | Padding (B) | Notes |",
                    "| :--- | :--- | :--- | :--- | :--- | :--- | :--- |",
                ]
            )
            for member in result.members:
                notes = []
                if member.is_bitfield:
                    notes.append(f"Bitfield: {member.bit_width} bits at bit {member.bit_offset}")
                if isinstance(member.type, FlexibleArray):
                    notes.append("Flexible array")
                if member.promoted:
                    notes.append("Promoted from anonymous member")
                lines.append(
                    f"| `{member.key}` | `{describe_type(member.type)}` | {member.size} | {member.byte_offset} | "
                    f"{member.alignment} | {member.padding_before} | {', '.join(notes)} |"
                )
            lines.append("")

        if suggestion is not None and suggestion.bytes_saved > 0:
            lines.extend(
                [
                    "### Optimization Suggestion",
                    "",
                    f"Reordering fields saves **{suggestion.bytes_saved} bytes** "
                    f"({suggestion.saving_ratio:.1f}% reduction): "
                    f"{suggestion.original_size} -> {suggestion.optimized_size} bytes.",
                    "",
                    "```c",
                    render_declaration(_with_members(entry.node, suggestion.members), entry.name).rstrip(),
                    "```",
                    "",
                ]
            )
        elif suggestion is not None:
            lines.extend(["No field order saves space.", ""])
        lines.extend(["---", ""])

    return "\n".join(lines).rstrip() + "\n"


def _with_members(node: TypeNode, members: tuple[Member, ...]) -> TypeNode:
    if isinstance(node, Struct):
        return Struct(members=members, name=node.name, pack=node.pack, attributes=node.attributes)
    return node


def _attribute_suffix(attributes: frozenset) -> str:
    parts = []
    if is_packed(attributes):
        parts.append("packed")
    aligned = aligned_value(attributes)
    if aligned is not None:
        parts.append(f"aligned({aligned})")
    if not parts:
        return ""
    return f" __attribute__(({', '.join(parts)}))"


def render_decl(node: TypeNode, name: str, indent: str = "") -> str:
    if isinstance(node, Primitive):
        if node.name == "pointer":
            return f"void *{name}"
        if node.name.endswith("*"):
            base = node.name.rstrip("*").strip()
            stars = len(node.name) - len(node.name.rstrip("*"))
            return f"{base} {'*' * stars}{name}".rstrip()
        return f"{node.name} {name}".rstrip()
    if isinstance(node, (Struct, Union)):
        if node.name:
            return f"{node.kind} {node.name} {name}".rstrip()
        return f"{_render_body(node, indent)} {name}".rstrip()
    if isinstance(node, Array):
        dims = "".join(f"[{dim}]" for dim in node.dimensions)
        return render_decl(node.element, f"{name}{dims}", indent)
    if isinstance(node, FlexibleArray):
        return render_decl(node.element, f"{name}[]", indent)
    if isinstance(node, Bitfield):
        return f"{render_decl(node.base, name, indent)} : {node.width}"
    if isinstance(node, Opaque):
        return f"{node.name} {name}".rstrip()
    return f"void {name}".rstrip()


def _render_body(node, indent: str) -> str:
    inner = indent + "    "
    lines = [f"{node.kind} {{"] if not node.name else [f"{node.kind} {node.name} {{"]
    for member in node.members:
        decl = render_decl(member.type, member.name or "", inner)
        lines.append(f"{inner}{decl}{_attribute_suffix(member.attributes)};")
    lines.append(f"{indent}}}{_attribute_suffix(node.attributes)}")
    return "\n".join(lines)


def render_declaration(node: TypeNode, name: str) -> str:
    if not isinstance(node, (Struct, Union)):
        return f"typedef {render_decl(node, name)};\n"
    lines = []
    if node.pack is not None:
        lines.append(f"#pragma pack(push, {node.pack})")
    if node.name:
        lines.append(f"{_render_body(node, '')};")
    else:
        lines.append(f"typedef {_render_body(node, '')} {name};")
    if node.pack is not None:
        lines.append("#pragma pack(pop)")
    return "\n".join(lines) + "\n"


def _collect_named_deps(node: TypeNode, out: list) -> None:
    if isinstance(node, (Array, FlexibleArray)):
        _collect_named_deps(node.element, out)
        return
    if not isinstance(node, (Struct, Union)):
        return
    for member in node.members:
        _collect_named_deps(member.type, out)
    if node.name and not any(node is seen for seen in out):
        out.append(node)


def render_c(entries: list[ReportEntry]) -> str:
    """Declarations followed by static assertions of the computed layout, so a
    compiler can check it."""
    lines = ["/* Generated by bytewise */", "#include <stddef.h>", "#include <stdint.h>", ""]

    emitted: list = []
    for entry in entries:
        deps: list = []
        _collect_named_deps(entry.node, deps)
        if isinstance(entry.node, (Struct, Union)) and entry.node.name is None:
            deps.append(entry.node)
        for dep in deps:
            if any(dep is seen for seen in emitted):
                continue
            emitted.append(dep)
            lines.append(render_declaration(dep, entry.name if dep is entry.node else dep.name or "").rstrip())
            lines.append("")

    for entry in entries:
        node = entry.node
        if not isinstance(node, (Struct, Union)):
            continue
        type_name = f"{node.kind} {node.name}" if node.name else entry.name
        label = node.name or entry.name
        result = entry.result
        lines.append(f'_Static_assert(sizeof({type_name}) == 0x{result.size:x}, "{label} size");')
        lines.append(f'_Static_assert(_Alignof({type_name}) == {result.alignment}, "{label} alignment");')
        for member in result.members:
            if member.name is None or member.is_bitfield:
                continue
            lines.append(
                f"_Static_assert(offsetof({type_name}, {member.name}) == 0x{member.byte_offset:x}, "
                f'"{label}.{member.name} offset");'
            )
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
