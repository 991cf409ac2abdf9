from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .layout_errors import DuplicateMember
from .layout_types import LayoutResult, MemberLayout, TypeNode


@dataclass(frozen=True)
class NameEntry:
    """Where a name visible in an aggregate's scope actually lives.

    ``path`` lists the members walked to reach the field; anonymous members
    appear as ``None``.
    """

    path: tuple[Optional[str], ...]
    type: TypeNode
    byte_offset: int
    bit_offset: Optional[int] = None
    bit_width: Optional[int] = None
    storage_size: Optional[int] = None
    layout: Optional[LayoutResult] = field(default=None, compare=False, repr=False)

    @property
    def path_text(self) -> str:
        return ".".join(part if part is not None else "(anonymous)" for part in self.path)


def _entry(member: MemberLayout, path: tuple[Optional[str], ...], offset: int) -> NameEntry:
    return NameEntry(
        path=path,
        type=member.type,
        byte_offset=offset,
        bit_offset=member.bit_offset,
        bit_width=member.bit_width,
        storage_size=member.size if member.is_bitfield else None,
        layout=member.layout,
    )


def _scope_entries(result: LayoutResult, base: int) -> list[tuple[str, NameEntry]]:
    entries: list[tuple[str, NameEntry]] = []
    for member in result.members:
        if member.promoted:
            continue
        offset = base + member.byte_offset
        if member.name is not None:
            entries.append((member.name, _entry(member, (member.name,), offset)))
            continue
        if member.layout is None:
            continue
        for name, inner in _scope_entries(member.layout, offset):
            entries.append(
                (
                    name,
                    NameEntry(
                        path=(None,) + inner.path,
                        type=inner.type,
                        byte_offset=inner.byte_offset,
                        bit_offset=inner.bit_offset,
                        bit_width=inner.bit_width,
                        storage_size=inner.storage_size,
                        layout=inner.layout,
                    ),
                )
            )
    return entries


def build_name_table(result: LayoutResult) -> dict[str, NameEntry]:
    """Flatten a layout into ``{visible name: NameEntry}``.

    Fields of anonymous members are promoted under their own names; fields of
    named aggregate members are added under dotted names (``hdr.len``).
    Promotion that makes two fields share one name raises ``DuplicateMember``.
    """
    table: dict[str, NameEntry] = {}
    for name, entry in _scope_entries(result, 0):
        if name in table:
            raise DuplicateMember(
                f"'{name}' is declared at {table[name].path_text} and {entry.path_text}", path=[name]
            )
        table[name] = entry

    for name, entry in list(table.items()):
        if entry.layout is None:
            continue
        for sub_name, sub_entry in build_name_table(entry.layout).items():
            table[f"{name}.{sub_name}"] = NameEntry(
                path=entry.path + sub_entry.path,
                type=sub_entry.type,
                byte_offset=entry.byte_offset + sub_entry.byte_offset,
                bit_offset=sub_entry.bit_offset,
                bit_width=sub_entry.bit_width,
                storage_size=sub_entry.storage_size,
                layout=sub_entry.layout,
            )
    return table
