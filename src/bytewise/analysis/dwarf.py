from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from elftools.elf.elffile import ELFFile

from .dwarf_macho import dwarfinfo_from_macho
from .dwarf_tree import STRUCT_TAGS, DwarfTreeBuilder, die_name
from .layout_bitfield import allocation_bit
from .layout_engine import LayoutEngine
from .layout_names import build_name_table
from .layout_profile import DEFAULT_PROFILE, ABIProfile
from .layout_types import LayoutResult
from .layout_utils import LogFn


macho_magics = {
    b"\xfe\xed\xfa\xce",
    b"\xce\xfa\xed\xfe",
    b"\xfe\xed\xfa\xcf",
    b"\xcf\xfa\xed\xfe",
    b"\xca\xfe\xba\xbe",
    b"\xbe\xba\xfe\xca",
}


def detect_container_magic(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read(4)


def is_binary(path: str) -> bool:
    magic = detect_container_magic(path)
    return magic == b"\x7fELF" or magic in macho_magics


def monkeypatch() -> None:
    # pyelftools reads DW_FORM_strx with a fixed width; it is a ULEB128.
    import elftools.dwarf.dwarfinfo

    if getattr(elftools.dwarf.dwarfinfo, "_bytewise_strx_patch", False):
        return

    old_create_structs = elftools.dwarf.dwarfinfo.DWARFStructs._create_structs

    def _create_structs(self):
        old_create_structs(self)
        self.Dwarf_dw_form["DW_FORM_strx"] = self.the_Dwarf_uleb128
        if "DW_FORM_strx4" in self.Dwarf_dw_form:
            self.Dwarf_dw_form["DW_FORM_strx4"] = self.the_Dwarf_uint32

    elftools.dwarf.dwarfinfo.DWARFStructs._create_structs = _create_structs
    elftools.dwarf.dwarfinfo._bytewise_strx_patch = True


def dwarfinfo_from_path(filename: str, arch: str | None):
    monkeypatch()
    magic = detect_container_magic(filename)
    if magic == b"\x7fELF":
        with open(filename, "rb") as f:
            elf = ELFFile(f)
            if not elf.has_dwarf_info():
                raise ValueError("ELF file does not contain DWARF information.")
            return elf.get_dwarf_info()
    if magic in macho_magics:
        return dwarfinfo_from_macho(filename, arch=arch)
    raise ValueError("Unsupported file format: expected ELF or Mach-O.")


def scan_struct_types(
    dwarfinfo, name_filter: str | None = None, limit: int = 100
) -> tuple[int, dict[str, int], list[tuple[str, str]]]:
    """Count named struct/union/class DIEs and sample their names."""
    if limit < 0:
        raise ValueError("--limit must be >= 0")
    needle = name_filter.lower() if name_filter else None
    counts: dict[str, int] = {}
    seen: set[tuple[str, str]] = set()
    for cu in dwarfinfo.iter_CUs():
        for die in cu.iter_DIEs():
            if die.tag not in STRUCT_TAGS:
                continue
            name = die_name(die)
            if not name or (needle and needle not in name.lower()):
                continue
            if (die.tag, name) in seen:
                continue
            seen.add((die.tag, name))
            counts[die.tag] = counts.get(die.tag, 0) + 1
    sample = sorted(seen)[:limit]
    return len(seen), counts, sample


def format_types_summary(total: int, counts: dict[str, int], sample: list[tuple[str, str]]) -> str:
    lines = [f"{total} named struct/union types found in DWARF."]
    for tag in sorted(counts):
        lines.append(f"{tag}: {counts[tag]}")
    if sample:
        lines.append("Sample types:")
        for tag, name in sample:
            lines.append(f"{tag} {name}")
    return "\n".join(lines) + "\n"


@dataclass
class Mismatch:
    what: str
    expected: object
    computed: object

    def __str__(self) -> str:
        return f"{self.what}: DWARF says {self.expected}, computed {self.computed}"


@dataclass
class VerifyReport:
    type_name: str
    profile: str
    layout: LayoutResult
    checked: int = 0
    mismatches: list[Mismatch] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.mismatches

    def format(self) -> str:
        status = "OK" if self.ok else f"{len(self.mismatches)} mismatch(es)"
        lines = [
            f"{self.layout.kind} {self.type_name} under {self.profile}: "
            f"size={self.layout.size} align={self.layout.alignment}, "
            f"{self.checked} member(s) checked, {status}"
        ]
        lines.extend(f"  {mismatch}" for mismatch in self.mismatches)
        return "\n".join(lines) + "\n"


def verify_type(
    dwarfinfo,
    type_name: str,
    profile: ABIProfile = DEFAULT_PROFILE,
    engine: Optional[LayoutEngine] = None,
    log: Optional[LogFn] = None,
) -> VerifyReport:
    """Lay out a DWARF struct/union and compare it with the compiler's own
    offsets and size."""
    builder = DwarfTreeBuilder(dwarfinfo, log=log)
    dwarf_type = builder.build_type(type_name)
    engine = engine or LayoutEngine()
    layout = engine.compute_layout(dwarf_type.node, profile)
    report = VerifyReport(type_name=type_name, profile=profile.name, layout=layout)

    if dwarf_type.size is not None and dwarf_type.size != layout.size:
        report.mismatches.append(Mismatch("size", dwarf_type.size, layout.size))

    table = build_name_table(layout)
    for expected in dwarf_type.members:
        entry = table.get(expected.name)
        if entry is None:
            report.mismatches.append(Mismatch(f"{expected.name}", "present", "missing"))
            continue
        report.checked += 1
        if expected.bit_size is not None:
            if expected.bit_offset is None or entry.bit_offset is None:
                continue
            computed_bits = allocation_bit(
                entry.byte_offset, entry.storage_size, entry.bit_offset, entry.bit_width, profile.bitfield_fill_direction
            )
            if computed_bits != expected.bit_offset:
                report.mismatches.append(Mismatch(f"{expected.name} bit offset", expected.bit_offset, computed_bits))
            continue
        if expected.byte_offset is not None and expected.byte_offset != entry.byte_offset:
            report.mismatches.append(Mismatch(f"{expected.name} offset", expected.byte_offset, entry.byte_offset))

    if log is not None:
        log(f"{type_name}: {report.checked} member(s) compared, {len(report.mismatches)} mismatch(es)")
    return report
