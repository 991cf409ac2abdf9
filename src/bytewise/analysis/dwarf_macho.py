import io
from typing import Dict, Optional

from elftools.dwarf.dwarfinfo import DWARFInfo, DebugSectionDescriptor, DwarfConfig
from macholib import mach_o
from macholib.MachO import MachO


# DWARFInfo keyword -> Mach-O section name in the __DWARF segment.
SECTION_KEYWORDS = {
    "debug_info_sec": "__debug_info",
    "debug_aranges_sec": "__debug_aranges",
    "debug_abbrev_sec": "__debug_abbrev",
    "debug_frame_sec": "__debug_frame",
    "eh_frame_sec": "__eh_frame",
    "debug_str_sec": "__debug_str",
    "debug_loc_sec": "__debug_loc",
    "debug_ranges_sec": "__debug_ranges",
    "debug_line_sec": "__debug_line",
    "debug_pubtypes_sec": "__debug_pubtypes",
    "debug_pubnames_sec": "__debug_pubnames",
    "debug_addr_sec": "__debug_addr",
    "debug_str_offsets_sec": "__debug_str_offs",
    "debug_line_str_sec": "__debug_line_str",
    "debug_loclists_sec": "__debug_loclists",
    "debug_rnglists_sec": "__debug_rnglists",
    "debug_sup_sec": "__debug_sup",
    "gnu_debugaltlink_sec": "__gnu_debugaltlink",
    "debug_types_sec": "__debug_types",
}

CPU_ARCH = {
    "x86_64": ("x86_64", "x64"),
    "i386": ("x86", "x86"),
    "arm64": ("arm64", "AArch64"),
    "arm": ("arm", "ARM"),
    "powerpc": ("ppc", "PPC"),
    "powerpc64": ("ppc64", "PPC64"),
}

ARCH_ALIASES = {
    "x86_64": {"x86_64", "x64", "amd64"},
    "x86": {"x86", "i386", "i686"},
    "arm64": {"arm64", "aarch64"},
    "arm64e": {"arm64e"},
    "arm": {"arm", "armv7", "armv7s"},
    "ppc": {"ppc", "powerpc"},
    "ppc64": {"ppc64", "powerpc64"},
}


def _cstr(value: bytes) -> str:
    return value.split(b"\x00", 1)[0].decode("utf-8", "replace")


def _norm(value: str) -> str:
    return value.lower().replace("-", "").replace("_", "")


def slice_arch(header) -> tuple[str, str]:
    """Return (arch name, pyelftools machine_arch) for one Mach-O slice."""
    cpu = mach_o.CPU_TYPE_NAMES.get(header.header.cputype, "unknown").lower()
    name, machine = CPU_ARCH.get(cpu, (cpu, None))
    if name == "arm64" and header.header.cpusubtype == 2:
        name = "arm64e"
    if machine is None:
        machine = "x64" if _is_64(header) else "x86"
    return name, machine


def _is_64(header) -> bool:
    return header.header.magic in (mach_o.MH_MAGIC_64, mach_o.MH_CIGAM_64)


def _wants(requested: str, candidate: str) -> bool:
    wanted = _norm(requested)
    if wanted == _norm(candidate):
        return True
    return wanted in {_norm(alias) for alias in ARCH_ALIASES.get(candidate, ())}


def _segments(header):
    for load_cmd, cmd, data in header.commands:
        if load_cmd.cmd in (mach_o.LC_SEGMENT, mach_o.LC_SEGMENT_64):
            yield cmd, data


def pick_slice(macho: MachO, arch: Optional[str]):
    if not macho.headers:
        return None
    if arch:
        names = []
        for header in macho.headers:
            name, _ = slice_arch(header)
            names.append(name)
            if _wants(arch, name):
                return header
        raise ValueError(f"Requested arch '{arch}' not found. Available: {', '.join(sorted(set(names)))}.")
    for header in macho.headers:
        if any(_cstr(cmd.segname) == "__DWARF" for cmd, _ in _segments(header)):
            return header
    return macho.headers[0]


def read_dwarf_sections(fileobj, header) -> Dict[str, DebugSectionDescriptor]:
    wanted = set(SECTION_KEYWORDS.values())
    found: Dict[str, DebugSectionDescriptor] = {}
    for _, sections in _segments(header):
        for section in sections:
            name = _cstr(section.sectname)
            if name not in wanted or name in found:
                continue
            offset = header.offset + section.offset
            fileobj.seek(offset)
            payload = fileobj.read(section.size)
            found[name] = DebugSectionDescriptor(
                io.BytesIO(payload), name, offset, section.size, getattr(section, "addr", 0)
            )
    return found


def dwarfinfo_from_macho(path: str, arch: Optional[str] = None) -> DWARFInfo:
    header = pick_slice(MachO(path), arch)
    if header is None:
        raise ValueError(f"No Mach-O headers found in {path}.")
    _, machine_arch = slice_arch(header)

    with open(path, "rb") as fileobj:
        sections = read_dwarf_sections(fileobj, header)
    if "__debug_info" not in sections:
        raise ValueError("Mach-O file does not contain a __debug_info section.")

    magic = header.header.magic
    config = DwarfConfig(
        little_endian=magic in (mach_o.MH_MAGIC, mach_o.MH_MAGIC_64),
        default_address_size=8 if _is_64(header) else 4,
        machine_arch=machine_arch,
    )
    return DWARFInfo(
        config=config,
        **{keyword: sections.get(section) for keyword, section in SECTION_KEYWORDS.items()},
    )
