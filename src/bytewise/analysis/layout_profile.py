from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

from .layout_errors import ProfileError
from .layout_utils import is_power_of_two


FILL_LOW_TO_HIGH = "low-to-high"
FILL_HIGH_TO_LOW = "high-to-low"
FILL_DIRECTIONS = {FILL_LOW_TO_HIGH, FILL_HIGH_TO_LOW}

PACKING_UNIT = "unit"
PACKING_BITS = "bits"
PACKING_MODES = {PACKING_UNIT, PACKING_BITS}

POINTER_NAMES = {"pointer", "void*", "void *"}
QUALIFIERS = {"const", "volatile", "restrict", "_Atomic"}

# Sizes that do not depend on the data model. "long", "size_t" and friends are
# filled in per profile by _named_sizes().
_FIXED_SIZES = {
    "char": 1,
    "signed char": 1,
    "unsigned char": 1,
    "_Bool": 1,
    "bool": 1,
    "short": 2,
    "short int": 2,
    "signed short": 2,
    "signed short int": 2,
    "unsigned short": 2,
    "unsigned short int": 2,
    "int": 4,
    "signed": 4,
    "signed int": 4,
    "unsigned": 4,
    "unsigned int": 4,
    "long long": 8,
    "long long int": 8,
    "signed long long": 8,
    "signed long long int": 8,
    "unsigned long long": 8,
    "unsigned long long int": 8,
    "float": 4,
    "double": 8,
    "int8_t": 1,
    "uint8_t": 1,
    "int16_t": 2,
    "uint16_t": 2,
    "int32_t": 4,
    "uint32_t": 4,
    "int64_t": 8,
    "uint64_t": 8,
    "__int128": 16,
    "unsigned __int128": 16,
}

_LONG_NAMES = ("long", "long int", "signed long", "signed long int", "unsigned long", "unsigned long int")
_POINTER_SIZED_NAMES = ("size_t", "ssize_t", "ptrdiff_t", "intptr_t", "uintptr_t")


def _named_sizes(long_size: int, pointer_size: int, long_double_size: int, wchar_size: int) -> tuple[tuple[str, int], ...]:
    table = dict(_FIXED_SIZES)
    for name in _LONG_NAMES:
        table[name] = long_size
    for name in _POINTER_SIZED_NAMES:
        table[name] = pointer_size
    table["long double"] = long_double_size
    table["wchar_t"] = wchar_size
    return tuple(sorted(table.items()))


def normalize_type_name(name: str) -> str:
    words = [word for word in name.replace("*", " * ").split() if word not in QUALIFIERS]
    text = " ".join(words)
    return text.replace(" *", "*")


@dataclass(frozen=True)
class ABIProfile:
    name: str
    pointer_width_bytes: int = 8
    primitive_sizes: tuple[tuple[str, int], ...] = ()
    primitive_alignment_table: tuple[tuple[int, int], ...] = ((1, 1), (2, 2), (4, 4), (8, 8), (16, 16))
    bitfield_unit_reuse_across_base_types: bool = True
    bitfield_fill_direction: str = FILL_LOW_TO_HIGH
    bitfield_packing: str = PACKING_UNIT
    aligned_overrides_pack: bool = True
    aligned_with_packed_is_error: bool = False

    def __post_init__(self) -> None:
        if self.pointer_width_bytes not in (2, 4, 8, 16):
            raise ProfileError(f"profile {self.name}: unsupported pointer width {self.pointer_width_bytes}")
        if self.bitfield_fill_direction not in FILL_DIRECTIONS:
            raise ProfileError(
                f"profile {self.name}: bitfield_fill_direction must be one of {sorted(FILL_DIRECTIONS)}"
            )
        if self.bitfield_packing not in PACKING_MODES:
            raise ProfileError(f"profile {self.name}: bitfield_packing must be one of {sorted(PACKING_MODES)}")
        for size_class, alignment in self.primitive_alignment_table:
            if not is_power_of_two(alignment):
                raise ProfileError(f"profile {self.name}: alignment {alignment} for size {size_class} is not a power of two")

    def size_of(self, name: str) -> Optional[int]:
        spelled = normalize_type_name(name)
        if spelled in POINTER_NAMES or spelled.endswith("*"):
            return self.pointer_width_bytes
        for known, size in self.primitive_sizes:
            if known == spelled:
                return size
        return None

    def alignment_for_size(self, size: int) -> int:
        best = None
        for size_class, alignment in sorted(self.primitive_alignment_table):
            if size_class == size:
                return alignment
            if size_class < size:
                best = alignment
        if best is None:
            return 1
        return best

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "pointer_width_bytes": self.pointer_width_bytes,
            "primitive_sizes": dict(self.primitive_sizes),
            "primitive_alignment_table": {str(k): v for k, v in self.primitive_alignment_table},
            "bitfield_unit_reuse_across_base_types": self.bitfield_unit_reuse_across_base_types,
            "bitfield_fill_direction": self.bitfield_fill_direction,
            "bitfield_packing": self.bitfield_packing,
            "aligned_overrides_pack": self.aligned_overrides_pack,
            "aligned_with_packed_is_error": self.aligned_with_packed_is_error,
        }


LP64 = ABIProfile(
    name="lp64",
    pointer_width_bytes=8,
    primitive_sizes=_named_sizes(long_size=8, pointer_size=8, long_double_size=16, wchar_size=4),
)

SYSV_X86_64 = replace(LP64, name="sysv-x86_64", bitfield_packing=PACKING_BITS)

ILP32 = ABIProfile(
    name="ilp32",
    pointer_width_bytes=4,
    primitive_sizes=_named_sizes(long_size=4, pointer_size=4, long_double_size=12, wchar_size=4),
    primitive_alignment_table=((1, 1), (2, 2), (4, 4), (8, 4), (16, 16)),
    bitfield_packing=PACKING_BITS,
)

LLP64 = ABIProfile(
    name="llp64",
    pointer_width_bytes=8,
    primitive_sizes=_named_sizes(long_size=4, pointer_size=8, long_double_size=8, wchar_size=2),
    bitfield_unit_reuse_across_base_types=False,
)

PROFILES = {profile.name: profile for profile in (LP64, SYSV_X86_64, ILP32, LLP64)}
DEFAULT_PROFILE = LP64


def get_profile(name: str) -> ABIProfile:
    profile = PROFILES.get(name)
    if profile is None:
        available = ", ".join(sorted(PROFILES))
        raise ProfileError(f"Unknown ABI profile '{name}'. Available: {available}.")
    return profile


_SCALAR_OPTIONS = {
    "pointer_width_bytes": int,
    "bitfield_unit_reuse_across_base_types": bool,
    "bitfield_fill_direction": str,
    "bitfield_packing": str,
    "aligned_overrides_pack": bool,
    "aligned_with_packed_is_error": bool,
}


def profile_from_dict(data: dict, default_name: str = "custom") -> ABIProfile:
    if not isinstance(data, dict):
        raise ProfileError("profile must be a JSON object")
    known = {f.name for f in fields(ABIProfile)} | {"base"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ProfileError(f"unknown profile option(s): {', '.join(unknown)}")

    base = get_profile(data.get("base", DEFAULT_PROFILE.name))
    changes: dict = {"name": str(data.get("name", default_name))}
    for key, expected in _SCALAR_OPTIONS.items():
        if key not in data:
            continue
        value = data[key]
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ProfileError(f"profile option {key} must be of type {expected.__name__}")
        changes[key] = value

    sizes = dict(base.primitive_sizes)
    if "pointer_width_bytes" in changes:
        for name in _POINTER_SIZED_NAMES:
            sizes[name] = changes["pointer_width_bytes"]
    if "primitive_sizes" in data:
        extra = data["primitive_sizes"]
        if not isinstance(extra, dict):
            raise ProfileError("primitive_sizes must map type names to byte sizes")
        for name, size in extra.items():
            if not isinstance(size, int) or isinstance(size, bool) or size <= 0:
                raise ProfileError(f"primitive_sizes[{name!r}] must be a positive integer")
            sizes[normalize_type_name(name)] = size
    changes["primitive_sizes"] = tuple(sorted(sizes.items()))

    if "primitive_alignment_table" in data:
        table = data["primitive_alignment_table"]
        if not isinstance(table, dict):
            raise ProfileError("primitive_alignment_table must map size classes to alignments")
        merged = dict(base.primitive_alignment_table)
        for size_class, alignment in table.items():
            try:
                size_value = int(size_class)
            except (TypeError, ValueError):
                raise ProfileError(f"primitive_alignment_table key {size_class!r} is not an integer") from None
            if not isinstance(alignment, int) or isinstance(alignment, bool):
                raise ProfileError(f"primitive_alignment_table[{size_class!r}] must be an integer")
            merged[size_value] = alignment
        changes["primitive_alignment_table"] = tuple(sorted(merged.items()))

    return replace(base, **changes)


def load_profile(path: str) -> ABIProfile:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ProfileError(f"{path}: invalid JSON: {exc}") from None
    return profile_from_dict(data, default_name=Path(path).stem)


def resolve_profile(value: str) -> ABIProfile:
    if value in PROFILES:
        return PROFILES[value]
    if value.endswith(".json") or Path(value).is_file():
        return load_profile(value)
    return get_profile(value)
