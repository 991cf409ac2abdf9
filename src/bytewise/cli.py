import argparse
import sys
from pathlib import Path

from elftools.common.exceptions import DWARFError, ELFError

from .analysis.dwarf import dwarfinfo_from_path, format_types_summary, is_binary, scan_struct_types, verify_type
from .analysis.layout_engine import LayoutEngine
from .analysis.layout_errors import LayoutError
from .analysis.layout_names import build_name_table
from .analysis.layout_profile import DEFAULT_PROFILE, resolve_profile
from .analysis.layout_render import ReportEntry, render_c, render_json, render_markdown, render_text
from .analysis.layout_reorder import suggest_reorder
from .analysis.layout_utils import make_log, parse_channels
from .analysis.tree_loader import load_document


FORMATS = ("text", "json", "markdown", "c")

EXIT_OK = 0
EXIT_BAD_INPUT = 1
EXIT_LAYOUT_ERROR = 2
EXIT_MISMATCH = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compute C struct/union layouts from a JSON type tree, or check them against DWARF."
    )
    parser.add_argument("path", help="JSON type-tree document, or an ELF/Mach-O file with DWARF sections.")
    parser.add_argument(
        "--type",
        dest="type_name",
        default=None,
        help="Only lay out this type (documents) or verify it against DWARF (binaries).",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="ABI profile name (lp64, sysv-x86_64, ilp32, llp64) or a JSON profile file.",
    )
    parser.add_argument(
        "--format",
        choices=FORMATS,
        default="text",
        help="Output format for document layouts (default: text).",
    )
    parser.add_argument(
        "--suggest-reorder",
        action="store_true",
        help="Suggest a member order that minimises padding.",
    )
    parser.add_argument(
        "--lookup",
        default=None,
        help="Print where a member name (e.g. u1, hdr.len) lives instead of the full layout.",
    )
    parser.add_argument(
        "--arch",
        help="Select a specific Mach-O slice (e.g. x86_64, arm64, arm64e).",
        default=None,
    )
    parser.add_argument(
        "--filter",
        help="Only list types whose name contains this substring (case-insensitive).",
        default=None,
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Limit number of type names listed from DWARF (default: 100, use 0 to suppress).",
    )
    parser.add_argument(
        "--verbose",
        default="",
        help="Comma-separated list of debug logs to enable (bitfields, cache, dwarf, or 'all').",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Write output to this path instead of stdout.",
    )
    return parser


def run_document(args, verbose: set[str]) -> tuple[str, int]:
    document = load_document(args.path)
    if args.profile:
        profile = resolve_profile(args.profile)
    else:
        profile = document.profile or DEFAULT_PROFILE
    engine = LayoutEngine(verbose=verbose)

    if args.type_name:
        targets = [(args.type_name, document.get(args.type_name))]
    else:
        targets = document.aggregates()

    entries = []
    for name, node in targets:
        result = engine.compute_layout(node, profile)
        suggestion = suggest_reorder(node, profile, engine) if args.suggest_reorder else None
        entries.append(ReportEntry(name=name, node=node, result=result, suggestion=suggestion))

    if args.lookup:
        lines = []
        for entry in entries:
            found = build_name_table(entry.result).get(args.lookup)
            if found is None:
                raise ValueError(f"'{args.lookup}' is not a member of {entry.name}.")
            text = f"{entry.name}.{args.lookup}: offset {found.byte_offset} via {found.path_text}"
            if found.bit_width is not None:
                text += f", bits {found.bit_offset}..{found.bit_offset + found.bit_width}"
            lines.append(text)
        return "\n".join(lines) + "\n", EXIT_OK

    if args.format == "json":
        return render_json(entries, profile), EXIT_OK
    if args.format == "markdown":
        return render_markdown(entries, title=Path(args.path).name), EXIT_OK
    if args.format == "c":
        return render_c(entries), EXIT_OK
    return "\n".join(render_text(entry) for entry in entries), EXIT_OK


def run_binary(args, verbose: set[str]) -> tuple[str, int]:
    dwarfinfo = dwarfinfo_from_path(args.path, arch=args.arch)
    if not args.type_name:
        total, counts, sample = scan_struct_types(dwarfinfo, name_filter=args.filter, limit=args.limit)
        return format_types_summary(total, counts, sample), EXIT_OK

    profile = resolve_profile(args.profile) if args.profile else DEFAULT_PROFILE
    report = verify_type(
        dwarfinfo,
        args.type_name,
        profile=profile,
        engine=LayoutEngine(verbose=verbose),
        log=make_log("dwarf", verbose),
    )
    entry = ReportEntry(name=args.type_name, node=None, result=report.layout)
    return report.format() + render_text(entry), EXIT_OK if report.ok else EXIT_MISMATCH


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    verbose = parse_channels(args.verbose)

    try:
        if is_binary(args.path):
            output, status = run_binary(args, verbose)
        else:
            output, status = run_document(args, verbose)
    except LayoutError as exc:
        print(f"bytewise: {exc}", file=sys.stderr)
        return EXIT_LAYOUT_ERROR
    except (OSError, ValueError, ELFError, DWARFError) as exc:
        print(f"bytewise: {exc}", file=sys.stderr)
        return EXIT_BAD_INPUT

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
    else:
        print(output, end="")
    return status


if __name__ == "__main__":
    sys.exit(main())
