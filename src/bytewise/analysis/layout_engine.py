from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Optional

from .layout_align import AlignmentResolver, check_aligned, effective_pack_cap
from .layout_errors import LayoutError, UnsupportedConstruct
from .layout_profile import DEFAULT_PROFILE, ABIProfile
from .layout_sequencer import MemberSequencer
from .layout_types import (
    Aggregate,
    Array,
    Bitfield,
    FlexibleArray,
    LayoutResult,
    Opaque,
    Primitive,
    Struct,
    TypeNode,
    Union,
    aligned_value,
    describe_type,
)
from .layout_utils import make_log, round_up


class LayoutEngine:
    """Computes and memoizes layouts keyed by ``(type tree, ABI profile)``.

    Both halves of the key are immutable, so results can be shared between
    threads; concurrent misses on the same key compute identical results and
    the first one stored wins. With ``max_entries`` set, the least recently
    used results are dropped once the cache grows past it.
    """

    def __init__(self, verbose: Optional[set[str]] = None, max_entries: Optional[int] = None) -> None:
        self._verbose = verbose or set()
        self._cache: OrderedDict[tuple[TypeNode, ABIProfile], LayoutResult] = OrderedDict()
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._log_cache = make_log("cache", self._verbose)
        self._log_bitfields = make_log("bitfields", self._verbose)

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def compute_layout(self, root: TypeNode, profile: ABIProfile = DEFAULT_PROFILE) -> LayoutResult:
        try:
            return self._layout(root, profile)
        except LayoutError as exc:
            if isinstance(root, (Struct, Union)) and root.name:
                exc.push(root.name)
            raise

    def _layout(self, node: TypeNode, profile: ABIProfile) -> LayoutResult:
        key = (node, profile)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
        if cached is not None:
            if self._log_cache is not None:
                self._log_cache(f"hit {describe_type(node)} ({profile.name})")
            return cached
        if self._log_cache is not None:
            self._log_cache(f"miss {describe_type(node)} ({profile.name})")
        result = self._compute(node, profile)
        with self._lock:
            stored = self._cache.setdefault(key, result)
            self._cache.move_to_end(key)
            if self._max_entries is not None:
                while len(self._cache) > self._max_entries:
                    self._cache.popitem(last=False)
            return stored

    def _compute(self, node: TypeNode, profile: ABIProfile) -> LayoutResult:
        resolver = AlignmentResolver(profile, lambda aggregate: self._layout(aggregate, profile))
        if isinstance(node, (Struct, Union)):
            return self._compute_aggregate(node, profile, resolver)
        if isinstance(node, (Primitive, Array)):
            extent = resolver.resolve(node)
            kind = "array" if isinstance(node, Array) else "scalar"
            return LayoutResult(kind=kind, name=describe_type(node), size=extent.size, alignment=extent.alignment)
        if isinstance(node, (FlexibleArray, Bitfield)):
            raise UnsupportedConstruct(f"{type(node).__name__} can only appear as a struct member")
        if isinstance(node, Opaque):
            raise UnsupportedConstruct(f"incomplete type '{node.name}'")
        raise UnsupportedConstruct(f"unsupported type node {type(node).__name__}")

    def _compute_aggregate(self, node: Aggregate, profile: ABIProfile, resolver: AlignmentResolver) -> LayoutResult:
        pack_cap = effective_pack_cap(node)
        sequencer = MemberSequencer(
            profile,
            resolver,
            lambda aggregate: self._layout(aggregate, profile),
            log=self._log_bitfields,
        )
        sequenced = sequencer.sequence(node.members, pack_cap, node.kind)

        alignment = sequenced.alignment
        requested = aligned_value(node.attributes)
        if requested is not None:
            check_aligned(requested, f"{node.kind} {node.name or '<anonymous>'}")
            alignment = max(alignment, requested)

        size = round_up(sequenced.end_offset, alignment)
        return LayoutResult(
            kind=node.kind,
            name=node.name,
            size=size,
            alignment=alignment,
            members=sequenced.members,
            tail_padding=size - sequenced.end_offset,
        )


SHARED_CACHE_ENTRIES = 4096

_shared_engine = LayoutEngine(max_entries=SHARED_CACHE_ENTRIES)


def compute_layout(root: TypeNode, profile: ABIProfile = DEFAULT_PROFILE) -> LayoutResult:
    return _shared_engine.compute_layout(root, profile)


def clear_cache() -> None:
    _shared_engine.clear_cache()
