import contextlib
import io
import os
import sys
import unittest
from concurrent.futures import ThreadPoolExecutor


REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
SRC_ROOT = os.path.join(REPO_ROOT, "src")
FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
sys.path.insert(0, SRC_ROOT)


from bytewise.analysis import layout_engine  # noqa: E402
from bytewise.analysis.layout_engine import LayoutEngine, compute_layout  # noqa: E402
from bytewise.analysis.layout_profile import ILP32, LLP64, LP64, SYSV_X86_64  # noqa: E402
from bytewise.analysis.layout_types import (  # noqa: E402
    Aligned,
    Array,
    Bitfield,
    FlexibleArray,
    Member,
    Primitive,
    Struct,
    Union,
)
from bytewise.analysis.tree_loader import load_document  # noqa: E402


CHAR = Primitive("char")
INT = Primitive("int")
DOUBLE = Primitive("double")
SIZE_T = Primitive("size_t")
ULL = Primitive("unsigned long long")


def abc(**kwargs) -> Struct:
    return Struct(
        members=(Member(CHAR, "a"), Member(INT, "b"), Member(CHAR, "c")),
        name=kwargs.pop("name", "S"),
        **kwargs,
    )


def _overlaps(a, b) -> bool:
    return a.byte_offset < b.byte_offset + b.size and b.byte_offset < a.byte_offset + a.size


def assert_well_formed(test: unittest.TestCase, result) -> None:
    test.assertEqual(result.size % result.alignment, 0)
    members = [member for member in result.members if not member.promoted]
    plain = [member for member in members if not member.is_bitfield]
    previous = 0
    previous_end = 0
    for member in members:
        test.assertLessEqual(member.byte_offset + member.size, result.size, member.key)
        if member.layout is not None:
            assert_well_formed(test, member.layout)
        if result.kind == "union":
            test.assertEqual(member.byte_offset, 0)
            continue
        test.assertGreaterEqual(member.byte_offset, previous, member.key)
        previous = member.byte_offset
        if member.is_bitfield:
            test.assertLessEqual(member.bit_offset + member.bit_width, member.size * 8, member.key)
            for other in plain:
                test.assertFalse(_overlaps(member, other), f"{member.key} overlaps {other.key}")
        else:
            test.assertGreaterEqual(member.byte_offset, previous_end, member.key)
            previous_end = member.byte_offset + member.size


class ConcreteScenarioTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = LayoutEngine()

    def test_pack_one_removes_padding(self) -> None:
        result = self.engine.compute_layout(abc(pack=1), LP64)
        self.assertEqual(result.offsets(), {"a": 0, "b": 1, "c": 5})
        self.assertEqual(result.size, 6)
        self.assertEqual(result.alignment, 1)
        self.assertEqual(result.padding_bytes, 0)

    def test_natural_alignment(self) -> None:
        result = self.engine.compute_layout(abc(), LP64)
        self.assertEqual(result.offsets(), {"a": 0, "b": 4, "c": 8})
        self.assertEqual(result.size, 12)
        self.assertEqual(result.alignment, 4)
        self.assertEqual(result.member("b").padding_before, 3)
        self.assertEqual(result.tail_padding, 3)
        self.assertEqual(result.padding_bytes, 6)
        assert_well_formed(self, result)

    def test_bitfields_with_zero_width_reset(self) -> None:
        node = Struct(
            members=(
                Member(Bitfield(INT, 3), "a"),
                Member(Bitfield(INT, 5), "b"),
                Member(Bitfield(INT, 24), "c"),
                Member(Bitfield(INT, 0)),
                Member(Bitfield(ULL, 1), "d"),
            ),
            name="BitFields",
        )
        result = self.engine.compute_layout(node, LP64)
        positions = {m.key: (m.byte_offset, m.bit_offset, m.bit_width) for m in result.members}
        self.assertEqual(
            positions,
            {"a": (0, 0, 3), "b": (0, 3, 5), "c": (0, 8, 24), "d": (8, 0, 1)},
        )
        self.assertEqual(result.size, 16)
        self.assertEqual(result.alignment, 8)
        assert_well_formed(self, result)

    def test_member_and_struct_aligned(self) -> None:
        node = Struct(
            members=(
                Member(CHAR, "a"),
                Member(INT, "b", frozenset({Aligned(16)})),
                Member(CHAR, "c"),
            ),
            name="AlignTest",
            attributes=frozenset({Aligned(8)}),
        )
        result = self.engine.compute_layout(node, LP64)
        self.assertEqual(result.offsets(), {"a": 0, "b": 16, "c": 20})
        self.assertEqual(result.size, 32)
        self.assertEqual(result.alignment, 16)

    def test_flexible_array_member(self) -> None:
        node = Struct(members=(Member(SIZE_T, "len"), Member(FlexibleArray(CHAR), "data")), name="Flex")
        result = self.engine.compute_layout(node, LP64)
        self.assertEqual(result.member("data").byte_offset, 8)
        self.assertEqual(result.member("data").size, 0)
        self.assertEqual(result.size, 8)
        self.assertEqual(result.alignment, 8)

    def test_multidimensional_array(self) -> None:
        node = Struct(members=(Member(Array(INT, (3, 2)), "matrix"),), name="ArrayTest")
        result = self.engine.compute_layout(node, LP64)
        self.assertEqual(result.member("matrix").size, 24)
        self.assertEqual(result.size, 24)
        self.assertEqual(result.alignment, 4)

    def test_anonymous_union_members_are_promoted(self) -> None:
        inner = Struct(members=(Member(INT, "a"), Member(CHAR, "b")))
        anon_union = Union(members=(Member(INT, "u1"), Member(DOUBLE, "u2")))
        node = Struct(
            members=(Member(inner, "anon"), Member(anon_union), Member(CHAR, "tail")),
            name="WithAnon",
        )
        result = self.engine.compute_layout(node, LP64)
        self.assertEqual(result.member("anon").byte_offset, 0)
        self.assertEqual(result.member("u1").byte_offset, 8)
        self.assertEqual(result.member("u2").byte_offset, 8)
        self.assertTrue(result.member("u1").promoted)
        self.assertEqual(result.member("tail").byte_offset, 16)
        self.assertEqual(result.size, 24)
        self.assertEqual(result.alignment, 8)
        assert_well_formed(self, result)


class AggregateTests(unittest.TestCase):
    def test_nested_struct_alignment_propagates(self) -> None:
        inner = Struct(members=(Member(CHAR, "x"), Member(DOUBLE, "y")), name="Inner")
        outer = Struct(members=(Member(CHAR, "c"), Member(inner, "in")), name="Outer")
        result = compute_layout(outer, LP64)
        self.assertEqual(result.member("in").byte_offset, 8)
        self.assertEqual(result.member("in").layout.size, 16)
        self.assertEqual(result.size, 24)

    def test_union_size_rounds_to_alignment(self) -> None:
        node = Union(members=(Member(Array(CHAR, (5,)), "bytes"), Member(INT, "word")), name="U")
        result = compute_layout(node, LP64)
        self.assertEqual(result.kind, "union")
        self.assertEqual(result.size, 8)
        self.assertEqual(result.alignment, 4)
        assert_well_formed(self, result)

    def test_packed_attribute_on_struct(self) -> None:
        from bytewise.analysis.layout_types import Packed

        result = compute_layout(abc(attributes=frozenset({Packed()})), LP64)
        self.assertEqual(result.size, 6)
        self.assertEqual(result.alignment, 1)

    def test_pack_two_caps_alignment(self) -> None:
        node = Struct(members=(Member(CHAR, "a"), Member(DOUBLE, "d")), name="P2", pack=2)
        result = compute_layout(node, LP64)
        self.assertEqual(result.member("d").byte_offset, 2)
        self.assertEqual(result.size, 10)
        self.assertEqual(result.alignment, 2)

    def test_aligned_member_survives_pack_cap(self) -> None:
        node = Struct(
            members=(Member(CHAR, "a"), Member(INT, "b", frozenset({Aligned(8)}))),
            name="P",
            pack=1,
        )
        result = compute_layout(node, LP64)
        self.assertEqual(result.member("b").byte_offset, 8)
        self.assertEqual(result.alignment, 8)

    def test_ilp32_aligns_double_to_four(self) -> None:
        node = Struct(members=(Member(CHAR, "c"), Member(DOUBLE, "d")), name="CD")
        self.assertEqual(compute_layout(node, ILP32).member("d").byte_offset, 4)
        self.assertEqual(compute_layout(node, ILP32).size, 12)
        self.assertEqual(compute_layout(node, LP64).size, 16)

    def test_scalar_and_array_roots(self) -> None:
        self.assertEqual(compute_layout(Primitive("long"), LP64).size, 8)
        self.assertEqual(compute_layout(Primitive("long"), ILP32).size, 4)
        result = compute_layout(Array(Primitive("short"), (2, 3)), LP64)
        self.assertEqual(result.kind, "array")
        self.assertEqual((result.size, result.alignment), (12, 2))

    def test_explicit_primitive_size_and_alignment(self) -> None:
        node = Struct(members=(Member(CHAR, "c"), Member(Primitive("vec", 16, 8), "v")), name="V")
        result = compute_layout(node, LP64)
        self.assertEqual(result.member("v").byte_offset, 8)
        self.assertEqual(result.size, 24)

    def test_empty_struct(self) -> None:
        result = compute_layout(Struct(members=(), name="Empty"), LP64)
        self.assertEqual((result.size, result.alignment), (0, 1))


class CacheTests(unittest.TestCase):
    def test_equal_trees_share_one_entry(self) -> None:
        engine = LayoutEngine()
        first = engine.compute_layout(abc(), LP64)
        second = engine.compute_layout(abc(), LP64)
        self.assertIs(first, second)
        self.assertEqual(engine.cache_size, 1)

    def test_profile_is_part_of_the_key(self) -> None:
        engine = LayoutEngine()
        node = Struct(members=(Member(Primitive("long"), "l"),), name="L")
        self.assertEqual(engine.compute_layout(node, LP64).size, 8)
        self.assertEqual(engine.compute_layout(node, ILP32).size, 4)
        self.assertEqual(engine.cache_size, 2)
        engine.clear_cache()
        self.assertEqual(engine.cache_size, 0)

    def test_concurrent_callers_agree(self) -> None:
        engine = LayoutEngine()
        inner = Struct(members=(Member(CHAR, "x"), Member(DOUBLE, "y")), name="Inner")
        node = Struct(members=(Member(inner, "a"), Member(inner, "b"), Member(Bitfield(INT, 7), "f")), name="T")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: engine.compute_layout(node, LP64), range(64)))
        self.assertTrue(all(result == results[0] for result in results))
        self.assertEqual(results[0].size, 40)

    def test_silent_unless_verbose(self) -> None:
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            LayoutEngine().compute_layout(abc(), LP64)
        self.assertEqual(stderr.getvalue(), "")

        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            engine = LayoutEngine(verbose={"cache"})
            engine.compute_layout(abc(), LP64)
            engine.compute_layout(abc(), LP64)
        self.assertIn("[bytewise:cache] miss struct S", stderr.getvalue())
        self.assertIn("[bytewise:cache] hit struct S", stderr.getvalue())

    def test_bounded_cache_drops_least_recently_used(self) -> None:
        engine = LayoutEngine(max_entries=2)
        first = engine.compute_layout(abc(name="A"), LP64)
        second = engine.compute_layout(abc(name="B"), LP64)
        engine.compute_layout(abc(name="A"), LP64)
        engine.compute_layout(abc(name="C"), LP64)
        self.assertEqual(engine.cache_size, 2)
        self.assertIs(engine.compute_layout(abc(name="A"), LP64), first)
        again = engine.compute_layout(abc(name="B"), LP64)
        self.assertIsNot(again, second)
        self.assertEqual(again, second)

    def test_shared_cache_is_bounded_and_clearable(self) -> None:
        self.assertEqual(layout_engine._shared_engine._max_entries, layout_engine.SHARED_CACHE_ENTRIES)
        compute_layout(abc(name="Shared"), LP64)
        self.assertGreater(layout_engine._shared_engine.cache_size, 0)
        layout_engine.clear_cache()
        self.assertEqual(layout_engine._shared_engine.cache_size, 0)


class FixtureInvariantTests(unittest.TestCase):
    def test_every_fixture_type_under_every_profile(self) -> None:
        document = load_document(os.path.join(FIXTURES, "test_cases.json"))
        engine = LayoutEngine()
        for profile in (LP64, SYSV_X86_64, ILP32, LLP64):
            for name, node in document.aggregates():
                with self.subTest(profile=profile.name, type=name):
                    result = engine.compute_layout(node, profile)
                    assert_well_formed(self, result)
                    self.assertEqual(LayoutEngine().compute_layout(node, profile), result)


if __name__ == "__main__":
    unittest.main()
