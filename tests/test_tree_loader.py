import os
import sys
import tempfile
import unittest


REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
SRC_ROOT = os.path.join(REPO_ROOT, "src")
FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
sys.path.insert(0, SRC_ROOT)


from bytewise.analysis.layout_engine import LayoutEngine  # noqa: E402
from bytewise.analysis.layout_errors import TypeTreeFormatError, UnsupportedConstruct  # noqa: E402
from bytewise.analysis.layout_profile import LP64  # noqa: E402
from bytewise.analysis.layout_types import (  # noqa: E402
    Aligned,
    Array,
    Bitfield,
    FlexibleArray,
    Opaque,
    Packed,
    Primitive,
    Union,
)
from bytewise.analysis.tree_loader import load_document, parse_document  # noqa: E402


EXPECTED_SIZES = {
    "Flex": 8,
    "PackedP": 6,
    "WithAnon": 24,
    "BitFields": 16,
    "InlineDecl": 8,
    "Embedded": 8,
    "PackedAttr": 6,
    "U": 8,
    "AlignTest": 32,
    "ArrayTest": 24,
}


def struct_doc(*members, **extra) -> dict:
    return {"types": {"S": {"kind": "struct", "members": list(members), **extra}}}


class FixtureDocumentTests(unittest.TestCase):
    def setUp(self) -> None:
        self.document = load_document(os.path.join(FIXTURES, "test_cases.json"))

    def test_all_fixture_types_lay_out(self) -> None:
        engine = LayoutEngine()
        self.assertIs(self.document.profile, LP64)
        names = [name for name, _ in self.document.aggregates()]
        self.assertEqual(names, list(EXPECTED_SIZES))
        for name, node in self.document.aggregates():
            with self.subTest(name):
                self.assertEqual(engine.compute_layout(node, LP64).size, EXPECTED_SIZES[name])

    def test_shorthand_forms(self) -> None:
        flex = self.document.get("Flex")
        self.assertIsInstance(flex.members[1].type, FlexibleArray)
        bits = self.document.get("BitFields")
        self.assertEqual(bits.members[0].type, Bitfield(Primitive("int"), 3))
        self.assertIsNone(bits.members[3].name)
        matrix = self.document.get("ArrayTest").members[0].type
        self.assertEqual(matrix, Array(Primitive("int"), (3, 2)))

    def test_attributes_and_pack(self) -> None:
        self.assertEqual(self.document.get("PackedP").pack, 1)
        self.assertIn(Packed(), self.document.get("PackedAttr").attributes)
        align_test = self.document.get("AlignTest")
        self.assertIn(Aligned(8), align_test.attributes)
        self.assertIn(Aligned(16), align_test.members[1].attributes)

    def test_references_resolve_regardless_of_order(self) -> None:
        embedded = self.document.get("struct Embedded")
        self.assertIs(self.document.get("InlineDecl").members[0].type, embedded)
        self.assertIsInstance(self.document.get("U"), Union)

    def test_unknown_type_name(self) -> None:
        with self.assertRaises(TypeTreeFormatError):
            self.document.get("Nope")


class ParseDocumentTests(unittest.TestCase):
    def test_undefined_struct_becomes_opaque(self) -> None:
        document = parse_document(struct_doc({"name": "f", "type": "struct Missing"}))
        member_type = document.get("S").members[0].type
        self.assertEqual(member_type, Opaque("struct Missing"))
        with self.assertRaises(UnsupportedConstruct):
            LayoutEngine().compute_layout(document.get("S"), LP64)

    def test_pointer_to_undefined_struct_is_pointer_sized(self) -> None:
        document = parse_document(
            struct_doc({"name": "c", "type": "char"}, {"name": "next", "type": "const struct Missing *"})
        )
        result = LayoutEngine().compute_layout(document.get("S"), LP64)
        self.assertEqual(result.member("next").byte_offset, 8)
        self.assertEqual(result.size, 16)

    def test_typedef_and_explicit_kinds(self) -> None:
        document = parse_document(
            {
                "profile": {"base": "ilp32", "name": "custom32"},
                "types": {
                    "u32": {"kind": "typedef", "type": "unsigned int"},
                    "vec": {"kind": "primitive", "size": 16, "alignment": 16},
                    "grid": {"kind": "array", "element": "u32", "dimensions": [2, 3]},
                    "S": {
                        "kind": "struct",
                        "members": [
                            {"name": "g", "type": "grid"},
                            {"name": "v", "type": "vec"},
                            {"name": "tail", "type": {"kind": "flexible_array", "element": "u32"}},
                        ],
                    },
                },
            }
        )
        self.assertEqual(document.profile.name, "custom32")
        self.assertEqual(document.types["u32"], Primitive("unsigned int"))
        self.assertEqual(document.types["vec"], Primitive("vec", 16, 16))
        result = LayoutEngine().compute_layout(document.get("S"), document.profile)
        self.assertEqual(result.member("v").byte_offset, 32)
        self.assertEqual(result.size, 48)
        self.assertEqual([name for name, _ in document.aggregates()], ["S"])

    def test_self_containment_is_rejected(self) -> None:
        with self.assertRaises(UnsupportedConstruct):
            parse_document({"types": {"A": {"kind": "struct", "members": [{"name": "a", "type": "struct A"}]}}})

    def test_self_pointer_is_fine(self) -> None:
        document = parse_document(
            {"types": {"Node": {"kind": "struct", "members": [{"name": "next", "type": "struct Node *"}]}}}
        )
        self.assertEqual(LayoutEngine().compute_layout(document.get("Node"), LP64).size, 8)

    def test_symbolic_dimension_is_kept_for_the_engine(self) -> None:
        document = parse_document(struct_doc({"name": "a", "type": "int", "dims": ["N"]}))
        with self.assertRaises(UnsupportedConstruct):
            LayoutEngine().compute_layout(document.get("S"), LP64)

    def test_format_errors(self) -> None:
        bad = [
            [],
            {"types": []},
            {"types": {}, "extra": 1},
            {"profile": 7, "types": {}},
            {"types": {"S": {"kind": "enum"}}},
            {"types": {"S": {"kind": "struct"}}},
            {"types": {"S": {"kind": "struct", "members": [], "colour": "red"}}},
            struct_doc({"name": "x"}),
            struct_doc({"name": "x", "type": "int", "bits": 3, "dims": [2]}),
            struct_doc({"name": "x", "type": "int", "bits": "3"}),
            struct_doc({"name": "x", "type": "int", "packed": "yes"}),
            struct_doc({"name": "x", "type": "int", "aligned": 8.0}),
            struct_doc({"name": "x", "type": "int", "flexible": "yes"}),
            struct_doc({"name": "x", "type": "int", "dims": []}),
            struct_doc({"name": "", "type": "int"}),
            struct_doc({"name": "x", "type": "int", "size": 4}),
            struct_doc({"name": "x", "type": {"kind": "struct", "members": []}, "bits": 3}),
            struct_doc({"name": "x", "type": "int"}, pack="1"),
        ]
        for data in bad:
            with self.subTest(data=data):
                with self.assertRaises(TypeTreeFormatError):
                    parse_document(data)

    def test_invalid_json_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "broken.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write('{"types": ')
            with self.assertRaises(TypeTreeFormatError):
                load_document(path)


if __name__ == "__main__":
    unittest.main()
