import textwrap
import unittest

import guardlint


def parse(source):
    return guardlint.parse_source(textwrap.dedent(source))


def first(tree, kind, predicate=None):
    for node in tree.walk():
        if node.kind == kind and (predicate is None or predicate(node)):
            return node
    raise AssertionError(f"no {kind} node in tree")


def calls_named(tree, name):
    return [node for node in tree.walk() if node.kind == "Call" and guardlint.callee_name(node) == name]


class SyntaxTreeTests(unittest.TestCase):
    def test_offsets_roles_and_parents(self) -> None:
        tree = parse("""
            if box.is_open:
                box.put("k", 1)
        """)
        call = first(tree, "Call")
        self.assertEqual(tree.text(call), 'box.put("k", 1)')

        statement = call.parent
        self.assertEqual(statement.kind, "Expr")
        self.assertEqual(statement.role, "body")
        self.assertEqual(statement.index, 0)

        if_node = statement.parent
        self.assertEqual(if_node.kind, "If")
        self.assertEqual(tree.text(if_node.child("test")), "box.is_open")
        self.assertTrue(if_node.contains(call))
        self.assertIn(if_node, list(call.ancestors()))

    def test_non_ascii_lines_use_character_offsets(self) -> None:
        tree = parse('label = "héllo"; box.put(label, "ü")\n')
        call = first(tree, "Call")
        self.assertEqual(tree.text(call), 'box.put(label, "ü")')

    def test_operators_are_stored_as_attrs(self) -> None:
        tree = parse("""
            ok = not x
            flag = a == True
            both = a and b
        """)
        self.assertEqual(first(tree, "UnaryOp").attrs["op"], "Not")
        self.assertEqual(first(tree, "Compare").attrs["ops"], ["Eq"])
        self.assertEqual(first(tree, "BoolOp").attrs["op"], "And")
        self.assertEqual(first(tree, "Name").attrs["ctx"], "Store")

    def test_walk_is_document_order(self) -> None:
        tree = parse("""
            first()
            second(third())
        """)
        names = [guardlint.callee_name(node) for node in tree.walk() if node.kind == "Call"]
        self.assertEqual(names, ["first", "second", "third"])

    def test_node_identity_and_find(self) -> None:
        source = "box.put(1, 2)\n"
        tree = guardlint.parse_source(source)
        again = guardlint.parse_source(source)
        call = first(tree, "Call")
        self.assertEqual(call, first(again, "Call"))
        self.assertEqual(hash(call), hash(first(again, "Call")))
        self.assertIs(tree.find(call.offset, call.length, kind="Call"), call)
        self.assertEqual(tree.find(call.offset, call.length).kind, "Call")
        self.assertIsNone(tree.find(call.offset, call.length + 1, kind="Call"))

    def test_line_prefix_and_position(self) -> None:
        tree = parse("""
            if box.is_open:
                box.put("k", 1)
        """)
        call = first(tree, "Call")
        self.assertEqual(tree.line_prefix(call.offset), "    ")
        self.assertEqual(tree.position(call.offset), (3, 5))
        self.assertEqual(tree.newline, "\n")

    def test_decorated_function_contains_decorators(self) -> None:
        tree = parse("""
            @decorator
            def handler():
                pass
        """)
        function = first(tree, "FunctionDef")
        decorator = first(tree, "Name", lambda node: node.attrs.get("id") == "decorator")
        self.assertEqual(decorator.role, "decorator_list")
        self.assertTrue(function.contains(decorator))

    def test_invalid_source_raises_syntax_error(self) -> None:
        with self.assertRaises(SyntaxError):
            guardlint.parse_source("def broken(:\n")


class StaticTypeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tree = parse("""
            class Repo:
                cache: "LazyBox[str]"

                def __init__(self):
                    self.box = Box("settings")

                def save(self, other: Box[int]):
                    local = Box("tmp")
                    self.box.put("a", 1)
                    self.cache.put("b", 2)
                    other.put("c", 3)
                    local.put("d", 4)
                    unknown.put("e", 5)
                    later = lambda: other.put("f", 6)
        """)

    def receiver_types(self):
        types = {}
        for call in calls_named(self.tree, "put"):
            receiver = guardlint.call_receiver(call)
            types[guardlint.canonical_text(self.tree, receiver)] = receiver.static_type
        return types

    def test_receiver_types_are_resolved(self) -> None:
        types = self.receiver_types()
        self.assertEqual(types["self.box"], "Box")
        self.assertEqual(types["self.cache"], "LazyBox[str]")
        self.assertEqual(types["other"], "Box[int]")
        self.assertEqual(types["local"], "Box")
        self.assertIsNone(types["unknown"])

    def test_lambda_sees_enclosing_parameters(self) -> None:
        calls = calls_named(self.tree, "put")
        in_lambda = [call for call in calls if guardlint.enclosing_function(call).kind == "Lambda"]
        self.assertEqual(len(in_lambda), 1)
        self.assertEqual(guardlint.call_receiver(in_lambda[0]).static_type, "Box[int]")

    def test_self_attributes_resolve_inside_closures(self) -> None:
        tree = parse("""
            class Repo:
                def __init__(self):
                    self.box = Box("b")

                def save(self):
                    def inner():
                        self.box.put("a", 1)

                    def shadowed(self):
                        self.box.put("b", 2)

                    def rebound():
                        self = other()
                        self.box.put("c", 3)
        """)
        types = [guardlint.call_receiver(call).static_type for call in calls_named(tree, "put")]
        self.assertEqual(types, ["Box", None, None])

    def test_compound_receivers_are_parenthesized(self) -> None:
        tree = parse("(a or b).emit(1)\nitems[0].emit(2)\n")
        texts = [
            guardlint.canonical_text(tree, guardlint.call_receiver(call))
            for call in calls_named(tree, "emit")
        ]
        self.assertEqual(texts, ["(a or b)", "items[0]"])

    def test_deep_expressions_convert_without_recursion(self) -> None:
        tree = guardlint.parse_source("total = " + " + ".join(["1"] * 900) + "\n")
        self.assertEqual(sum(1 for node in tree.walk() if node.kind == "BinOp"), 899)

    def test_canonical_text_for_attribute_chains(self) -> None:
        tree = parse("self . store .box.put(1)\n")
        call = first(tree, "Call")
        self.assertEqual(guardlint.canonical_text(tree, guardlint.call_receiver(call)), "self.store.box")


if __name__ == "__main__":
    unittest.main()
