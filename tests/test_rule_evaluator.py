import io
import json
import os
import tempfile
import textwrap
import unittest
from unittest import mock

import guardlint


DEFAULT_RULES_PATH = os.path.join(os.path.dirname(__file__), "..", "rules", "default.yaml")


def load_default_rules():
    return {rule.id: rule for rule in guardlint.load_rules_from_yaml([DEFAULT_RULES_PATH])}


RULES = load_default_rules()


def run_rule(rule_id, source):
    tree = guardlint.parse_source(textwrap.dedent(source))
    return tree, guardlint.evaluate(tree, RULES[rule_id])


class EmitAfterAwaitTests(unittest.TestCase):
    def test_emit_after_await_is_reported(self) -> None:
        tree, diagnostics = run_rule("avoid_emit_after_await", """
            class CounterBloc(Bloc):
                async def load(self):
                    self.emit(Loading())
                    await self.repository.fetch()
                    self.emit(Loaded())
        """)
        self.assertEqual(len(diagnostics), 1)
        diagnostic = diagnostics[0]
        self.assertEqual(tree.source[diagnostic.location.offset:diagnostic.location.end], "self.emit(Loaded())")
        self.assertEqual(diagnostic.rule_id, "avoid_emit_after_await")
        self.assertEqual(diagnostic.severity, "warning")
        self.assertEqual(diagnostic.subject, "self")
        self.assertEqual(
            diagnostic.message,
            "'emit' is called after an await without checking 'not self.is_closed'.",
        )

    def test_guarded_emits_are_not_reported(self) -> None:
        sources = (
            """
            async def load(self):
                await self.fetch()
                if not self.is_closed:
                    self.emit(Loaded())
            """,
            """
            async def load(self):
                await self.fetch()
                if self.is_closed:
                    return
                self.emit(Loaded())
            """,
            """
            async def load(self):
                await self.fetch()
                self.emit(Loaded()) if not self.is_closed else None
            """,
        )
        for source in sources:
            with self.subTest(source=source):
                self.assertEqual(run_rule("avoid_emit_after_await", source)[1], [])

    def test_synchronous_function_is_not_applicable(self) -> None:
        _, diagnostics = run_rule("avoid_emit_after_await", """
            def load(self):
                self.emit(Loaded())
        """)
        self.assertEqual(diagnostics, [])

    def test_receiver_less_emit_uses_implicit_subject(self) -> None:
        _, diagnostics = run_rule("avoid_emit_after_await", """
            async def on_event(self, event, emit):
                await self.fetch()
                if not self.is_closed:
                    emit(Loaded())
                emit(Failed())
        """)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].subject, "self")


class BoxIsOpenTests(unittest.TestCase):
    def test_guard_on_one_box_does_not_cover_another(self) -> None:
        tree, diagnostics = run_rule("check_box_is_open", """
            def save(box: Box[str], other: Box[str]):
                if box.is_open:
                    box.put("k", "v")
                    other.put("k", "v")
        """)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(tree.source[diagnostics[0].location.offset:diagnostics[0].location.end], 'other.put("k", "v")')
        self.assertEqual(diagnostics[0].message, "'other.put' may run on a closed box.")
        self.assertEqual(diagnostics[0].correction, "Check 'other.is_open' before calling 'put'.")

    def test_receiver_name_collisions(self) -> None:
        for guard in ("self.box.is_open", "mybox.is_open"):
            source = textwrap.dedent(f"""
                class Store:
                    box: Box

                    def save(self, box: Box, mybox: Box):
                        if {guard}:
                            box.put("k", 1)
            """)
            with self.subTest(guard=guard):
                tree = guardlint.parse_source(source)
                self.assertEqual(len(guardlint.evaluate(tree, RULES["check_box_is_open"])), 1)

    def test_lazy_box_and_attribute_receivers(self) -> None:
        _, diagnostics = run_rule("check_box_is_open", """
            class Store:
                def __init__(self):
                    self.cache = LazyBox("cache")

                async def clear(self):
                    if self.cache.is_closed:
                        return
                    await self.cache.clear()

                async def reset(self):
                    await self.cache.delete("k")
        """)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].subject, "self.cache")

    def test_predicate_named_in_a_string_is_not_a_guard(self) -> None:
        _, diagnostics = run_rule("check_box_is_open", """
            def save(box: Box):
                if log('box.is_open'):
                    box.put(1, 2)
        """)
        self.assertEqual(len(diagnostics), 1)

    def test_closure_inside_method_is_checked(self) -> None:
        _, diagnostics = run_rule("check_box_is_open", """
            class Store:
                def __init__(self):
                    self.box = Box("b")

                def save(self, loop):
                    def write():
                        self.box.put(1, 2)
                    loop.call_soon(write)
        """)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].subject, "self.box")

    def test_unresolved_or_foreign_receivers_are_skipped(self) -> None:
        _, diagnostics = run_rule("check_box_is_open", """
            def save(box, items: list):
                box.put("k", 1)
                items.clear()
                put("k", 1)
        """)
        self.assertEqual(diagnostics, [])


class WrapTextInRowTests(unittest.TestCase):
    def test_bare_text_in_row_is_reported(self) -> None:
        tree, diagnostics = run_rule("wrap_text_in_row", """
            def build():
                return Row(children=[Text("a long label"), Icon("star")])
        """)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(tree.source[diagnostics[0].location.offset:diagnostics[0].location.end], 'Text("a long label")')

    def test_wrapped_text_is_not_reported(self) -> None:
        for wrapper in ("Flexible", "Expanded"):
            with self.subTest(wrapper=wrapper):
                _, diagnostics = run_rule(
                    "wrap_text_in_row",
                    f"def build():\n    return Row(children=[{wrapper}(child=Text('a'))])\n",
                )
                self.assertEqual(diagnostics, [])

    def test_text_outside_row_is_not_applicable(self) -> None:
        _, diagnostics = run_rule("wrap_text_in_row", """
            def build():
                return Column(children=[Text("a"), Row(children=[Icon("star")])])
        """)
        self.assertEqual(diagnostics, [])

    def test_text_passed_to_another_text_is_not_an_element(self) -> None:
        tree, diagnostics = run_rule("wrap_text_in_row", """
            def build():
                return Row(children=[Text(Text("x")), Padding(Text("y"))])
        """)
        self.assertEqual(
            [tree.source[d.location.offset:d.location.end] for d in diagnostics],
            ['Text(Text("x"))', 'Text("y")'],
        )

    def test_conditional_branches_and_passthrough_slots(self) -> None:
        _, diagnostics = run_rule("wrap_text_in_row", """
            def build(wide):
                return ft.Row(
                    controls=[
                        ft.Text("a") if wide else ft.Text("b"),
                        ft.Container(content=ft.Text("c")),
                    ]
                )
        """)
        self.assertEqual(len(diagnostics), 3)


class AvoidPrintTests(unittest.TestCase):
    def test_bare_print_only(self) -> None:
        _, diagnostics = run_rule("avoid_print", """
            def report(console):
                print("done")
                console.print("done")
        """)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].severity, "info")


class LinterTests(unittest.TestCase):
    SOURCE = textwrap.dedent("""
        async def load(self, box: Box):
            await self.fetch()
            print("loaded")
            self.emit(Loaded())
            box.put("k", 1)
    """)

    def test_all_rules_in_document_order(self) -> None:
        linter = guardlint.GuardLinter(list(RULES.values()))
        diagnostics = linter.analyze(guardlint.parse_source(self.SOURCE))
        self.assertEqual(
            [diagnostic.rule_id for diagnostic in diagnostics],
            ["avoid_print", "avoid_emit_after_await", "check_box_is_open"],
        )

    def test_failing_rule_is_isolated(self) -> None:
        real_evaluate = guardlint.evaluate

        def flaky_evaluate(tree, rule):
            if rule.id == "avoid_print":
                raise RuntimeError("boom")
            return real_evaluate(tree, rule)

        linter = guardlint.GuardLinter(list(RULES.values()))
        tree = guardlint.parse_source(self.SOURCE)
        with mock.patch("guardlint.evaluate", side_effect=flaky_evaluate), \
                mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
            first = linter.analyze(tree)
            second = linter.analyze(tree)

        self.assertEqual([d.rule_id for d in first], ["avoid_emit_after_await", "check_box_is_open"])
        self.assertEqual(len(second), 2)
        self.assertEqual(stderr.getvalue().count("Rule 'avoid_print' failed"), 1)
        self.assertIn("[guardlint]", stderr.getvalue())

    def test_missing_file_is_reported_and_skipped(self) -> None:
        linter = guardlint.GuardLinter(list(RULES.values()))
        with mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
            tree, diagnostics = linter.analyze_path(os.path.join(os.path.dirname(__file__), "missing_file.py"))
        self.assertIsNone(tree)
        self.assertEqual(diagnostics, [])
        self.assertIn("Input file not found", stderr.getvalue())

    def write_sources(self, directory, **sources):
        paths = []
        for name, text in sources.items():
            path = os.path.join(directory, f"{name}.py")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(text)
            paths.append(path)
        return paths

    def test_unparsable_file_does_not_stop_the_run(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            broken, valid = self.write_sources(tmpdir, broken="def broken(:\n", valid=self.SOURCE)
            with mock.patch("sys.stderr", new_callable=io.StringIO) as stderr, \
                    mock.patch("sys.stdout", new_callable=io.StringIO) as stdout:
                code = guardlint.main(["analyze", "--rules", DEFAULT_RULES_PATH, broken, valid])
        self.assertEqual(code, 0)
        self.assertIn(f"Could not parse '{broken}'", stderr.getvalue())
        payload = json.loads(stdout.getvalue())
        self.assertEqual(len(payload), 3)
        self.assertEqual({item["location"]["file"] for item in payload}, {valid})

    def test_deeply_nested_file_does_not_stop_the_run(self) -> None:
        deep_source = "x = " + " + ".join(["1"] * 3000) + "\n"
        with tempfile.TemporaryDirectory() as tmpdir:
            deep, valid = self.write_sources(tmpdir, deep=deep_source, valid=self.SOURCE)
            with mock.patch("sys.stderr", new_callable=io.StringIO), \
                    mock.patch("sys.stdout", new_callable=io.StringIO) as stdout:
                code = guardlint.main(["analyze", "--rules", DEFAULT_RULES_PATH, deep, valid])
        self.assertEqual(code, 0)
        payload = json.loads(stdout.getvalue())
        self.assertEqual([item["location"]["file"] for item in payload], [valid] * 3)

    def test_recursion_while_parsing_is_reported(self) -> None:
        linter = guardlint.GuardLinter(list(RULES.values()))
        with mock.patch("guardlint.parse_file", side_effect=RecursionError("too deep")), \
                mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
            tree, diagnostics = linter.analyze_path("deep.py")
        self.assertIsNone(tree)
        self.assertEqual(diagnostics, [])
        self.assertIn("Could not analyze 'deep.py'", stderr.getvalue())

    def test_json_object_has_location_span(self) -> None:
        tree = guardlint.parse_source(self.SOURCE, path="app/load.py")
        diagnostics = guardlint.evaluate(tree, RULES["avoid_print"])
        obj = guardlint.diagnostic_to_json_obj(diagnostics[0], tree)
        self.assertEqual(obj["rule_id"], "avoid_print")
        self.assertEqual(obj["tool"], "guardlint")
        self.assertEqual(obj["location"]["file"], "app/load.py")
        self.assertEqual(obj["location"]["line_start"], 4)
        self.assertEqual(obj["location"]["col_start"], 5)
        self.assertEqual(obj["location"]["col_end"], 20)


if __name__ == "__main__":
    unittest.main()
