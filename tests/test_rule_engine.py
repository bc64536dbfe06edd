import unittest

import guardlint
from crate_fixtures import (
    CrateBuilder,
    MAKE_UNINIT_ALIAS,
    REF_USIZE,
    ZERO_FILL_ALIAS,
)


def context_for(crate: guardlint.TypedCrate, unit_index: int = 0) -> guardlint.RuleContext:
    return guardlint.RuleContext(
        unit=crate.units[unit_index],
        resolver=guardlint.SymbolResolver(crate),
        oracle=guardlint.TypeShapeOracle(crate.types),
        paths=guardlint.default_path_table(),
    )


def recording_step(name, log, result=True):
    def check(node, ctx, bindings):
        log.append(name)
        return result

    return guardlint.GuardStep(name, check)


def always(summary):
    return lambda node, ctx, bindings: summary


class GuardChainTests(unittest.TestCase):
    def setUp(self) -> None:
        builder = CrateBuilder()
        builder.unit("demo::main", builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}))
        self.crate = builder.crate()
        self.ctx = context_for(self.crate)
        self.call = self.crate.units[0].body.children[0]

    def test_chain_stops_at_first_failure(self) -> None:
        log = []
        rule = guardlint.Rule(
            name="sample_rule",
            category="style",
            node_kinds=frozenset({"Call"}),
            guards=[
                recording_step("first", log),
                recording_step("second", log, result=False),
                recording_step("third", log),
            ],
            classify=always("never"),
        )
        outcome = rule.evaluate(self.call, self.ctx)
        self.assertEqual(outcome, guardlint.NotMatched("second"))
        self.assertEqual(log, ["first", "second"])

    def test_classifier_declining_is_a_non_match(self) -> None:
        rule = guardlint.Rule(
            name="sample_rule",
            category="style",
            node_kinds=["Call"],
            guards=[],
            classify=always(None),
        )
        self.assertEqual(rule.evaluate(self.call, self.ctx), guardlint.NotMatched("classify"))

    def test_bindings_flow_between_steps(self) -> None:
        seen = {}

        def capture(node, ctx, bindings):
            seen.update(bindings)
            return True

        rule = guardlint.Rule(
            name="sample_rule",
            category="style",
            node_kinds=["Call"],
            guards=[
                guardlint.callee_is_path(),
                guardlint.result_shape(guardlint.TypeShape.REFERENCE),
                guardlint.resolves_callee(),
                guardlint.GuardStep("capture", capture),
            ],
            classify=guardlint.classify_by_tag({guardlint.ZERO_FILL: "zeroed"}),
        )
        outcome = rule.evaluate(self.call, self.ctx)
        self.assertIsInstance(outcome, guardlint.Matched)
        self.assertEqual(outcome.diagnosis.summary, "zeroed")
        self.assertEqual(outcome.diagnosis.severity, "warning")
        self.assertIs(seen["shape"], guardlint.TypeShape.REFERENCE)
        self.assertEqual(seen["identity"], guardlint.SymbolIdentity(guardlint.MEM_ZEROED))
        self.assertEqual(seen["tag"], guardlint.ZERO_FILL)

    def test_severity_follows_category(self) -> None:
        def make(category, severity=None):
            return guardlint.Rule(
                name="sample_rule", category=category, node_kinds=["Call"], guards=[],
                classify=always("x"), severity=severity,
            )

        self.assertEqual(make("correctness").severity, "error")
        self.assertEqual(make("correctness").level, "deny")
        self.assertEqual(make("perf").severity, "warning")
        self.assertEqual(make("pedantic").severity, "note")
        self.assertEqual(make("unheard-of").severity, "warning")
        self.assertEqual(make("style", severity="error").severity, "error")


class RuleRegistryTests(unittest.TestCase):
    def make(self, name, kinds=("Call",)):
        return guardlint.Rule(
            name=name, category="style", node_kinds=frozenset(kinds), guards=[], classify=always(name),
        )

    def test_duplicate_names_rejected(self) -> None:
        registry = guardlint.default_registry()
        with self.assertRaises(guardlint.RegistryError):
            registry.register(guardlint.make_invalid_ref_rule())

    def test_dispatch_by_kind_in_registration_order(self) -> None:
        registry = guardlint.RuleRegistry([self.make("a"), self.make("b", ("Call", "Path")), self.make("c", ("Path",))])
        self.assertEqual([r.name for r in registry.rules_for("Call")], ["a", "b"])
        self.assertEqual([r.name for r in registry.rules_for("Path")], ["b", "c"])
        self.assertEqual(registry.rules_for("Lit"), [])

    def test_without(self) -> None:
        registry = guardlint.RuleRegistry([self.make("a"), self.make("b")])
        trimmed = registry.without(["a"])
        self.assertEqual([r.name for r in trimmed], ["b"])
        self.assertEqual(len(registry), 2)
        self.assertIsNone(trimmed.get("a"))


class VisitorTests(unittest.TestCase):
    def test_preorder_document_order(self) -> None:
        builder = CrateBuilder()
        builder.unit(
            "demo::main",
            builder.let("let a = zero_fill();", builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}, line=2)),
            builder.let("let b = make_uninit();", builder.call("make_uninit", {"def": MAKE_UNINIT_ALIAS}, line=3)),
        )
        body = builder.crate().units[0].body
        kinds = [node.kind for node in guardlint.iter_nodes(body)]
        self.assertEqual(kinds, ["Block", "Let", "Call", "Path", "Let", "Call", "Path"])

    def test_call_children_order(self) -> None:
        builder = CrateBuilder()
        builder.unit("demo::main", builder.call("f", "local", args=2))
        body = builder.crate().units[0].body
        paths = [node.path for node in guardlint.iter_nodes(body) if node.kind == "Path"]
        self.assertEqual(paths, ["f", "arg0", "arg1"])

    def test_sibling_rules_all_run(self) -> None:
        builder = CrateBuilder()
        builder.unit("demo::main", builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}))
        crate = builder.crate()
        second = guardlint.Rule(
            name="any_call", category="pedantic", node_kinds=["Call"], guards=[], classify=always("a call"),
        )
        registry = guardlint.RuleRegistry([guardlint.make_invalid_ref_rule(), second])
        diagnostics = guardlint.analyze_crate(crate, registry)
        self.assertEqual([d.rule for d in diagnostics], ["invalid_ref", "any_call"])
        self.assertEqual(diagnostics[0].location, diagnostics[1].location)

    def test_reporter_does_not_deduplicate(self) -> None:
        reporter = guardlint.DiagnosticReporter()
        diag = guardlint.Diagnosis(
            rule="r", category="style", severity="warning", summary="s", help="", location={},
        )
        reporter.report(diag)
        reporter.report(diag)
        self.assertEqual(len(reporter), 2)


class AnalysisSessionTests(unittest.TestCase):
    def build_crate(self) -> guardlint.TypedCrate:
        builder = CrateBuilder()
        for index in range(6):
            builder.unit(
                f"demo::fn{index}",
                builder.let("let a = zero_fill();", builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}, line=2)),
                builder.let("let b = make_uninit();", builder.call("make_uninit", {"def": MAKE_UNINIT_ALIAS}, line=3)),
            )
        return builder.crate()

    def test_parallel_merge_is_stable(self) -> None:
        crate = self.build_crate()
        sequential = [guardlint.diagnosis_to_json_obj(d) for d in guardlint.analyze_crate(crate)]
        parallel = [guardlint.diagnosis_to_json_obj(d) for d in guardlint.analyze_crate(crate, jobs=4)]
        self.assertEqual(sequential, parallel)
        self.assertEqual([d["unit"] for d in sequential][:4], ["demo::fn0", "demo::fn0", "demo::fn1", "demo::fn1"])

    def test_broken_unit_is_isolated(self) -> None:
        builder = CrateBuilder()
        builder.unit("demo::good_before", builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}))
        builder.unit(
            "demo::broken",
            builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}, line=2),
            builder.call("ghost", {"def": 4242}, line=3),
        )
        builder.unit("demo::good_after", builder.call("make_uninit", {"def": MAKE_UNINIT_ALIAS}))
        diagnostics = guardlint.analyze_crate(builder.crate())

        self.assertEqual(
            [(d.unit, d.internal) for d in diagnostics],
            [("demo::good_before", False), ("demo::broken", True), ("demo::good_after", False)],
        )
        internal = diagnostics[1]
        self.assertEqual(internal.rule, guardlint.INTERNAL_ERROR_RULE)
        self.assertIn("4242", internal.summary)

    def test_dangling_type_is_isolated(self) -> None:
        builder = CrateBuilder()
        builder.unit("demo::broken", builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}, ty=777))
        builder.unit("demo::fine", builder.call("zero_fill", {"def": ZERO_FILL_ALIAS}, ty=REF_USIZE))
        diagnostics = guardlint.analyze_crate(builder.crate())
        self.assertEqual([d.internal for d in diagnostics], [True, False])


if __name__ == "__main__":
    unittest.main()
