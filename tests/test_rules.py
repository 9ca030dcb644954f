import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr

import dtscop


def component(name, class_id, **properties):
    return dtscop.Component(name=name, class_id=class_id, properties=dict(properties))


def connect(pipeline, start, end, sync=0):
    pipeline.paths.append(dtscop.Path(
        start=dtscop.Endpoint(start, synchronous_input_id=sync),
        end=dtscop.Endpoint(end),
    ))


def pipeline_task(name, pipeline=None):
    return dtscop.Task(
        name=name,
        creation_name="Microsoft.Pipeline",
        inner=pipeline if pipeline is not None else dtscop.Pipeline(),
        fail_package_on_failure=True,
        fail_parent_on_failure=True,
    )


def package_with(*executables, **kwargs):
    kwargs.setdefault("protection_level", dtscop.ProtectionLevel.DONT_SAVE_SENSITIVE)
    return dtscop.Package(name="Pkg", executables=list(executables), **kwargs)


def run(rule, package):
    rule.check(package)
    return rule.results


class DataflowCountTests(unittest.TestCase):
    def test_thresholds(self) -> None:
        for count, expected in ((0, 0), (2, 0), (3, 1)):
            package = package_with(*[pipeline_task(f"DFT {i}") for i in range(count)])
            results = run(dtscop.DataflowCount(), package)
            self.assertEqual(len(results), expected, count)
        self.assertEqual(results[0].severity, dtscop.Severity.INFORMATION)
        self.assertTrue(results[0].message.startswith("There are 3 data flows in the package."))
        self.assertIsNone(results[0].source)

    def test_none_package_is_noop(self) -> None:
        rule = dtscop.DataflowCount()
        rule.check(None)
        self.assertEqual(rule.results, [])


class DataflowShapeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.pipeline = dtscop.Pipeline()
        self.source = component("Src", "Microsoft.OLEDBSource", AccessMode=2)
        self.sort = component("Sort Rows", "Microsoft.Sort")
        self.dest = component("Dst", "Microsoft.OLEDBDestination", AccessMode=3, FastLoadOptions="TABLOCK")
        self.pipeline.components = [self.source, self.sort, self.dest]
        connect(self.pipeline, self.source, self.sort)
        connect(self.pipeline, self.sort, self.dest)
        self.package = package_with(pipeline_task("DFT Load", self.pipeline))

    def test_asynchronous_outputs_exclude_sources(self) -> None:
        results = run(dtscop.DataflowAsynchronousPaths(), self.package)
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].message.startswith("There are 1 asynchronous outputs in the DFT Load data flow."))
        self.assertEqual(results[0].source, "DFT Load")

    def test_sort_fed_by_database_source(self) -> None:
        results = run(dtscop.DataflowSortTransformations(), self.package)
        self.assertEqual(len(results), 1)
        self.assertIn("The Sort Rows Sort transformation is operating on data provided from the Src source.", results[0].message)
        self.assertEqual(results[0].source, "DFT Load\\Sort Rows")

    def test_sort_fed_by_flat_file_is_not_reported(self) -> None:
        self.source.class_id = "Microsoft.FlatFileSource"
        self.assertEqual(run(dtscop.DataflowSortTransformations(), self.package), [])

    def test_too_many_sorts(self) -> None:
        for index in range(2):
            extra = component(f"Sort {index}", "Microsoft.Sort")
            self.pipeline.components.append(extra)
        results = run(dtscop.DataflowSortTransformations(), self.package)
        self.assertTrue(results[-1].message.startswith("There are 3 Sort transformations in the DFT Load data flow."))

    def test_access_mode(self) -> None:
        self.assertEqual(run(dtscop.DataflowAccessMode(), self.package), [])
        self.source.properties["AccessMode"] = 0
        results = run(dtscop.DataflowAccessMode(), self.package)
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].message.startswith("Change the Src component to use a SQL Command access mode"))

    def test_fast_load_without_check_constraints(self) -> None:
        results = run(dtscop.DataflowFastLoadCheckConstraints(), self.package)
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].message.startswith('Destination component "Dst" doesn\'t set CHECK_CONSTRAINTS.'))

    def test_fast_load_with_check_constraints(self) -> None:
        self.dest.properties["FastLoadOptions"] = "TABLOCK,CHECK_CONSTRAINTS"
        self.assertEqual(run(dtscop.DataflowFastLoadCheckConstraints(), self.package), [])

    def test_non_fast_load_destination(self) -> None:
        self.dest.properties["AccessMode"] = 0
        self.assertEqual(run(dtscop.DataflowFastLoadCheckConstraints(), self.package), [])


class PackageLevelRuleTests(unittest.TestCase):
    def test_protection_level(self) -> None:
        self.assertEqual(run(dtscop.PackageProtectionLevel(), package_with()), [])
        server = package_with(protection_level=dtscop.ProtectionLevel.SERVER_STORAGE)
        self.assertEqual(run(dtscop.PackageProtectionLevel(), server), [])
        default = dtscop.Package(name="Pkg")
        self.assertEqual(len(run(dtscop.PackageProtectionLevel(), default)), 1)

    def test_variable_with_static_expression(self) -> None:
        task = pipeline_task("DFT")
        task.variables.append(dtscop.Variable(name="Stamp", expression="GETDATE()"))
        package = package_with(task)
        package.variables.append(dtscop.Variable(name="Live", expression="1 + 1", evaluate_as_expression=True))
        results = run(dtscop.VariableEvaluateAsExpression(), package)
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].message.startswith('Variable "User::Stamp" has an Expression set'))
        self.assertEqual(results[0].source, "DFT")

    def test_execute_process_logging(self) -> None:
        logged = dtscop.Task(name="Logged", inner=dtscop.ExecuteProcessData(
            standard_output_variable="User::Out", standard_error_variable="User::Err"))
        silent = dtscop.Task(name="Silent", inner=dtscop.ExecuteProcessData(standard_output_variable="User::Out"))
        results = run(dtscop.ExecuteProcessTaskLogging(), package_with(logged, silent))
        self.assertEqual([result.source for result in results], ["Silent"])

    def test_script_task_language(self) -> None:
        vb = dtscop.Task(name="VB Task", inner=dtscop.ScriptTaskData(language="VisualBasic"))
        cs = dtscop.Task(name="CS Task", inner=dtscop.ScriptTaskData(language="CSharp"))
        results = run(dtscop.ScriptTaskCSharp(), package_with(vb, cs))
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].message.startswith("Script task VB Task is written in VisualBasic."))

    def test_script_component_language(self) -> None:
        pipeline = dtscop.Pipeline(components=[
            component("VB Script", "Microsoft.ScriptComponentHost", ScriptLanguage="VisualBasic"),
            component("CS Script", "Microsoft.ScriptComponentHost", ScriptLanguage="Microsoft Visual C# 2012"),
        ])
        results = run(dtscop.DataflowScriptCSharp(), package_with(pipeline_task("DFT", pipeline)))
        self.assertEqual([result.source for result in results], ["DFT\\VB Script"])

    def test_task_properties(self) -> None:
        task = dtscop.Task(name="Loose", force_execution_result="Success")
        results = run(dtscop.TaskProperties(), package_with(task))
        messages = [result.message for result in results]
        self.assertEqual(messages, [
            "Task Loose should have ForceExecutionResult=None but it's Success.",
            "Task Loose should have FailPackageOnFailure set to true.",
            "Task Loose should have FailParentOnFailure set to true.",
        ])
        self.assertEqual(run(dtscop.TaskProperties(), package_with(pipeline_task("Strict"))), [])


SCRIPT_WITHOUT_TRY = r'''
public partial class ScriptMain
{
    public void Main()
    {
        Dts.TaskResult = (int)ScriptResults.Success;
    }
}
'''

COMPONENT_WITHOUT_TRY = r'''
public class ScriptMain : UserComponent
{
    public override void Input0_ProcessInputRow(Input0Buffer Row)
    {
        Row.Total = Row.Price;
    }
}
'''


class ScriptAnalysisRuleTests(unittest.TestCase):
    def test_script_task_violations_use_check_identity(self) -> None:
        script = dtscop.ScriptTaskData(project_name="ST_42", files={"ScriptMain.cs": SCRIPT_WITHOUT_TRY})
        package = package_with(dtscop.Task(name="SCR Load", inner=script))
        results = run(dtscop.ScriptTaskAnalysis(), package)
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].rule_id, "IS1001")
        self.assertEqual(results[0].rule_name, "MainShouldHandleErrors")
        self.assertEqual(results[0].source, "ST_42 (SCR Load)")
        self.assertEqual(results[0].line, 4)
        self.assertIn("To suppress: [SuppressMessage(", results[0].message)

    def test_visual_basic_script_task_is_skipped(self) -> None:
        script = dtscop.ScriptTaskData(language="VisualBasic", files={"ScriptMain.vb": "Public Sub Main()"})
        self.assertEqual(run(dtscop.ScriptTaskAnalysis(), package_with(dtscop.Task(name="VB", inner=script))), [])

    def test_script_component_source_code(self) -> None:
        script = component(
            "Calc",
            "Microsoft.ScriptComponentHost",
            ScriptLanguage="CSharp",
            SourceCode=["\\main.cs", "UTF8", COMPONENT_WITHOUT_TRY, "\\BufferWrapper.cs", "UTF8", "// generated"],
        )
        package = package_with(pipeline_task("DFT", dtscop.Pipeline(components=[script])))
        results = run(dtscop.DataflowScriptAnalysis(), package)
        self.assertEqual([result.rule_id for result in results], ["IS1002"])
        self.assertEqual(results[0].source, "Calc (DFT)")

    def test_missing_settings_file_fails_construction(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(dtscop.ConfigurationError):
                dtscop.ScriptTaskAnalysis(os.path.join(tmp, "absent.yaml"))


class ExplodingRule(dtscop.PackageRule):
    id = "BIDS0000"
    name = "Exploding"

    def check(self, package):
        if package is None:
            return
        raise RuntimeError("boom")


class MarkerRule(dtscop.PackageRule):
    def __init__(self, rule_id):
        super().__init__()
        self.id = rule_id
        self.name = f"Marker{rule_id}"

    def check(self, package):
        if package is None:
            return
        self.add_result(package, f"{self.id} saw {package.name}")


class EngineTests(unittest.TestCase):
    def test_catalogue_is_sorted_by_id(self) -> None:
        ids = [rule.id for rule in dtscop.build_rules()]
        self.assertEqual(ids, sorted(ids))
        self.assertEqual(len(ids), 13)
        self.assertEqual(ids[0], "BIDS0001")

    def test_results_follow_package_then_rule_order(self) -> None:
        packages = [dtscop.Package(name="A"), dtscop.Package(name="B")]
        results = list(dtscop.run_all_rules(packages, [MarkerRule("R2"), MarkerRule("R1")]))
        self.assertEqual([result.message for result in results], ["R1 saw A", "R2 saw A", "R1 saw B", "R2 saw B"])

    def test_results_are_lazy(self) -> None:
        def packages():
            yield dtscop.Package(name="A")
            raise AssertionError("second package should not be requested")

        stream = dtscop.run_all_rules(packages(), [MarkerRule("R1")])
        self.assertEqual(next(stream).message, "R1 saw A")

    def test_failing_rule_is_reported_and_run_continues(self) -> None:
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            results = list(dtscop.run_all_rules([dtscop.Package(name="A")], [MarkerRule("R1"), ExplodingRule()]))
        self.assertEqual([result.rule_id for result in results], ["BIDS0000", "R1"])
        self.assertEqual(results[0].severity, dtscop.Severity.ERROR)
        self.assertEqual(results[0].message, "Rule raised RuntimeError: boom")
        self.assertIn("Rule 'BIDS0000' failed on package 'A'", stderr.getvalue())

    def test_none_package_produces_nothing(self) -> None:
        self.assertEqual(list(dtscop.run_all_rules([None], dtscop.build_rules())), [])

    def test_runs_are_repeatable(self) -> None:
        def package():
            return package_with(*[pipeline_task(f"DFT {i}") for i in range(3)])

        first = list(dtscop.run_all_rules([package()], dtscop.build_rules()))
        second = list(dtscop.run_all_rules([package()], dtscop.build_rules()))
        self.assertEqual(first, second)
        self.assertEqual([result.rule_id for result in first], ["BIDS0002"])


if __name__ == "__main__":
    unittest.main()
