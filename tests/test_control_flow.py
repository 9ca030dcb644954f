import unittest

import dtscop


def pipeline_task(name):
    return dtscop.Task(name=name, creation_name="Microsoft.Pipeline", inner=dtscop.Pipeline())


def script_task(name):
    return dtscop.Task(name=name, creation_name="Microsoft.ScriptTask", inner=dtscop.ScriptTaskData(project_name=name))


def build_package():
    first = pipeline_task("DFT First")
    script = script_task("SCR Prepare")
    sequence = dtscop.Container(name="SEQ Load", creation_name="STOCK:SEQUENCE", executables=[first])
    on_error = dtscop.Container(name="OnError", executables=[pipeline_task("DFT Log Error")])
    package = dtscop.Package(
        name="Load",
        executables=[sequence, script],
        event_handlers={"OnError": on_error},
    )
    return package, first, script


class ControlFlowWalkerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.package, self.first, self.script = build_package()

    def test_event_handlers_come_before_executables(self) -> None:
        names = [task.name for task in dtscop.collect_tasks(self.package, dtscop.Pipeline)]
        self.assertEqual(names, ["DFT Log Error", "DFT First"])

    def test_kind_filters_on_inner_object(self) -> None:
        tasks = dtscop.collect_tasks(self.package, dtscop.ScriptTaskData)
        self.assertEqual(tasks, [self.script])

    def test_containers_are_never_returned(self) -> None:
        tasks = dtscop.collect_tasks(self.package)
        self.assertEqual([task.name for task in tasks], ["DFT Log Error", "DFT First", "SCR Prepare"])
        self.assertTrue(all(isinstance(task, dtscop.Task) for task in tasks))

    def test_empty_package_yields_nothing(self) -> None:
        self.assertEqual(dtscop.collect_tasks(dtscop.Package(name="Empty"), dtscop.Pipeline), [])
        self.assertEqual(dtscop.collect_tasks(None), [])

    def test_task_event_handlers_are_walked(self) -> None:
        handler_task = pipeline_task("DFT Audit")
        self.first.event_handlers["OnPostExecute"] = dtscop.Container(name="OnPostExecute", executables=[handler_task])
        names = [task.name for task in dtscop.collect_tasks(self.package, dtscop.Pipeline)]
        self.assertEqual(names, ["DFT Log Error", "DFT First", "DFT Audit"])

    def test_shared_nodes_are_visited_once(self) -> None:
        sequence = self.package.executables[0]
        sequence.executables.append(sequence)
        names = [task.name for task in dtscop.collect_tasks(self.package, dtscop.Pipeline)]
        self.assertEqual(names, ["DFT Log Error", "DFT First"])

    def test_walk_includes_root_and_containers(self) -> None:
        names = [node.name for node in dtscop.iter_control_flow(self.package)]
        self.assertEqual(names, ["Load", "OnError", "DFT Log Error", "SEQ Load", "DFT First", "SCR Prepare"])


if __name__ == "__main__":
    unittest.main()
