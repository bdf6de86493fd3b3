"""Tests for the step-graph workflow engine.

Covers:
- Topological construction (duplicate names, undeclared dependencies)
- Idempotent runs and resume after deleting an artifact
- Failure handling (partial outputs removed, StepFailure raised)
- clean() by artifact kind
- diagram(), edges() and shell_script() export
- SubprocessRunner with real subprocesses
"""

import sys
from pathlib import Path

import pytest

from conftest import FakeRunner
from rumflow.errors import StepFailure, WorkflowDefinitionError
from rumflow.workflow import engine
from rumflow.workflow.engine import (
    Artifact,
    ArtifactKind,
    StepAction,
    SubprocessRunner,
    Workflow,
    artifact_ready,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _touch(path: Path) -> StepAction:
    return StepAction("touch", (str(path),))


def _abc_workflow(root: Path, runner) -> Workflow:
    """A -> B -> C, each writing one file."""
    wf = Workflow("abc", config=None, runner=runner)
    wf.add_step("A", _touch(root / "a.txt"), comment="Make a", outputs=[Artifact(root / "a.txt")])
    wf.add_step(
        "B",
        _touch(root / "b.txt"),
        comment="Make b",
        depends_on=["A"],
        outputs=[Artifact(root / "b.txt", ArtifactKind.PRECIOUS)],
    )
    wf.add_step(
        "C",
        _touch(root / "c.txt"),
        comment="Make c",
        depends_on=["B"],
        outputs=[Artifact(root / "c.txt", ArtifactKind.FINAL)],
    )
    return wf


@pytest.fixture
def root(tmp_path: Path) -> Path:
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def runner(root: Path) -> FakeRunner:
    return FakeRunner(root)


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------


class TestDefinition:
    """add_step() only accepts steps whose dependencies are already declared."""

    def test_duplicate_step_rejected(self, root, runner):
        wf = _abc_workflow(root, runner)
        with pytest.raises(WorkflowDefinitionError, match="already has a step 'A'"):
            wf.add_step("A", _touch(root / "x"), outputs=[Artifact(root / "x")])

    def test_unknown_dependency_rejected(self, root, runner):
        wf = Workflow("w", None, runner=runner)
        with pytest.raises(WorkflowDefinitionError, match="not declared"):
            wf.add_step("B", _touch(root / "b"), depends_on=["A"], outputs=[Artifact(root / "b")])

    def test_cycle_cannot_be_built_and_nothing_runs(self, root, runner):
        """A step can only name earlier steps, so A <-> B fails at declaration."""
        wf = Workflow("w", None, runner=runner)
        with pytest.raises(WorkflowDefinitionError):
            wf.add_step("A", _touch(root / "a"), depends_on=["B"], outputs=[Artifact(root / "a")])
        assert runner.calls == []

    def test_step_needs_output_or_predicate(self, root, runner):
        wf = Workflow("w", None, runner=runner)
        with pytest.raises(WorkflowDefinitionError, match="tracked output"):
            wf.add_step("A", _touch(root / "a"))

    def test_untracked_only_step_needs_predicate(self, root, runner):
        wf = Workflow("w", None, runner=runner)
        with pytest.raises(WorkflowDefinitionError):
            wf.add_step("A", _touch(root / "a"), outputs=[Artifact(root / "a", tracked=False)])

    def test_comment_lookup(self, root, runner):
        wf = _abc_workflow(root, runner)
        assert wf.comment("B") == "Make b"

    def test_unknown_step_lookup(self, root, runner):
        wf = _abc_workflow(root, runner)
        with pytest.raises(KeyError):
            wf.step("Z")


# ---------------------------------------------------------------------------
# Running and resuming
# ---------------------------------------------------------------------------


class TestRun:
    """run() executes incomplete steps and skips complete ones."""

    def test_first_run_executes_every_step(self, root, runner):
        wf = _abc_workflow(root, runner)
        assert wf.run() == ["A", "B", "C"]
        assert wf.is_complete()

    def test_second_run_is_a_no_op(self, root, runner):
        wf = _abc_workflow(root, runner)
        wf.run()
        runner.calls.clear()

        assert wf.run() == []
        assert runner.calls == []

    def test_resume_reruns_deleted_step_and_dependents(self, root, runner):
        wf = _abc_workflow(root, runner)
        wf.run()

        (root / "b.txt").unlink()
        assert wf.run() == ["B", "C"]

    def test_resume_leaves_independent_branch_alone(self, root, runner):
        wf = Workflow("diamond", None, runner=runner)
        wf.add_step("A", _touch(root / "a"), outputs=[Artifact(root / "a")])
        wf.add_step("B", _touch(root / "b"), depends_on=["A"], outputs=[Artifact(root / "b")])
        wf.add_step("C", _touch(root / "c"), depends_on=["A"], outputs=[Artifact(root / "c")])
        wf.add_step("D", _touch(root / "d"), depends_on=["B", "C"], outputs=[Artifact(root / "d")])
        assert wf.run() == ["A", "B", "C", "D"]

        (root / "b").unlink()
        runner.calls.clear()
        assert wf.run() == ["B", "D"]
        assert [a.args[0] for a in runner.calls] == [str(root / "b"), str(root / "d")]

    def test_resume_after_deleting_last_step(self, root, runner):
        wf = _abc_workflow(root, runner)
        wf.run()

        (root / "c.txt").unlink()
        assert wf.run() == ["C"]

    def test_empty_output_is_not_complete(self, root, runner):
        wf = _abc_workflow(root, runner)
        wf.run()
        (root / "a.txt").write_text("")

        assert not wf.is_step_complete("A")
        assert wf.run() == ["A", "B", "C"]

    def test_walk_states_in_declared_order(self, root, runner):
        wf = _abc_workflow(root, runner)
        (root / "a.txt").write_text("x")

        seen = []
        wf.walk_states(lambda name, done: seen.append((name, done)))
        assert seen == [("A", True), ("B", False), ("C", False)]
        assert wf.is_started()
        assert not wf.is_complete()

    def test_custom_predicate_is_used(self, root, runner):
        wf = Workflow("w", {"done": True}, runner=runner)
        wf.add_step("A", _touch(root / "a"), complete_when=lambda cfg: cfg["done"])
        assert wf.is_complete()
        assert wf.run() == []

    def test_injected_probe(self, root, runner):
        """The default predicate asks the probe, not the filesystem directly."""
        present = set()
        wf = Workflow("w", None, runner=runner, probe=lambda p: p in present)
        wf.add_step("A", _touch(root / "a"), outputs=[Artifact(root / "a")])

        assert not wf.is_complete()
        present.add(root / "a")
        assert wf.is_complete()


class TestFailure:
    """A failing step stops the workflow and leaves no partial output."""

    def test_failure_raises_and_names_step(self, root):
        runner = FakeRunner(root, fail={"false"})
        wf = Workflow("w", None, runner=runner)
        wf.add_step("A", _touch(root / "a"), outputs=[Artifact(root / "a")])
        wf.add_step(
            "B", StepAction("false", (str(root / "b"),)), depends_on=["A"], outputs=[Artifact(root / "b")]
        )
        wf.add_step("C", _touch(root / "c"), depends_on=["B"], outputs=[Artifact(root / "c")])

        with pytest.raises(StepFailure) as excinfo:
            wf.run()

        assert excinfo.value.step == "B"
        assert excinfo.value.exit_code == 1
        assert wf.failed_step == "B"
        assert not (root / "c").exists()

    def test_partial_output_removed(self, root):
        class CrashingRunner(FakeRunner):
            def run(self, action, log_path=None):
                self.calls.append(action)
                (root / "a").write_text("partial")
                return 1

        runner = CrashingRunner(root)
        wf = Workflow("w", None, runner=runner)
        wf.add_step("A", StepAction("crash"), outputs=[Artifact(root / "a")])

        with pytest.raises(StepFailure):
            wf.run()
        assert not (root / "a").exists()

    def test_failure_carries_chunk(self, root):
        class ChunkConfig:
            chunk = 3

        runner = FakeRunner(root, fail={"false"})
        wf = Workflow("w", ChunkConfig(), runner=runner)
        wf.add_step("A", StepAction("false"), outputs=[Artifact(root / "a")])

        with pytest.raises(StepFailure) as excinfo:
            wf.run()
        assert excinfo.value.chunk == 3
        assert "chunk 3" in str(excinfo.value)


# ---------------------------------------------------------------------------
# Cleaning
# ---------------------------------------------------------------------------


class TestClean:
    """clean() removes files by kind and never touches FINAL artifacts."""

    def test_clean_removes_intermediate_only(self, root, runner):
        wf = _abc_workflow(root, runner)
        wf.run()

        removed = wf.clean()
        assert removed == [root / "a.txt"]
        assert (root / "b.txt").exists()
        assert (root / "c.txt").exists()

    def test_deep_clean_also_removes_precious(self, root, runner):
        wf = _abc_workflow(root, runner)
        wf.run()

        removed = wf.clean(deep=True)
        assert sorted(removed) == [root / "a.txt", root / "b.txt"]
        assert (root / "c.txt").exists()

    def test_clean_missing_files_is_fine(self, root, runner):
        wf = _abc_workflow(root, runner)
        assert wf.clean(deep=True) == []


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    """diagram(), edges() and shell_script() describe the graph."""

    def test_edges(self, root, runner):
        wf = _abc_workflow(root, runner)
        assert wf.edges() == [("A", "B"), ("B", "C")]

    def test_diagram_has_nodes_and_edges(self, root, runner):
        dot = _abc_workflow(root, runner).diagram()
        assert dot.startswith('digraph "abc" {')
        assert '"A" -> "B";' in dot
        assert '"B" -> "C";' in dot
        assert dot.count("[label=") == 3

    def test_shell_script_one_line_per_step(self, root, runner):
        script = _abc_workflow(root, runner).shell_script()
        lines = script.splitlines()
        assert lines == [
            f"touch {root / 'a.txt'}",
            f"touch {root / 'b.txt'}",
            f"touch {root / 'c.txt'}",
        ]

    def test_shell_script_quotes_and_redirects(self, root):
        action = StepAction("echo", ("hello world",), stdout=root / "out file.txt")
        assert action.command_line() == f"echo 'hello world' > '{root / 'out file.txt'}'"


# ---------------------------------------------------------------------------
# SubprocessRunner
# ---------------------------------------------------------------------------


class TestSubprocessRunner:
    """SubprocessRunner runs real processes and redirects stdout atomically."""

    def test_stdout_written_on_success(self, root):
        out = root / "hello.txt"
        action = StepAction(sys.executable, ("-c", "print('hello')"), stdout=out)

        assert SubprocessRunner().run(action) == 0
        assert out.read_text() == "hello\n"
        assert not (root / "hello.txt.tmp").exists()

    def test_stdout_discarded_on_failure(self, root):
        out = root / "fail.txt"
        action = StepAction(sys.executable, ("-c", "import sys; print('x'); sys.exit(3)"), stdout=out)

        assert SubprocessRunner().run(action) == 3
        assert not out.exists()
        assert not (root / "fail.txt.tmp").exists()

    def test_stderr_goes_to_log(self, root):
        log = root / "log" / "step.log"
        action = StepAction(sys.executable, ("-c", "import sys; sys.stderr.write('oops')"))

        assert SubprocessRunner().run(action, log) == 0
        assert log.read_text() == "oops"

    def test_missing_program(self, root):
        assert SubprocessRunner().run(StepAction(str(root / "no-such-program"))) == 127

    def test_terminated_runner_refuses_new_actions(self, root):
        runner = SubprocessRunner()
        runner.terminate()
        assert runner.run(StepAction(sys.executable, ("-c", "pass"))) != 0

    def test_terminate_during_start_stops_new_process(self, root, monkeypatch):
        runner = SubprocessRunner()
        started = []

        class RacingPopen:
            """Receives a terminate request while it is being started."""

            def __init__(self, argv, **kwargs):
                self.pid = 4242
                self.stopped = False
                started.append(self)
                runner.terminate()

            def terminate(self):
                self.stopped = True

            def wait(self):
                return -15 if self.stopped else 0

        monkeypatch.setattr(engine.subprocess, "Popen", RacingPopen)
        assert runner.run(StepAction("sleep", ("60",))) == -15
        assert started[0].stopped

    def test_workflow_with_real_runner(self, root):
        out = root / "a.txt"
        wf = Workflow("real", None)
        wf.add_step(
            "A",
            StepAction(sys.executable, ("-c", "print('a')"), stdout=out),
            outputs=[Artifact(out)],
        )
        assert wf.run() == ["A"]
        assert artifact_ready(out)
