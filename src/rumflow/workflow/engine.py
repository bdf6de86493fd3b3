"""
Step-graph workflow engine.

A ``Workflow`` is an ordered collection of named steps bound to one
config. Each step has an action (an external command), a completion
predicate, and the artifacts it produces. Whether a step is done is never
recorded anywhere: it is recomputed from the filesystem every time it is
asked for, which is what makes an interrupted job resumable by simply
running it again.

Example:
    >>> wf = Workflow("demo", config)
    >>> wf.add_step(
    ...     "sort",
    ...     StepAction("sort", ("-o", "sorted.txt", "input.txt")),
    ...     comment="Sort the input",
    ...     outputs=[Artifact(Path("sorted.txt"))],
    ... )
    >>> wf.run()
    ['sort']
    >>> wf.run()
    []
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from rumflow.errors import StepFailure, WorkflowDefinitionError

LOGGER = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]
Probe = Callable[[Path], bool]
StateCallback = Callable[[str, bool], None]


def artifact_ready(path: Path) -> bool:
    """Default filesystem probe: the file exists and is not empty."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


class ArtifactKind(str, Enum):
    """How precious a step's output is when cleaning up.

    INTERMEDIATE files are removed by an ordinary clean, PRECIOUS files
    (expensive but reproducible) only by a deep clean, and FINAL files are
    never removed.
    """

    INTERMEDIATE = "intermediate"
    PRECIOUS = "precious"
    FINAL = "final"


@dataclass(frozen=True)
class Artifact:
    """A file a step produces.

    Attributes:
        path: Where the file is written.
        kind: How the file is treated by ``Workflow.clean``.
        tracked: Whether the default completion predicate checks this file.
            Outputs that may legitimately be empty are left untracked.
    """

    path: Path
    kind: ArtifactKind = ArtifactKind.INTERMEDIATE
    tracked: bool = True


@dataclass(frozen=True)
class StepAction:
    """An external command a step runs.

    Attributes:
        program: Executable to run.
        args: Arguments passed to the program.
        stdout: File the command's standard output is written to, if any.
    """

    program: str
    args: Tuple[str, ...] = ()
    stdout: Optional[Path] = None

    def argv(self) -> List[str]:
        return [self.program, *(str(a) for a in self.args)]

    def command_line(self) -> str:
        """The action as one line of shell."""
        line = shlex.join(self.argv())
        if self.stdout is not None:
            line += f" > {shlex.quote(str(self.stdout))}"
        return line


@dataclass
class Step:
    """A named unit of work in a workflow.

    Attributes:
        name: Unique name within the workflow.
        action: Command that produces the step's outputs.
        comment: Human readable description shown in status output.
        depends_on: Names of steps that must complete first.
        outputs: Artifacts the action produces.
        complete_when: Predicate over the workflow's config; when None the
            step is complete once every output is present and non-empty.
    """

    name: str
    action: StepAction
    comment: str = ""
    depends_on: Tuple[str, ...] = ()
    outputs: Tuple[Artifact, ...] = ()
    complete_when: Optional[Predicate] = None


class SubprocessRunner:
    """Runs step actions as subprocesses.

    One runner can be shared by several workflows running on different
    threads. It remembers the processes it has in flight so that
    ``terminate`` can stop all of them, e.g. when a job is killed.
    """

    def __init__(self) -> None:
        self._active: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._terminated = False

    def run(self, action: StepAction, log_path: Optional[Path] = None) -> int:
        """Run an action and return its exit status.

        When the action redirects stdout, output goes to a temporary file
        that is renamed into place only on success, so a crashed step never
        leaves behind a file that looks complete.
        """
        if self._terminated:
            return -15

        stdout_tmp: Optional[Path] = None
        out_handle: Optional[IO[bytes]] = None
        err_handle: Optional[IO[bytes]] = None
        try:
            if action.stdout is not None:
                action.stdout.parent.mkdir(parents=True, exist_ok=True)
                stdout_tmp = action.stdout.with_name(action.stdout.name + ".tmp")
                out_handle = open(stdout_tmp, "wb")
            if log_path is not None:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                err_handle = open(log_path, "ab")

            proc = subprocess.Popen(action.argv(), stdout=out_handle, stderr=err_handle)
            with self._lock:
                self._active.add(proc)
                if self._terminated:
                    proc.terminate()
            try:
                returncode = proc.wait()
            finally:
                with self._lock:
                    self._active.discard(proc)
        except FileNotFoundError as e:
            LOGGER.error(f"Could not run {action.program}: {e}")
            returncode = 127
        finally:
            if out_handle is not None:
                out_handle.close()
            if err_handle is not None:
                err_handle.close()

        if stdout_tmp is not None:
            if returncode == 0:
                stdout_tmp.replace(action.stdout)
            else:
                stdout_tmp.unlink(missing_ok=True)
        return returncode

    def terminate(self) -> None:
        """Stop every running action and refuse to start new ones."""
        with self._lock:
            self._terminated = True
            procs = list(self._active)
        for proc in procs:
            LOGGER.warning(f"Terminating process {proc.pid}")
            proc.terminate()


class Workflow:
    """An ordered DAG of steps bound to one config.

    Steps must be declared after every step they depend on, so declaration
    order is always a valid topological order and a cycle cannot be built.

    Args:
        name: Label used in logs, diagrams and error messages.
        config: The config the workflow's predicates are evaluated against.
        runner: Object with ``run(action, log_path) -> int``; defaults to a
            new ``SubprocessRunner``.
        probe: Filesystem check used by the default predicate.
        log_dir: Directory receiving one stderr log per step.
    """

    def __init__(
        self,
        name: str,
        config: Any,
        runner: Optional[Any] = None,
        probe: Probe = artifact_ready,
        log_dir: Optional[Path] = None,
    ) -> None:
        self._name = name
        self._config = config
        self._runner = runner if runner is not None else SubprocessRunner()
        self._probe = probe
        self._log_dir = log_dir
        self._steps: Dict[str, Step] = {}
        self.failed_step: Optional[str] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> Any:
        return self._config

    @property
    def steps(self) -> List[Step]:
        """Steps in declared (topological) order."""
        return list(self._steps.values())

    @property
    def chunk(self) -> Optional[int]:
        return getattr(self._config, "chunk", None)

    # ------------------------------------------------------------------
    # Definition
    # ------------------------------------------------------------------

    def add_step(
        self,
        name: str,
        action: StepAction,
        *,
        comment: str = "",
        depends_on: Iterable[str] = (),
        outputs: Iterable[Artifact] = (),
        complete_when: Optional[Predicate] = None,
    ) -> Step:
        """Declare a step.

        Raises:
            WorkflowDefinitionError: If the name is taken, a dependency has
                not been declared yet, or the step has neither outputs nor
                a completion predicate.
        """
        if name in self._steps:
            raise WorkflowDefinitionError(f"Workflow '{self._name}' already has a step '{name}'")

        deps = tuple(depends_on)
        for dep in deps:
            if dep not in self._steps:
                raise WorkflowDefinitionError(
                    f"Step '{name}' depends on '{dep}', which is not declared before it "
                    f"in workflow '{self._name}'. Known steps: {sorted(self._steps)}"
                )

        outs = tuple(outputs)
        if not any(a.tracked for a in outs) and complete_when is None:
            raise WorkflowDefinitionError(
                f"Step '{name}' needs a tracked output or a completion predicate"
            )

        step = Step(
            name=name,
            action=action,
            comment=comment,
            depends_on=deps,
            outputs=outs,
            complete_when=complete_when,
        )
        self._steps[name] = step
        return step

    def step(self, name: str) -> Step:
        try:
            return self._steps[name]
        except KeyError:
            raise KeyError(f"Workflow '{self._name}' has no step '{name}'") from None

    def comment(self, name: str) -> str:
        return self.step(name).comment

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_step_complete(self, name: str) -> bool:
        step = self.step(name)
        if step.complete_when is not None:
            return bool(step.complete_when(self._config))
        return all(self._probe(a.path) for a in step.outputs if a.tracked)

    def walk_states(self, callback: StateCallback) -> None:
        """Call ``callback(step_name, completed)`` for every step in order."""
        for name in self._steps:
            callback(name, self.is_step_complete(name))

    def states(self) -> List[Tuple[str, bool]]:
        states: List[Tuple[str, bool]] = []
        self.walk_states(lambda name, done: states.append((name, done)))
        return states

    def is_complete(self) -> bool:
        return all(done for _, done in self.states())

    def is_started(self) -> bool:
        return any(done for _, done in self.states())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self) -> List[str]:
        """Run every step that is not already complete.

        A step is skipped when its predicate holds, unless one of its
        dependencies was executed during this run; then it is re-run too,
        since its inputs have changed.

        Returns:
            Names of the steps that were executed, in order.

        Raises:
            StepFailure: When an action exits non-zero. The workflow stops
                at that step and ``failed_step`` names it.
        """
        self.failed_step = None
        executed: List[str] = []
        rerun: Set[str] = set()

        for step in self._steps.values():
            stale = any(dep in rerun for dep in step.depends_on)
            if not stale and self.is_step_complete(step.name):
                LOGGER.debug(f"[{self._name}] skip {step.name} (complete)")
                continue

            self._execute(step)
            executed.append(step.name)
            rerun.add(step.name)

        if executed:
            LOGGER.info(f"[{self._name}] finished, ran {len(executed)} step(s)")
        else:
            LOGGER.info(f"[{self._name}] nothing to do, all steps complete")
        return executed

    def _execute(self, step: Step) -> None:
        LOGGER.info(f"[{self._name}] {step.name}: {step.comment}")
        LOGGER.debug(f"[{self._name}] $ {step.action.command_line()}")

        log_path = self._log_dir / f"{step.name}.log" if self._log_dir else None
        returncode = self._runner.run(step.action, log_path)

        if returncode != 0:
            self.failed_step = step.name
            self._discard_outputs(step)
            raise StepFailure(
                step=step.name,
                command=step.action.command_line(),
                exit_code=returncode,
                chunk=self.chunk,
            )

        if not self.is_step_complete(step.name):
            LOGGER.warning(
                f"[{self._name}] {step.name} exited 0 but its outputs are missing or empty"
            )

    def _discard_outputs(self, step: Step) -> None:
        for artifact in step.outputs:
            if artifact.path.exists():
                LOGGER.debug(f"[{self._name}] removing partial output {artifact.path}")
                artifact.path.unlink()

    # ------------------------------------------------------------------
    # Cleaning and export
    # ------------------------------------------------------------------

    def clean(self, deep: bool = False) -> List[Path]:
        """Delete artifacts produced by the steps.

        Args:
            deep: Also delete PRECIOUS artifacts. FINAL artifacts are kept
                either way.

        Returns:
            The paths that were removed.
        """
        kinds = {ArtifactKind.INTERMEDIATE}
        if deep:
            kinds.add(ArtifactKind.PRECIOUS)

        removed: List[Path] = []
        for step in self._steps.values():
            for artifact in step.outputs:
                if artifact.kind in kinds and artifact.path.exists():
                    artifact.path.unlink()
                    removed.append(artifact.path)

        LOGGER.debug(f"[{self._name}] removed {len(removed)} file(s)")
        return removed

    def edges(self) -> List[Tuple[str, str]]:
        """Dependency edges as ``(dependency, dependent)`` pairs."""
        return [(dep, step.name) for step in self._steps.values() for dep in step.depends_on]

    def diagram(self) -> str:
        """The step graph in Graphviz DOT format."""
        lines = [f"digraph {_dot_id(self._name)} {{"]
        for step in self._steps.values():
            label = f"{step.name}\\n{step.comment}" if step.comment else step.name
            lines.append(f"  {_dot_id(step.name)} [label={_dot_id(label)}];")
        for dep, dependent in self.edges():
            lines.append(f"  {_dot_id(dep)} -> {_dot_id(dependent)};")
        lines.append("}")
        return "\n".join(lines) + "\n"

    def shell_script(self) -> str:
        """One command line per step, in order, runnable without rumflow."""
        return "".join(step.action.command_line() + "\n" for step in self._steps.values())


def _dot_id(text: str) -> str:
    return '"' + text.replace('"', '\\"') + '"'
