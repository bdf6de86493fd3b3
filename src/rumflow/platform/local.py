"""
Run a job on the current machine.

Chunk workflows run side by side on a thread pool, each step as a
subprocess. The pool is bounded by how many chunks fit in RAM at once.
"""

from __future__ import annotations

import os
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import List

from rumflow.errors import ChunkFailures, PhaseOrderError, PlatformError, StepFailure
from rumflow.platform.base import Platform
from rumflow.workflow.workflows import reads_file

PID_FILE = "local.pid"


class LocalPlatform(Platform):
    """Runs every phase in this process."""

    @property
    def pid_file(self) -> Path:
        return self.config.settings_dir / PID_FILE

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def preprocess(self) -> None:
        workflow = self.job.preprocessing_workflow()
        if workflow.is_complete():
            self.logger.info("Preprocessing is already done")
            return
        self.logger.info("Splitting the input reads into chunks")
        workflow.run()

    def process(self) -> None:
        chunks = self.selected_chunks()
        missing = [n for n in chunks if not reads_file(self.config, n).exists()]
        if missing:
            raise PhaseOrderError(
                f"Reads for chunk(s) {', '.join(map(str, missing))} are missing; "
                "run the preprocess phase first"
            )

        workflows = {n: self.job.chunk_workflow(n) for n in chunks}
        pending = [n for n, wf in workflows.items() if not wf.is_complete()]
        if not pending:
            self.logger.info("All chunks are already done")
            return

        workers = self.job.parallelism(len(pending))
        self.logger.info(f"Running {len(pending)} chunk(s), up to {workers} at a time")

        failures: List[StepFailure] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunk") as pool:
            futures = {pool.submit(workflows[n].run): n for n in pending}
            for future in as_completed(futures):
                chunk = futures[future]
                try:
                    future.result()
                except StepFailure as e:
                    self.logger.error(f"Chunk {chunk} failed: {e}")
                    failures.append(e)
                else:
                    self.logger.info(f"Chunk {chunk} finished")

        if failures:
            raise ChunkFailures(failures)

    def postprocess(self) -> None:
        workflow = self.job.postprocessing_workflow()
        if workflow.is_complete():
            self.logger.info("Postprocessing is already done")
            return

        incomplete = [n for n in self.config.chunk_nums() if not self.job.chunk_workflow(n).is_complete()]
        if incomplete:
            raise PhaseOrderError(
                f"Cannot postprocess: chunk(s) {', '.join(map(str, incomplete))} are not finished"
            )

        self.logger.info("Merging chunk results")
        workflow.run()

        if self.config.cleanup:
            self.logger.info("Removing intermediate files")
            self.job.remove_intermediates()

    # ------------------------------------------------------------------
    # Parent process
    # ------------------------------------------------------------------

    def start_parent(self) -> None:
        """Run the selected phases here, blocking until they finish.

        The process ID is recorded so that ``stop`` can find it. SIGTERM
        terminates the step processes in flight.
        """
        run_pre, run_proc, run_post = self.context.directives.phases()

        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(f"{os.getpid()}\n")

        previous = None
        if threading.current_thread() is threading.main_thread():
            previous = signal.signal(signal.SIGTERM, self._on_sigterm)

        try:
            if run_pre:
                self.preprocess()
            if run_proc:
                self.process()
            if run_post:
                self.postprocess()
        finally:
            if previous is not None:
                signal.signal(signal.SIGTERM, previous)
            self.pid_file.unlink(missing_ok=True)

    def _on_sigterm(self, signum: int, frame: object) -> None:
        self.logger.warning("Received SIGTERM, stopping running steps")
        self.job.runner.terminate()

    def stop(self) -> None:
        """Send SIGTERM to the recorded parent process.

        Raises:
            PlatformError: If no job is running.
        """
        if not self.pid_file.exists():
            raise PlatformError(f"No running job found in {self.config.output_dir}")

        text = self.pid_file.read_text().strip()
        try:
            pid = int(text)
        except ValueError:
            raise PlatformError(f"Unreadable PID file {self.pid_file}: {text!r}") from None

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            self.pid_file.unlink(missing_ok=True)
            raise PlatformError(f"Process {pid} is not running; removed stale {self.pid_file}") from None
        self.logger.info(f"Sent SIGTERM to process {pid}")

