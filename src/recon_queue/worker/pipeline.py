"""Seven-stage reconstruction pipeline executed as external commands."""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from recon_queue.worker.errors import (
    JobError,
    JobErrorKind,
    StageFailedError,
    kind_for_os_error,
)
from recon_queue.worker.workspace import ProjectLayout

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 5
_GLOG_PROBLEM = re.compile(r"^[EWF]\d{4}")
_PROBLEM_MARKERS: tuple[str, ...] = ("ERROR", "WARNING", "error:", "Error:")
_PROGRESS_MARKERS: tuple[str, ...] = ("Elapsed time:", "Writing output:", "Number of", "Processing")


@dataclass(slots=True, frozen=True)
class ReconstructionStage:
    """One opaque external-process step."""

    name: str
    label: str
    args: tuple[str, ...]
    output_path: Path | None = None


@dataclass(slots=True, frozen=True)
class StageResult:
    """Outcome of a successful stage run."""

    stage: str
    exit_code: int
    duration_seconds: float


def build_stages(layout: ProjectLayout) -> list[ReconstructionStage]:
    """Stage list in execution order for one project."""

    database = str(layout.database_path)
    images = str(layout.flat_images_dir)
    sparse = str(layout.sparse_dir)
    dense = str(layout.dense_dir)
    fused = str(layout.fused_path)
    return [
        ReconstructionStage(
            name="feature_extractor",
            label="Feature extraction",
            args=("--database_path", database, "--image_path", images),
            output_path=layout.database_path,
        ),
        ReconstructionStage(
            name="exhaustive_matcher",
            label="Feature matching",
            args=("--database_path", database),
            output_path=layout.database_path,
        ),
        ReconstructionStage(
            name="mapper",
            label="Sparse reconstruction",
            args=(
                "--database_path",
                database,
                "--image_path",
                images,
                "--output_path",
                sparse,
            ),
            output_path=layout.sparse_dir,
        ),
        ReconstructionStage(
            name="image_undistorter",
            label="Image undistortion",
            args=(
                "--image_path",
                images,
                "--input_path",
                str(layout.sparse_dir / "0"),
                "--output_path",
                dense,
            ),
            output_path=layout.dense_dir,
        ),
        ReconstructionStage(
            name="patch_match_stereo",
            label="Dense stereo matching",
            args=("--workspace_path", dense),
            output_path=layout.dense_dir,
        ),
        ReconstructionStage(
            name="stereo_fusion",
            label="Stereo fusion",
            args=("--workspace_path", dense, "--output_path", fused),
            output_path=layout.fused_path,
        ),
        ReconstructionStage(
            name="poisson_mesher",
            label="Poisson meshing",
            args=("--input_path", fused, "--output_path", str(layout.mesh_path)),
            output_path=layout.mesh_path,
        ),
    ]


class StageRunner:
    """Runs one stage as a blocking subprocess and enforces the exit-code contract."""

    def __init__(self, executable: Sequence[str] | str, *, timeout_seconds: int = 0) -> None:
        if isinstance(executable, str):
            self.command_prefix = tuple(shlex.split(executable))
        else:
            self.command_prefix = tuple(executable)
        self.timeout_seconds = timeout_seconds

    def run(self, stage: ReconstructionStage, *, log_dir: Path) -> StageResult:
        log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = log_dir / f"{stage.name}.stdout.log"
        stderr_path = log_dir / f"{stage.name}.stderr.log"
        run_args = [*self.command_prefix, stage.name, *stage.args]
        logger.info("Running stage %s: %s", stage.name, " ".join(run_args))

        started = time.monotonic()
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    timeout_seconds=self.timeout_seconds,
                )
        except FileNotFoundError as error:
            raise JobError(
                f"Reconstruction command not found: {self.command_prefix[0]}",
                kind=JobErrorKind.TOOL_NOT_FOUND,
                stage=stage.name,
            ) from error
        except OSError as error:
            raise JobError(
                f"Stage {stage.name} failed to start: {error}",
                kind=kind_for_os_error(error),
                stage=stage.name,
            ) from error
        duration = time.monotonic() - started

        stderr_lines = _read_lines(stderr_path)
        _log_stage_output(stage.name, stderr_lines)

        if timed_out:
            raise JobError(
                f"Stage {stage.name} timed out after {self.timeout_seconds}s",
                kind=JobErrorKind.TIMEOUT,
                stage=stage.name,
            )
        if exit_code != 0:
            raise StageFailedError(
                stage=stage.name,
                exit_code=exit_code,
                stderr_tail=" | ".join(stderr_lines[-STDERR_TAIL_LINES:]),
            )
        logger.info("Stage %s completed in %.1fs", stage.name, duration)
        return StageResult(stage=stage.name, exit_code=exit_code, duration_seconds=duration)


class ReconstructionPipeline:
    """Executes all stages in order; the first failure aborts the rest."""

    def __init__(self, runner: StageRunner) -> None:
        self.runner = runner

    def run(
        self,
        layout: ProjectLayout,
        *,
        log_dir: Path,
        on_stage_start: Callable[[int, int, ReconstructionStage], None] | None = None,
    ) -> list[StageResult]:
        layout.prepare_output_dirs()
        stages = build_stages(layout)
        results: list[StageResult] = []
        for index, stage in enumerate(stages, start=1):
            if on_stage_start is not None:
                on_stage_start(index, len(stages), stage)
            results.append(self.runner.run(stage, log_dir=log_dir))
        return results


def step_label(index: int, total: int, stage: ReconstructionStage) -> str:
    return f"Step {index}/{total}: {stage.label}"


def _run_subprocess(
    *,
    run_args: list[str],
    stdout_handle,
    stderr_handle,
    timeout_seconds: int,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    if timeout_seconds <= 0:
        return process.wait(), False
    try:
        return process.wait(timeout=timeout_seconds), False
    except subprocess.TimeoutExpired:
        _terminate_process(process)
        return 124, True


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_lines(path: Path) -> list[str]:
    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return []
    return [line.rstrip() for line in text.splitlines() if line.strip()]


def _log_stage_output(stage: str, lines: list[str]) -> None:
    for line in lines:
        if _GLOG_PROBLEM.match(line) or any(marker in line for marker in _PROBLEM_MARKERS):
            logger.warning("[%s] %s", stage, line)
        elif any(marker in line for marker in _PROGRESS_MARKERS):
            logger.info("[%s] %s", stage, line.split("]", 1)[-1].strip())
