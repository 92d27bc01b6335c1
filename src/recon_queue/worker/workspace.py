"""Jobs-root directory layout and per-attempt filesystem preparation."""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from recon_queue.worker.errors import JobError, JobErrorKind, kind_for_os_error

logger = logging.getLogger(__name__)

MESH_EXTENSIONS: tuple[str, ...] = (".obj", ".ply", ".fbx", ".gltf", ".glb")


@dataclass(slots=True, frozen=True)
class ProjectLayout:
    """Deterministic per-project directory layout under the jobs root."""

    jobs_root: Path
    project_id: int

    @property
    def project_dir(self) -> Path:
        return self.jobs_root / f"project_{self.project_id}"

    @property
    def images_dir(self) -> Path:
        return self.project_dir / "images"

    @property
    def flat_images_dir(self) -> Path:
        return self.project_dir / "flat_images"

    @property
    def output_dir(self) -> Path:
        return self.project_dir / "output"

    @property
    def sparse_dir(self) -> Path:
        return self.output_dir / "sparse"

    @property
    def dense_dir(self) -> Path:
        return self.output_dir / "dense"

    @property
    def database_path(self) -> Path:
        return self.project_dir / "database.db"

    @property
    def fused_path(self) -> Path:
        return self.dense_dir / "fused.ply"

    @property
    def mesh_path(self) -> Path:
        return self.dense_dir / "meshed-poisson.ply"

    def locate_mesh(self) -> Path | None:
        """The Poisson mesh, else the best other mesh; never the fused point cloud."""

        if self.mesh_path.is_file():
            return self.mesh_path
        return find_mesh_file(self.output_dir, exclude=(self.fused_path,))

    def require_project_dir(self) -> None:
        if not self.project_dir.is_dir():
            raise JobError(
                f"Project directory not found: {self.project_dir}",
                kind=JobErrorKind.DIRECTORY_MISSING,
            )

    def prepare_output_dirs(self) -> None:
        try:
            self.sparse_dir.mkdir(parents=True, exist_ok=True)
            self.dense_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise JobError(
                f"Cannot create output directories: {error}",
                kind=kind_for_os_error(error),
            ) from error


def flatten_images(
    source_dir: Path,
    target_dir: Path,
    *,
    extensions: tuple[str, ...],
) -> int:
    """Copy allow-listed images from a nested tree into one flat directory.

    The target is rebuilt from scratch on every attempt and the source tree is
    left untouched. Files sharing a name in different subdirectories collapse
    into one; the last one copied wins.
    """

    if not source_dir.is_dir():
        raise JobError(
            f"Images directory not found: {source_dir}",
            kind=JobErrorKind.INVALID_INPUT,
        )

    allowed = {extension.lower() for extension in extensions}
    try:
        if target_dir.exists():
            shutil.rmtree(target_dir)
        target_dir.mkdir(parents=True)

        copied = 0
        for path in sorted(source_dir.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in allowed:
                continue
            shutil.copy2(path, target_dir / path.name)
            copied += 1
    except OSError as error:
        raise JobError(
            f"Failed to flatten images: {error}",
            kind=kind_for_os_error(error),
        ) from error

    count = sum(1 for entry in target_dir.iterdir() if entry.is_file())
    logger.info("Flattened %d images (%d unique) into %s", copied, count, target_dir)
    return count


def find_mesh_file(output_dir: Path, *, exclude: tuple[Path, ...] = ()) -> Path | None:
    """Pick the largest mesh of the first extension that has any match."""

    skipped = {path.resolve() for path in exclude}
    for extension in MESH_EXTENSIONS:
        candidates = [
            path
            for path in output_dir.rglob(f"*{extension}")
            if path.is_file() and path.resolve() not in skipped
        ]
        if candidates:
            return max(candidates, key=lambda path: path.stat().st_size)
    return None


def relative_to_jobs_root(jobs_root: Path, path: Path) -> str:
    """Stored model paths are POSIX-style and relative to the jobs root."""

    relative = path.resolve().relative_to(jobs_root.resolve())
    return str(PurePosixPath(*relative.parts))


def resolve_output_path(jobs_root: Path, stored_path: str) -> Path:
    """Join a stored model path back onto the jobs root."""

    candidate = Path(stored_path)
    if candidate.is_absolute():
        return candidate
    return jobs_root / stored_path.lstrip("/\\")


@contextmanager
def scratch_directory(project_id: int, *, root: Path | None) -> Iterator[Path]:
    """Per-attempt local cache removed on both success and failure."""

    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"project_{project_id}_", dir=root))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed scratch directory %s", path)


def extract_archive(archive_path: Path, target_dir: Path) -> int:
    """Extract an uploaded photo archive; returns the number of files written."""

    target_dir.mkdir(parents=True, exist_ok=True)
    resolved_target = target_dir.resolve()
    try:
        with zipfile.ZipFile(archive_path) as archive:
            broken = archive.testzip()
            if broken is not None:
                raise JobError(
                    f"Corrupt archive member: {broken}",
                    kind=JobErrorKind.CORRUPT_ARCHIVE,
                )
            members = archive.infolist()
            for member in members:
                destination = (target_dir / member.filename).resolve()
                if not destination.is_relative_to(resolved_target):
                    raise JobError(
                        f"Invalid archive member path: {member.filename}",
                        kind=JobErrorKind.INVALID_INPUT,
                    )
            archive.extractall(target_dir)
    except zipfile.BadZipFile as error:
        raise JobError(
            f"Corrupt archive {archive_path.name}: {error}",
            kind=JobErrorKind.CORRUPT_ARCHIVE,
        ) from error
    return sum(1 for member in members if not member.is_dir())
