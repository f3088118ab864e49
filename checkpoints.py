"""Work directory layout, segment checkpoint store, and workspace lock."""

from __future__ import annotations

import contextlib
import fcntl
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from errors import WorkspaceLockedError

CHECKPOINT_INDEX_WIDTH = 3
MAX_SEGMENTS = 10**CHECKPOINT_INDEX_WIDTH
CHECKPOINT_PREFIX = "seg_"
CHECKPOINT_SUFFIX = ".mp4"
CHECKPOINT_PATTERN = re.compile(r"^seg_(\d+)\.mp4$")
PARTIAL_SUFFIX = ".partial.mp4"


@dataclass(frozen=True)
class WorkDirectory:
    """Per-source state that survives between invocations."""

    root: Path

    @property
    def segments_dir(self) -> Path:
        return self.root / "segments"

    @property
    def scratch_dir(self) -> Path:
        return self.root / "scratch"

    @property
    def config_path(self) -> Path:
        return self.root / "run_config.txt"

    @property
    def concat_manifest_path(self) -> Path:
        return self.root / "segments.txt"

    @property
    def concat_video_path(self) -> Path:
        return self.root / "video_concat.mp4"

    @property
    def lock_path(self) -> Path:
        return self.root / ".lock"


def work_directory_for(work_root: Path, source: Path) -> WorkDirectory:
    """Work directories are keyed by the source's base name, not by job settings."""
    return WorkDirectory(root=work_root / source.stem)


def prepare_work_directory(work_root: Path, source: Path) -> WorkDirectory:
    work_dir = work_directory_for(work_root, source)
    work_dir.segments_dir.mkdir(parents=True, exist_ok=True)
    work_dir.scratch_dir.mkdir(parents=True, exist_ok=True)
    return work_dir


@contextlib.contextmanager
def workspace_lock(work_dir: WorkDirectory) -> Iterator[Path]:
    """Hold an advisory exclusive lock on the work directory for one run.

    The kernel drops the lock when the process exits, so a killed run never
    leaves a stale lock behind.
    """
    work_dir.root.mkdir(parents=True, exist_ok=True)
    handle = open(work_dir.lock_path, "a+")
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise WorkspaceLockedError(
                "Another invocation is already running against this work directory.",
                inspect_path=work_dir.root,
            ) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        try:
            yield work_dir.lock_path
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


def segment_stem(index: int) -> str:
    """Zero-padded so a lexicographic listing is already in index order."""
    if index < 0 or index >= MAX_SEGMENTS:
        raise ValueError(f"Segment index {index} does not fit in {CHECKPOINT_INDEX_WIDTH} digits.")
    return f"{CHECKPOINT_PREFIX}{index:0{CHECKPOINT_INDEX_WIDTH}d}"


def checkpoint_name(index: int) -> str:
    return f"{segment_stem(index)}{CHECKPOINT_SUFFIX}"


def parse_checkpoint_index(name: str) -> Optional[int]:
    match = CHECKPOINT_PATTERN.match(name)
    if not match:
        return None
    return int(match.group(1))


class CheckpointStore:
    """Directory of completed segment artifacts.

    A non-empty file under a checkpoint name is the only record that a segment
    is done. Encodes land under a hidden partial name first and are renamed into
    place once they are known to be good.
    """

    def __init__(self, segments_dir: Path) -> None:
        self.segments_dir = segments_dir

    def path(self, index: int) -> Path:
        return self.segments_dir / checkpoint_name(index)

    def partial_path(self, index: int) -> Path:
        return self.segments_dir / f".{segment_stem(index)}{PARTIAL_SUFFIX}"

    def exists(self, index: int) -> bool:
        candidate = self.path(index)
        return candidate.is_file() and candidate.stat().st_size > 0

    def list_all(self) -> list[tuple[int, Path]]:
        """Return completed checkpoints sorted by index."""
        if not self.segments_dir.is_dir():
            return []
        entries: list[tuple[int, Path]] = []
        for candidate in sorted(self.segments_dir.iterdir()):
            index = parse_checkpoint_index(candidate.name)
            if index is None or not candidate.is_file():
                continue
            if candidate.stat().st_size == 0:
                continue
            entries.append((index, candidate))
        entries.sort(key=lambda entry: entry[0])
        return entries

    def has_any(self) -> bool:
        return bool(self.list_all())

    def commit(self, index: int, partial: Path) -> Path:
        """Atomically publish a finished encode under its checkpoint name."""
        if not partial.is_file() or partial.stat().st_size == 0:
            raise ValueError(f"Refusing to commit empty or missing segment file: {partial}")
        target = self.path(index)
        os.replace(partial, target)
        return target

    def discard_partials(self) -> int:
        """Remove leftover partial encodes from interrupted runs."""
        if not self.segments_dir.is_dir():
            return 0
        removed = 0
        for stale in self.segments_dir.glob(f".{CHECKPOINT_PREFIX}*{PARTIAL_SUFFIX}"):
            stale.unlink(missing_ok=True)
            removed += 1
        return removed


def clear_segment_scratch(scratch_dir: Path, index: int) -> None:
    """Remove scratch left behind by an earlier attempt at this segment."""
    if not scratch_dir.is_dir():
        return
    for stale in scratch_dir.glob(f"{segment_stem(index)}_*"):
        if stale.is_dir():
            shutil.rmtree(stale, ignore_errors=True)
        else:
            stale.unlink(missing_ok=True)
