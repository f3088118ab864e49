"""Run configuration record and the guard that keeps checkpoints consistent."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from checkpoints import CheckpointStore, WorkDirectory
from errors import ConfigMismatchError

RECORD_WRITTEN = "written"
RECORD_UNCHANGED = "unchanged"
RECORD_OVERRIDDEN = "overridden"
RECORD_MISMATCH = "mismatch"


@dataclass(frozen=True)
class RunConfig:
    """Every setting that changes the bytes of an encoded segment.

    Field order is the record's line order and must stay stable.
    """

    frame_profile: str
    input_basename: str
    seg_seconds: int
    crf: int
    fps: str
    model: str
    models_dir: str
    internal_scale: int
    final_scale: int
    output_geometry: str
    target_dar: str
    jpeg_quality: int
    tile_size: int
    threads: str
    vk_device_index: int
    codec: str
    preset: str
    pre_filter: str

    def to_record(self) -> str:
        lines = [f"{field.name.upper()}={getattr(self, field.name)}" for field in fields(self)]
        return "\n".join(lines) + "\n"


def read_record(config_path: Path) -> Optional[bytes]:
    if not config_path.is_file():
        return None
    return config_path.read_bytes()


def write_record(config_path: Path, record: str) -> None:
    tmp_path = config_path.with_name(f".{config_path.name}.tmp")
    tmp_path.write_bytes(record.encode("utf-8"))
    os.replace(tmp_path, config_path)


def check_run_config(work_dir: WorkDirectory, record: str, store: CheckpointStore) -> str:
    """Classify the current record against persisted state without writing."""
    persisted = read_record(work_dir.config_path)
    if persisted is None or not store.has_any():
        return RECORD_WRITTEN
    if persisted == record.encode("utf-8"):
        return RECORD_UNCHANGED
    return RECORD_MISMATCH


def format_mismatch_message(work_dir: WorkDirectory, record: str) -> str:
    lines = [
        "Existing segments found, but the current configuration differs from the",
        "configuration used to generate them.",
        "",
        f"Work dir : {work_dir.root}",
        f"Config   : {work_dir.config_path}",
        "",
        "To proceed safely:",
        f"  rm -f '{work_dir.segments_dir}'/seg_*.mp4",
        "or",
        f"  rm -rf '{work_dir.root}'",
        "or override (NOT recommended):",
        "  --allow-mixed-config  (or ALLOW_MIXED=1)",
        "",
        "Current effective configuration:",
        record.rstrip("\n"),
    ]
    return "\n".join(lines)


def enforce_run_config(
    work_dir: WorkDirectory,
    run_config: RunConfig,
    store: CheckpointStore,
    *,
    allow_mixed: bool,
) -> str:
    """Refuse to mix checkpoints from different configurations, then persist the record."""
    record = run_config.to_record()
    status = check_run_config(work_dir, record, store)
    if status == RECORD_MISMATCH:
        if not allow_mixed:
            raise ConfigMismatchError(
                format_mismatch_message(work_dir, record),
                inspect_path=work_dir.segments_dir,
            )
        status = RECORD_OVERRIDDEN

    if status != RECORD_UNCHANGED:
        write_record(work_dir.config_path, record)
    return status
