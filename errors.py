"""Errors raised by the segmented upscale pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class UpscaleError(Exception):
    """Base error carrying enough context for an operator to retry safely."""

    stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        segment_index: Optional[int] = None,
        inspect_path: Optional[Path] = None,
    ) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.segment_index = segment_index
        self.inspect_path = inspect_path

    def describe(self) -> list[str]:
        lines = [f"Stage: {self.stage}"]
        if self.segment_index is not None:
            lines.append(f"Segment: {self.segment_index:03d}")
        if self.inspect_path is not None:
            lines.append(f"Inspect: {self.inspect_path}")
        return lines


class ProbeError(UpscaleError):
    stage = "probe"


class ConfigMismatchError(UpscaleError):
    stage = "config"


class SegmentExtractionError(UpscaleError):
    """No frames came out of a window; marks the end of available content."""

    stage = "extract"


class SegmentProcessingError(UpscaleError):
    stage = "segment"


class ReassemblyError(UpscaleError):
    stage = "reassemble"


class WorkspaceLockedError(UpscaleError):
    stage = "lock"
