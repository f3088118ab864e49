#!/usr/bin/env python3
"""
Chunked, resumable video upscaler built on Real-ESRGAN (realesrgan-ncnn-vulkan).

The source is cut into fixed-length segments. Each segment's frames are
extracted, upscaled, and re-encoded into a checkpoint under the work directory,
so an interrupted job picks up at the first missing segment. Once every segment
exists the checkpoints are spliced together and the original audio is remuxed.
"""

from __future__ import annotations

import contextlib
import functools
import json
import math
import os
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Iterator, Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from tqdm import tqdm

from checkpoints import (
    CheckpointStore,
    MAX_SEGMENTS,
    WorkDirectory,
    checkpoint_name,
    clear_segment_scratch,
    prepare_work_directory,
    segment_stem,
    work_directory_for,
    workspace_lock,
)
from cli import parse_args, parse_aspect_ratio, resolve_output_path, validate_runtime_args
from errors import (
    ProbeError,
    ReassemblyError,
    SegmentExtractionError,
    SegmentProcessingError,
    UpscaleError,
)
from run_config import RECORD_OVERRIDDEN, RunConfig, check_run_config, enforce_run_config
from toolchain import Toolchain, progress_write, resolve_toolchain, run_subprocess

OTLP_ENDPOINT_ENV = "VHS_UPSCALE_OTLP_ENDPOINT"

_tracing_initialized = False


def init_tracing() -> None:
    """Export spans over OTLP/HTTP when an endpoint is configured."""
    global _tracing_initialized
    if _tracing_initialized:
        return
    _tracing_initialized = True

    endpoint = os.environ.get(OTLP_ENDPOINT_ENV)
    if not endpoint:
        return

    resource = Resource.create({"service.name": "vhs-upscale"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def _traced(func):
    """Decorator that wraps a function call in a tracing span."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        init_tracing()
        with trace.get_tracer(__name__).start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper


# Downstream encoding tolerates a plausible wrong rate; an unknown duration is fatal.
DEFAULT_FRAME_RATE = Fraction(30000, 1001)
MAX_FRAME_RATE = 240

FRAME_EXT = "jpg"
FRAME_PATTERN = f"frame_%08d.{FRAME_EXT}"
FRAME_GLOB = f"frame_*.{FRAME_EXT}"

SEGMENT_SKIPPED = "skipped"
SEGMENT_ENCODED = "encoded"

STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class SourceInfo:
    duration_seconds: int
    frame_rate: Fraction
    width: int
    height: int
    has_audio: bool
    audio_codec: Optional[str]

    @property
    def frame_rate_text(self) -> str:
        return format_frame_rate(self.frame_rate)


@dataclass(frozen=True)
class OutputGeometry:
    width: int
    height: int

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class SegmentPlanEntry:
    index: int
    start_seconds: int
    length_seconds: int


@dataclass(frozen=True)
class SegmentSettings:
    """Everything the worker needs to turn one window into one checkpoint."""

    frame_rate: str
    extract_filter: Optional[str]
    encode_filter: str
    jpeg_quality: int
    model: str
    internal_scale: int
    tile_size: int
    threads: str
    gpu: int
    codec: str
    preset: str
    crf: int


# ── Probing ───────────────────────────────────────────────────────────────────


def parse_frame_rate(value: Optional[str]) -> Optional[Fraction]:
    """Parse ffprobe rates like 30000/1001; None when unusable."""
    if not value:
        return None
    try:
        frame_rate = Fraction(value.strip())
    except (ValueError, ZeroDivisionError):
        return None
    if frame_rate <= 0 or frame_rate > MAX_FRAME_RATE:
        return None
    return frame_rate


def format_frame_rate(frame_rate: Fraction) -> str:
    return f"{frame_rate.numerator}/{frame_rate.denominator}"


def stderr_tail(text: Optional[str], lines: int = STDERR_TAIL_LINES) -> str:
    if not text:
        return "no stderr"
    tail = text.strip().splitlines()[-lines:]
    return "\n".join(tail) if tail else "no stderr"


@_traced
def probe_source(ffprobe_bin: str, source: Path) -> SourceInfo:
    """Read duration, rate, geometry and audio presence with ffprobe."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(source),
    ]
    try:
        result = run_subprocess(cmd, check=False, capture_output=True)
    except OSError as exc:
        raise ProbeError(f"Could not run ffprobe: {exc}", inspect_path=source) from exc
    if result.returncode != 0:
        raise ProbeError(
            f"ffprobe could not open the source: {stderr_tail(result.stderr)}",
            inspect_path=source,
        )

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ProbeError(f"Failed to parse ffprobe output: {exc}", inspect_path=source) from exc

    video_stream = None
    audio_stream = None
    for stream in payload.get("streams", []):
        stream_type = stream.get("codec_type")
        if stream_type == "video" and video_stream is None:
            video_stream = stream
        elif stream_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise ProbeError("No video stream found in source.", inspect_path=source)

    duration_raw = payload.get("format", {}).get("duration") or video_stream.get("duration")
    try:
        duration = float(duration_raw)
    except (TypeError, ValueError):
        raise ProbeError("Could not determine source duration.", inspect_path=source) from None
    if not math.isfinite(duration) or duration <= 0:
        raise ProbeError("Could not determine source duration.", inspect_path=source)

    frame_rate = parse_frame_rate(video_stream.get("r_frame_rate")) or parse_frame_rate(
        video_stream.get("avg_frame_rate")
    )
    if frame_rate is None:
        progress_write(
            "Warning: could not determine frame rate; defaulting to "
            f"{format_frame_rate(DEFAULT_FRAME_RATE)}"
        )
        frame_rate = DEFAULT_FRAME_RATE

    try:
        width = int(video_stream["width"])
        height = int(video_stream["height"])
    except (KeyError, TypeError, ValueError):
        raise ProbeError("Could not determine source frame size.", inspect_path=source) from None
    if width <= 0 or height <= 0:
        raise ProbeError(f"Invalid source frame size {width}x{height}.", inspect_path=source)

    return SourceInfo(
        duration_seconds=math.ceil(duration),
        frame_rate=frame_rate,
        width=width,
        height=height,
        has_audio=audio_stream is not None,
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
    )


# ── Geometry and planning ─────────────────────────────────────────────────────


def round_up_to_even(value: int) -> int:
    return value + (value % 2)


def compute_output_geometry(
    source_width: int,
    source_height: int,
    final_scale: int,
    target_dar: Optional[str],
) -> OutputGeometry:
    """Scale the source, optionally forcing a display aspect ratio.

    yuv420p needs even dimensions, so odd values are bumped up by one.
    """
    height = source_height * final_scale
    if target_dar:
        dar_num, dar_den = parse_aspect_ratio(target_dar)
        width = height * dar_num // dar_den
    else:
        width = source_width * final_scale
    return OutputGeometry(width=round_up_to_even(width), height=round_up_to_even(height))


def plan_segments(total_seconds: int, segment_seconds: int) -> list[SegmentPlanEntry]:
    """Split [0, total_seconds) into contiguous windows; the last one is clipped."""
    if total_seconds <= 0:
        raise ValueError("Total duration must be > 0 seconds.")
    if segment_seconds <= 0:
        raise ValueError("Segment length must be > 0 seconds.")

    count = (total_seconds + segment_seconds - 1) // segment_seconds
    if count > MAX_SEGMENTS:
        raise ValueError(
            f"{count} segments exceeds the limit of {MAX_SEGMENTS}; use a longer segment length."
        )
    entries: list[SegmentPlanEntry] = []
    for index in range(count):
        start = index * segment_seconds
        entries.append(
            SegmentPlanEntry(
                index=index,
                start_seconds=start,
                length_seconds=min(segment_seconds, total_seconds - start),
            )
        )
    return entries


# ── Filters and encoder flags ─────────────────────────────────────────────────


def get_extract_filter(frame_profile: str, pre_filter: Optional[str]) -> Optional[str]:
    """Return the -vf chain used while extracting frames for the upscaler."""
    parts = [pre_filter] if pre_filter else []
    if frame_profile == "bw":
        # Real-ESRGAN wants RGB input even for grayscale content.
        parts.append("format=rgb24")
    elif frame_profile != "color":
        raise ValueError(f"Unsupported frame profile: {frame_profile}")
    return ",".join(parts) or None


def get_encode_filter(frame_profile: str, geometry: OutputGeometry) -> str:
    """Return the -vf chain that brings upscaled frames to the output geometry."""
    parts = [f"scale={geometry.width}:{geometry.height}:flags=lanczos", "setsar=1"]
    if frame_profile == "bw":
        parts.append("format=yuv420p")
    elif frame_profile != "color":
        raise ValueError(f"Unsupported frame profile: {frame_profile}")
    return ",".join(parts)


def get_codec_flags(codec: str, preset: str, crf: int) -> list[str]:
    """Return ffmpeg codec flags for the requested encoder."""
    if codec == "h264":
        return ["-c:v", "libx264", "-preset", preset, "-crf", str(crf)]
    if codec == "h265":
        return ["-c:v", "libx265", "-preset", preset, "-crf", str(crf)]
    if codec == "h265-hw":
        # Apple VideoToolbox hardware encoder; -q:v maps roughly to CRF
        return ["-c:v", "hevc_videotoolbox", "-q:v", str(max(1, crf))]
    raise ValueError(f"Unsupported codec: {codec}")


# ── Segment worker ────────────────────────────────────────────────────────────


def run_segment_step(cmd: Sequence[str], *, stage: str, segment_index: int) -> None:
    """Run one blocking external step; never retried."""
    try:
        result = run_subprocess(cmd, check=False, capture_output=True)
    except OSError as exc:
        raise SegmentProcessingError(
            f"{stage} could not start: {exc}",
            stage=stage,
            segment_index=segment_index,
        ) from exc
    if result.returncode != 0:
        raise SegmentProcessingError(
            f"{stage} failed (exit {result.returncode}): {stderr_tail(result.stderr)}",
            stage=stage,
            segment_index=segment_index,
        )


def build_extract_command(
    ffmpeg_bin: str,
    source: Path,
    entry: SegmentPlanEntry,
    frames_dir: Path,
    *,
    extract_filter: Optional[str],
    jpeg_quality: int,
) -> list[str]:
    cmd = [
        ffmpeg_bin,
        "-y",
        "-ss",
        str(entry.start_seconds),
        "-t",
        str(entry.length_seconds),
        "-i",
        str(source),
        "-an",
    ]
    if extract_filter:
        cmd.extend(["-vf", extract_filter])
    cmd.extend(
        [
            "-qscale:v",
            str(jpeg_quality),
            str(frames_dir / FRAME_PATTERN),
            "-hide_banner",
            "-loglevel",
            "warning",
        ]
    )
    return cmd


@_traced
def extract_segment_frames(
    ffmpeg_bin: str,
    source: Path,
    entry: SegmentPlanEntry,
    frames_dir: Path,
    *,
    extract_filter: Optional[str],
    jpeg_quality: int,
) -> int:
    """Extract one window's frames as JPEG stills and return how many came out."""
    cmd = build_extract_command(
        ffmpeg_bin,
        source,
        entry,
        frames_dir,
        extract_filter=extract_filter,
        jpeg_quality=jpeg_quality,
    )
    run_segment_step(cmd, stage="extract", segment_index=entry.index)

    frame_count = len(list(frames_dir.glob(FRAME_GLOB)))
    if frame_count == 0:
        raise SegmentExtractionError(
            f"No frames extracted at start={entry.start_seconds}s.",
            segment_index=entry.index,
        )
    return frame_count


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale_factor: int,
    model_name: str,
    gpu_id: int,
    tile_size: int,
    threads: str,
    models_dir: Optional[Path],
) -> list[str]:
    cmd = [
        str(realesrgan_binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-s",
        str(scale_factor),
        "-n",
        model_name,
        "-t",
        str(tile_size),
        "-j",
        threads,
        "-g",
        str(gpu_id),
        "-f",
        FRAME_EXT,
    ]

    if models_dir is not None:
        cmd.extend(["-m", str(models_dir)])

    return cmd


@_traced
def upscale_segment_frames(
    toolchain: Toolchain,
    frames_dir: Path,
    upscaled_dir: Path,
    *,
    segment_index: int,
    expected_frames: int,
    settings: SegmentSettings,
) -> None:
    """Run Real-ESRGAN once over the whole frame directory."""
    cmd = build_realesrgan_command(
        toolchain.realesrgan_binary,
        frames_dir,
        upscaled_dir,
        scale_factor=settings.internal_scale,
        model_name=settings.model,
        gpu_id=settings.gpu,
        tile_size=settings.tile_size,
        threads=settings.threads,
        models_dir=toolchain.models_dir,
    )
    run_segment_step(cmd, stage="upscale", segment_index=segment_index)

    produced = len(list(upscaled_dir.glob(FRAME_GLOB)))
    if produced != expected_frames:
        raise SegmentProcessingError(
            f"upscale produced {produced} frame(s), expected {expected_frames}.",
            stage="upscale",
            segment_index=segment_index,
            inspect_path=upscaled_dir,
        )


def build_encode_command(
    ffmpeg_bin: str,
    upscaled_dir: Path,
    output_video: Path,
    settings: SegmentSettings,
) -> list[str]:
    # Encoder options must follow the input or ffmpeg applies them to the demuxer.
    cmd = [
        ffmpeg_bin,
        "-y",
        "-framerate",
        settings.frame_rate,
        "-i",
        str(upscaled_dir / FRAME_PATTERN),
        "-vf",
        settings.encode_filter,
        "-an",
    ]
    cmd.extend(get_codec_flags(settings.codec, settings.preset, settings.crf))
    cmd.extend(
        [
            "-pix_fmt",
            "yuv420p",
            str(output_video),
            "-hide_banner",
            "-loglevel",
            "warning",
        ]
    )
    return cmd


@_traced
def encode_segment(
    ffmpeg_bin: str,
    upscaled_dir: Path,
    output_video: Path,
    *,
    segment_index: int,
    settings: SegmentSettings,
) -> None:
    cmd = build_encode_command(ffmpeg_bin, upscaled_dir, output_video, settings)
    run_segment_step(cmd, stage="encode", segment_index=segment_index)


def verify_segment_artifact(ffprobe_bin: str, video_path: Path, *, segment_index: int) -> bool:
    """A usable segment is non-empty and ffprobe finds a video stream in it."""
    if not video_path.is_file() or video_path.stat().st_size == 0:
        return False
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=codec_type",
        "-of",
        "csv=p=0",
        str(video_path),
    ]
    try:
        result = run_subprocess(cmd, check=False, capture_output=True)
    except OSError as exc:
        raise SegmentProcessingError(
            f"verify could not start: {exc}",
            stage="verify",
            segment_index=segment_index,
            inspect_path=video_path,
        ) from exc
    return result.returncode == 0 and "video" in (result.stdout or "")


@contextlib.contextmanager
def segment_scratch(scratch_dir: Path, index: int) -> Iterator[tuple[Path, Path]]:
    """Fresh frame directories for one segment, removed on every exit path."""
    clear_segment_scratch(scratch_dir, index)
    scratch_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix=f"{segment_stem(index)}_", dir=scratch_dir) as root:
        frames_dir = Path(root) / "frames"
        upscaled_dir = Path(root) / "frames_up"
        frames_dir.mkdir()
        upscaled_dir.mkdir()
        yield frames_dir, upscaled_dir


def process_segment(
    toolchain: Toolchain,
    source: Path,
    entry: SegmentPlanEntry,
    store: CheckpointStore,
    scratch_dir: Path,
    settings: SegmentSettings,
    *,
    total_segments: int,
) -> str:
    """Turn one plan entry into a checkpoint, or skip it if one already exists.

    Raises SegmentExtractionError when the window yields no frames and
    SegmentProcessingError when any external step fails. Either way no
    checkpoint is left behind for the segment.
    """
    label = f"[{entry.index + 1}/{total_segments}]"
    if store.exists(entry.index):
        progress_write(f"{label} {checkpoint_name(entry.index)} exists - skipping")
        return SEGMENT_SKIPPED

    progress_write(f"{label} start={entry.start_seconds}s len={entry.length_seconds}s")
    partial = store.partial_path(entry.index)
    try:
        with segment_scratch(scratch_dir, entry.index) as (frames_dir, upscaled_dir):
            progress_write("  -> Extracting frames (video only)...")
            frame_count = extract_segment_frames(
                toolchain.ffmpeg,
                source,
                entry,
                frames_dir,
                extract_filter=settings.extract_filter,
                jpeg_quality=settings.jpeg_quality,
            )

            progress_write(f"  -> Real-ESRGAN upscaling {frame_count} frame(s)...")
            upscale_segment_frames(
                toolchain,
                frames_dir,
                upscaled_dir,
                segment_index=entry.index,
                expected_frames=frame_count,
                settings=settings,
            )

            progress_write("  -> Encoding segment...")
            encode_segment(
                toolchain.ffmpeg,
                upscaled_dir,
                partial,
                segment_index=entry.index,
                settings=settings,
            )

        if not verify_segment_artifact(toolchain.ffprobe, partial, segment_index=entry.index):
            raise SegmentProcessingError(
                "encoded segment failed verification (empty or unreadable).",
                stage="verify",
                segment_index=entry.index,
                inspect_path=partial,
            )
        store.commit(entry.index, partial)
    finally:
        partial.unlink(missing_ok=True)

    return SEGMENT_ENCODED


# ── Reassembly ────────────────────────────────────────────────────────────────


def write_concat_manifest(segment_paths: Sequence[Path], manifest_path: Path) -> Path:
    lines: list[str] = []
    for segment in segment_paths:
        escaped = str(segment).replace("'", r"'\''")
        lines.append(f"file '{escaped}'")
    manifest_path.write_text("\n".join(lines) + "\n")
    return manifest_path


def run_reassembly_step(cmd: Sequence[str], *, stage: str, inspect_path: Path) -> None:
    try:
        result = run_subprocess(cmd, check=False, capture_output=True)
    except OSError as exc:
        raise ReassemblyError(f"{stage} could not start: {exc}", inspect_path=inspect_path) from exc
    if result.returncode != 0:
        raise ReassemblyError(
            f"{stage} failed (exit {result.returncode}): {stderr_tail(result.stderr)}",
            inspect_path=inspect_path,
        )


@_traced
def concat_checkpoints(ffmpeg_bin: str, manifest_path: Path, output_video: Path) -> None:
    """Splice checkpoints without re-encoding; they share codec parameters."""
    cmd = [
        ffmpeg_bin,
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(manifest_path),
        "-c",
        "copy",
        str(output_video),
        "-hide_banner",
        "-loglevel",
        "warning",
    ]
    run_reassembly_step(cmd, stage="concat", inspect_path=manifest_path)


@_traced
def mux_original_audio(
    ffmpeg_bin: str,
    video_path: Path,
    source: Path,
    output_video: Path,
    *,
    has_audio: bool,
    audio_bitrate: str,
) -> None:
    """Pair the spliced video with the source's first audio track.

    Audio is always re-encoded because the spliced video's time base rarely
    matches the source container. The result ends at the shorter stream.
    """
    if not has_audio:
        progress_write("Warning: no audio stream detected in input; writing video-only output.")
        shutil.copyfile(video_path, output_video)
        return

    cmd = [
        ffmpeg_bin,
        "-y",
        "-i",
        str(video_path),
        "-i",
        str(source),
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-c:v",
        "copy",
        "-c:a",
        "aac",
        "-b:a",
        audio_bitrate,
        "-shortest",
        str(output_video),
        "-hide_banner",
        "-loglevel",
        "warning",
    ]
    run_reassembly_step(cmd, stage="mux", inspect_path=video_path)


def reassemble(
    toolchain: Toolchain,
    store: CheckpointStore,
    work_dir: WorkDirectory,
    source: Path,
    output_video: Path,
    *,
    has_audio: bool,
    audio_bitrate: str,
) -> int:
    """Concatenate every checkpoint in index order and remux audio."""
    checkpoints = store.list_all()
    if not checkpoints:
        raise ReassemblyError(
            f"No segment files found in {store.segments_dir}.",
            inspect_path=store.segments_dir,
        )

    manifest = write_concat_manifest(
        [segment_path for _, segment_path in checkpoints],
        work_dir.concat_manifest_path,
    )
    print(f"Concatenating {len(checkpoints)} segment(s) into: {work_dir.concat_video_path}")
    concat_checkpoints(toolchain.ffmpeg, manifest, work_dir.concat_video_path)

    print(f"Muxing original audio into final video: {output_video}")
    mux_original_audio(
        toolchain.ffmpeg,
        work_dir.concat_video_path,
        source,
        output_video,
        has_audio=has_audio,
        audio_bitrate=audio_bitrate,
    )
    return len(checkpoints)


# ── Pipeline ──────────────────────────────────────────────────────────────────


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def check_disk_space(
    work_dir: Path,
    info: SourceInfo,
    *,
    internal_scale: int,
    segment_seconds: int,
) -> None:
    """Warn or fail if one segment's scratch frames would not fit on disk."""
    # JPEG at qscale 2: ~0.15 bytes per pixel in, ~0.5 after upscaling detail.
    frames_per_segment = math.ceil(segment_seconds * info.frame_rate)
    input_bytes_per_frame = info.width * info.height * 0.15
    output_bytes_per_frame = (info.width * internal_scale) * (info.height * internal_scale) * 0.5
    projected_bytes = (input_bytes_per_frame + output_bytes_per_frame) * frames_per_segment

    available = shutil.disk_usage(work_dir).free
    projected_gb = projected_bytes / (1024**3)
    available_gb = available / (1024**3)
    if projected_bytes > available * 0.9:
        raise RuntimeError(
            f"Projected per-segment scratch usage ({projected_gb:.1f} GB) exceeds 90% of "
            f"available space ({available_gb:.1f} GB). Use --work-root to point to a "
            "larger volume, or shorten the segment length."
        )
    if projected_bytes > available * 0.5:
        progress_write(
            f"Warning: Projected per-segment scratch usage ({projected_gb:.1f} GB) is over "
            f"50% of available space ({available_gb:.1f} GB)."
        )


def build_run_config(
    args,
    source: Path,
    info: SourceInfo,
    geometry: OutputGeometry,
    toolchain: Toolchain,
) -> RunConfig:
    return RunConfig(
        frame_profile=args.frame_profile,
        input_basename=source.name,
        seg_seconds=args.segment_seconds,
        crf=args.crf,
        fps=info.frame_rate_text,
        model=args.model,
        models_dir=str(toolchain.models_dir) if toolchain.models_dir else "",
        internal_scale=args.internal_scale,
        final_scale=args.final_scale,
        output_geometry=str(geometry),
        target_dar=args.target_dar or "",
        jpeg_quality=args.jpeg_quality,
        tile_size=args.tile_size,
        threads=args.threads,
        vk_device_index=args.gpu,
        codec=args.codec,
        preset=args.preset,
        pre_filter=args.pre_filter or "",
    )


def build_segment_settings(args, info: SourceInfo, geometry: OutputGeometry) -> SegmentSettings:
    return SegmentSettings(
        frame_rate=info.frame_rate_text,
        extract_filter=get_extract_filter(args.frame_profile, args.pre_filter),
        encode_filter=get_encode_filter(args.frame_profile, geometry),
        jpeg_quality=args.jpeg_quality,
        model=args.model,
        internal_scale=args.internal_scale,
        tile_size=args.tile_size,
        threads=args.threads,
        gpu=args.gpu,
        codec=args.codec,
        preset=args.preset,
        crf=args.crf,
    )


def resolve_job_paths(args) -> tuple[Path, Path, Path]:
    source = Path(args.source).expanduser().resolve()
    if not source.is_file():
        raise ProbeError("Input video not found.", inspect_path=source)

    output_video = resolve_output_path(args.destination)
    if output_video == source:
        raise ValueError("Output video path must be different from input video path.")

    work_root = Path(args.work_root).expanduser().resolve()
    return source, output_video, work_root


def run_plan_only(args) -> int:
    """Probe and plan, then print a JSON report without touching the work directory."""
    validate_runtime_args(args)
    source, output_video, work_root = resolve_job_paths(args)
    toolchain = resolve_toolchain(args)

    info = probe_source(toolchain.ffprobe, source)
    geometry = compute_output_geometry(info.width, info.height, args.final_scale, args.target_dar)
    plan = plan_segments(info.duration_seconds, args.segment_seconds)

    work_dir = work_directory_for(work_root, source)
    store = CheckpointStore(work_dir.segments_dir)
    run_config = build_run_config(args, source, info, geometry, toolchain)
    config_status = check_run_config(work_dir, run_config.to_record(), store)

    payload = {
        "source": {
            "path": str(source),
            "duration_seconds": info.duration_seconds,
            "frame_rate": info.frame_rate_text,
            "width": info.width,
            "height": info.height,
            "has_audio": info.has_audio,
            "audio_codec": info.audio_codec,
        },
        "output": {
            "path": str(output_video),
            "width": geometry.width,
            "height": geometry.height,
        },
        "work_dir": str(work_dir.root),
        "run_config": {
            "status": config_status,
            "path": str(work_dir.config_path),
        },
        "segments": [
            {
                "index": entry.index,
                "start_seconds": entry.start_seconds,
                "length_seconds": entry.length_seconds,
                "checkpoint": str(store.path(entry.index)),
                "done": store.exists(entry.index),
            }
            for entry in plan
        ],
    }
    print(json.dumps(payload, indent=2))
    return 0


def print_banner(
    args,
    source: Path,
    output_video: Path,
    work_dir: WorkDirectory,
    toolchain: Toolchain,
    info: SourceInfo,
    geometry: OutputGeometry,
) -> None:
    print("\n" + "=" * 60)
    print("VHS upscale (chunked, resumable) - Real-ESRGAN")
    print("=" * 60)
    print(f"Input file      : {source}")
    print(f"Output file     : {output_video}")
    print(f"Frame profile   : {args.frame_profile}")
    print(f"Chunk length    : {args.segment_seconds}s")
    print(f"CRF             : {args.crf}")
    print(f"Encoder         : {args.codec} ({args.preset})")
    print(
        f"Model           : {args.model} "
        f"(internal {args.internal_scale}x, final {args.final_scale}x)"
    )
    print(f"Models dir      : {toolchain.models_dir or 'binary default'}")
    print(f"JPEG quality    : qscale={args.jpeg_quality}")
    print(f"Tile size       : {args.tile_size}")
    print(f"Threads         : {args.threads}")
    print(f"Vulkan device   : {args.gpu}")
    print(f"Work dir        : {work_dir.root}")
    print(f"Config file     : {work_dir.config_path}")
    print(f"Duration        : ~{info.duration_seconds}s")
    print(f"FPS             : {info.frame_rate_text}")
    print(f"Source          : {info.width}x{info.height} (target DAR {args.target_dar or 'none'})")
    print(f"Output          : {geometry}")
    print(f"Audio           : {info.audio_codec or 'None'}")
    if args.pre_filter:
        print(f"Pre-filter      : {args.pre_filter}")
    print("=" * 60 + "\n")


def run_segments(
    toolchain: Toolchain,
    source: Path,
    plan: list[SegmentPlanEntry],
    store: CheckpointStore,
    work_dir: WorkDirectory,
    settings: SegmentSettings,
    *,
    keep_going: bool,
) -> tuple[list[int], Optional[int]]:
    """Process segments in index order.

    Returns the failed indices and the index at which content ran out, if it did.
    """
    failed: list[int] = []
    ended_at: Optional[int] = None
    for entry in tqdm(plan, desc="Segments", unit="seg"):
        try:
            process_segment(
                toolchain,
                source,
                entry,
                store,
                work_dir.scratch_dir,
                settings,
                total_segments=len(plan),
            )
        except SegmentExtractionError:
            progress_write("  -> No frames extracted for this segment; stopping.")
            ended_at = entry.index
            break
        except SegmentProcessingError as exc:
            if not keep_going:
                raise
            progress_write(f"  -> Segment {entry.index:03d} failed at {exc.stage}: {exc}")
            failed.append(entry.index)
    return failed, ended_at


def run_pipeline(args) -> int:
    validate_runtime_args(args)
    source, output_video, work_root = resolve_job_paths(args)
    output_video.parent.mkdir(parents=True, exist_ok=True)
    toolchain = resolve_toolchain(args)

    total_start = time.time()
    print("Analyzing video...")
    info = probe_source(toolchain.ffprobe, source)
    geometry = compute_output_geometry(info.width, info.height, args.final_scale, args.target_dar)
    plan = plan_segments(info.duration_seconds, args.segment_seconds)

    work_dir = prepare_work_directory(work_root, source)
    store = CheckpointStore(work_dir.segments_dir)

    with workspace_lock(work_dir):
        run_config = build_run_config(args, source, info, geometry, toolchain)
        config_status = enforce_run_config(
            work_dir,
            run_config,
            store,
            allow_mixed=args.allow_mixed_config,
        )
        print_banner(args, source, output_video, work_dir, toolchain, info, geometry)
        if config_status == RECORD_OVERRIDDEN:
            print("Warning: configuration changed but mixed output was explicitly allowed.\n")

        discarded = store.discard_partials()
        if discarded:
            print(f"Discarded {discarded} partial segment file(s) from an interrupted run.")

        pending = [entry for entry in plan if not store.exists(entry.index)]
        print(f"Segments: {len(plan)} planned, {len(plan) - len(pending)} already done.\n")
        if pending:
            check_disk_space(
                work_dir.root,
                info,
                internal_scale=args.internal_scale,
                segment_seconds=args.segment_seconds,
            )

        settings = build_segment_settings(args, info, geometry)
        step_start = time.time()
        failed, ended_at = run_segments(
            toolchain,
            source,
            plan,
            store,
            work_dir,
            settings,
            keep_going=args.keep_going,
        )
        print(f"  Segment time: {format_time(time.time() - step_start)}\n")

        if failed:
            indices = ", ".join(f"{index:03d}" for index in failed)
            raise SegmentProcessingError(
                f"{len(failed)} segment(s) failed: {indices}. Re-run the same command to retry; "
                "completed segments are kept.",
                segment_index=failed[0],
                inspect_path=work_dir.segments_dir,
            )
        if ended_at is not None:
            print(f"Content ended before segment {ended_at:03d}; assembling what exists.\n")

        step_start = time.time()
        segment_count = reassemble(
            toolchain,
            store,
            work_dir,
            source,
            output_video,
            has_audio=info.has_audio,
            audio_bitrate=args.audio_bitrate,
        )
        print(f"  Time: {format_time(time.time() - step_start)}\n")

    total_elapsed = time.time() - total_start
    print("=" * 60)
    print("All done.")
    print(f"Segments: {segment_count}")
    print(f"Total time: {format_time(total_elapsed)}")
    print(f"Final upscaled file: {output_video}")
    if output_video.exists():
        output_size_mb = output_video.stat().st_size / (1024 * 1024)
        print(f"Output size: {output_size_mb:.1f} MB")
    print(f"Work dir (resume/inspection): {work_dir.root}")
    print("=" * 60 + "\n")
    return 0


@_traced
def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.plan_only:
            return run_plan_only(args)
        return run_pipeline(args)
    except KeyboardInterrupt:
        print("Interrupted by user. Completed segments are kept; re-run to resume.", file=sys.stderr)
        return 130
    except UpscaleError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        for line in exc.describe():
            print(f"  {line}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
