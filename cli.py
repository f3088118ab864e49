"""CLI: argument parsing, frame profiles, and runtime validation."""

from __future__ import annotations

import argparse
import os
import re
from pathlib import Path
from typing import Mapping, Optional, Sequence

# ── Constants ──────────────────────────────────────────────────────────────────

DEFAULT_SEGMENT_SECONDS = 30
DEFAULT_CRF = 21
DEFAULT_WORK_ROOT_NAME = "vhs_upscale_work"
SUPPORTED_CODECS = ("h264", "h265", "h265-hw")
SUPPORTED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)

# Shadow denoise plus black crush so the upscaler doesn't invent texture in the dark.
COLOR_PRE_FILTER = "hqdn3d=3:2:4:3,curves=all='0/0 0.05/0 1/1'"
BW_PRE_FILTER = "hue=s=0"

# NTSC captures rarely carry correct SAR metadata; 720x480 probes as 3:2 instead of 4:3.
FRAME_PROFILE_DEFAULTS: dict[str, dict[str, str]] = {
    "color": {"pre_filter": COLOR_PRE_FILTER, "target_dar": "4:3"},
    "bw": {"pre_filter": BW_PRE_FILTER, "target_dar": ""},
}
FRAME_PROFILES = tuple(FRAME_PROFILE_DEFAULTS)

THREADS_PATTERN = re.compile(r"^\d+:\d+:\d+$")
ASPECT_PATTERN = re.compile(r"^(\d+):(\d+)$")


# ── Functions ──────────────────────────────────────────────────────────────────


def env_default(name: str, fallback, environ: Optional[Mapping[str, str]] = None):
    """Return an environment override for a knob, or the fallback."""
    source = os.environ if environ is None else environ
    value = source.get(name)
    if value is None:
        return fallback
    return value


def env_flag(name: str, environ: Optional[Mapping[str, str]] = None) -> bool:
    return env_default(name, "0", environ).strip() == "1"


def apply_frame_profile(args: argparse.Namespace) -> None:
    """Fill profile defaults for knobs the caller left unset.

    An explicit empty string is a deliberate "disable" and is kept.
    """
    defaults = FRAME_PROFILE_DEFAULTS[args.frame_profile]
    for key, value in defaults.items():
        if getattr(args, key) is None:
            setattr(args, key, value)


def parse_aspect_ratio(value: str) -> tuple[int, int]:
    match = ASPECT_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Target DAR must look like N:M (got {value!r}).")
    num, den = int(match.group(1)), int(match.group(2))
    if num <= 0 or den <= 0:
        raise ValueError(f"Target DAR terms must be positive (got {value!r}).")
    return num, den


def resolve_output_path(destination: str) -> Path:
    output = Path(destination).expanduser().resolve()
    if output.suffix == "":
        raise ValueError(f"Output path needs a container extension such as .mp4: {output}")
    return output


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.segment_seconds <= 0:
        raise ValueError("Segment length must be > 0 seconds.")
    if args.crf < 0 or args.crf > 51:
        raise ValueError("CRF must be between 0 and 51.")
    if args.internal_scale <= 0 or args.final_scale <= 0:
        raise ValueError("Internal and final scale must be positive.")
    if args.internal_scale % args.final_scale != 0:
        raise ValueError(
            "Internal scale must be evenly divisible by final scale "
            f"(got {args.internal_scale} and {args.final_scale})."
        )
    if args.tile_size < 0:
        raise ValueError("Tile size must be >= 0.")
    if args.jpeg_quality < 1 or args.jpeg_quality > 31:
        raise ValueError("JPEG quality must be between 1 and 31.")
    if not THREADS_PATTERN.match(args.threads):
        raise ValueError("Threads must look like load:proc:save, for example 3:3:2.")
    if args.target_dar:
        parse_aspect_ratio(args.target_dar)
    work_root = Path(args.work_root).expanduser()
    if work_root.exists() and not work_root.is_dir():
        raise ValueError("Work root must be a directory, not a file.")


def parse_args(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Chunked, resumable video upscaling with Real-ESRGAN. Each segment is "
            "checkpointed, so re-running the same command resumes where it stopped."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("source", type=str, help="Path to input video")
    parser.add_argument("destination", type=str, help="Path to final output video")
    parser.add_argument(
        "segment_seconds",
        type=int,
        nargs="?",
        default=DEFAULT_SEGMENT_SECONDS,
        help="Segment length in seconds",
    )
    parser.add_argument(
        "crf",
        type=int,
        nargs="?",
        default=DEFAULT_CRF,
        help="x264/x265 CRF (0-51)",
    )
    parser.add_argument(
        "--work-root",
        type=str,
        default=env_default("WORK_ROOT", str(Path.cwd() / DEFAULT_WORK_ROOT_NAME), environ),
        help="Root for per-source work directories (checkpoints, scratch, run config)",
    )
    parser.add_argument(
        "--models-dir",
        type=str,
        default=env_default("MODELS_DIR", None, environ),
        help="Real-ESRGAN models directory (default: models/ next to the binary)",
    )
    parser.add_argument(
        "--realesrgan-path",
        type=str,
        default=None,
        help="Custom path to realesrgan-ncnn-vulkan binary",
    )
    parser.add_argument(
        "-m",
        "--model",
        type=str,
        default=env_default("MODEL", "realesrgan-x4plus", environ),
        help="Real-ESRGAN model name",
    )
    parser.add_argument(
        "--internal-scale",
        type=int,
        default=env_default("INTERNAL_SCALE", "4", environ),
        help="Scale factor Real-ESRGAN runs at",
    )
    parser.add_argument(
        "--final-scale",
        type=int,
        default=env_default("FINAL_SCALE", "2", environ),
        help="Output scale relative to the source",
    )
    parser.add_argument(
        "-t",
        "--tile-size",
        type=int,
        default=env_default("TILE_SIZE", "400", environ),
        help="Real-ESRGAN tile size (0 = auto)",
    )
    parser.add_argument(
        "-j",
        "--threads",
        type=str,
        default=env_default("THREADS", "3:3:2", environ),
        help="Real-ESRGAN thread tuple (load:proc:save)",
    )
    parser.add_argument(
        "-g",
        "--gpu",
        type=int,
        default=env_default("VK_DEVICE_INDEX", "0", environ),
        help="Vulkan device index",
    )
    parser.add_argument(
        "--jpeg-quality",
        type=int,
        default=env_default("JPEG_QUALITY", "2", environ),
        help="ffmpeg qscale for extracted JPEG frames (1 = best)",
    )
    parser.add_argument(
        "--preset",
        type=str,
        default=env_default("PRESET", "veryfast", environ),
        choices=SUPPORTED_PRESETS,
        help="Encoder preset",
    )
    parser.add_argument(
        "--codec",
        type=str,
        choices=SUPPORTED_CODECS,
        default="h264",
        help="Segment video codec. h265-hw uses Apple VideoToolbox hardware encoder.",
    )
    parser.add_argument(
        "--audio-bitrate",
        type=str,
        default="160k",
        help="Audio bitrate for the final AAC remux",
    )
    parser.add_argument(
        "--frame-profile",
        type=str,
        choices=FRAME_PROFILES,
        default="color",
        help="Frame filter profile (bw extracts grayscale and encodes neutral chroma)",
    )
    parser.add_argument(
        "--pre-filter",
        type=str,
        default=env_default("PRE_VF", None, environ),
        help="ffmpeg -vf chain applied before upscaling (empty string disables; "
        "default depends on --frame-profile)",
    )
    parser.add_argument(
        "--target-dar",
        type=str,
        default=env_default("TARGET_DAR", None, environ),
        help="Output display aspect ratio N:M (empty string keeps pixel scaling; "
        "default depends on --frame-profile)",
    )
    parser.add_argument(
        "--allow-mixed-config",
        action="store_true",
        default=env_flag("ALLOW_MIXED", environ),
        help="Reuse existing checkpoints even if the run configuration changed (NOT recommended)",
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Continue with later segments after a segment fails (exit status stays non-zero)",
    )
    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Probe and plan, print a JSON report, and do not process any segment",
    )

    args = parser.parse_args(argv)
    apply_frame_profile(args)
    return args
