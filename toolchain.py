"""Toolchain: binary resolution, subprocess wrapper, and progress output."""

from __future__ import annotations

import argparse
import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

# Where the release archive usually gets unpacked on capture machines.
DEFAULT_MODELS_DIR = Path("~/opt/realesrgan-ncnn/models")


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    realesrgan_binary: Path
    models_dir: Optional[Path]


def progress_write(message: str) -> None:
    """Write a progress message without breaking an active tqdm bar."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        timeout=timeout,
    )


def get_realesrgan_binary_name() -> str:
    """Return the expected Real-ESRGAN binary name for the current OS."""
    if platform.system().lower() == "windows":
        return "realesrgan-ncnn-vulkan.exe"
    return "realesrgan-ncnn-vulkan"


def resolve_realesrgan_binary(custom_path: Optional[str]) -> Path:
    """Resolve Real-ESRGAN binary from a custom path or PATH."""
    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"Real-ESRGAN binary not found at: {candidate}")
        return candidate

    system_binary = shutil.which(get_realesrgan_binary_name())
    if system_binary:
        return Path(system_binary).resolve()

    raise FileNotFoundError(
        "Unable to locate Real-ESRGAN binary. Install realesrgan-ncnn-vulkan in "
        "PATH or pass --realesrgan-path explicitly."
    )


def resolve_models_dir(
    custom_models_dir: Optional[str],
    realesrgan_binary: Path,
) -> Optional[Path]:
    """Explicit dir, then the binary's sibling models/, then the usual unpack location."""
    if custom_models_dir:
        models_dir = Path(custom_models_dir).expanduser().resolve()
        if not models_dir.is_dir():
            raise FileNotFoundError(f"Models directory not found: {models_dir}")
        return models_dir

    for candidate in (realesrgan_binary.parent / "models", DEFAULT_MODELS_DIR.expanduser()):
        if candidate.is_dir():
            return candidate.resolve()
    return None


def resolve_toolchain(args: argparse.Namespace) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    ffmpeg_bin = shutil.which("ffmpeg")
    ffprobe_bin = shutil.which("ffprobe")
    if not ffmpeg_bin or not ffprobe_bin:
        missing = []
        if not ffmpeg_bin:
            missing.append("ffmpeg")
        if not ffprobe_bin:
            missing.append("ffprobe")
        raise FileNotFoundError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install it with your system package manager."
        )

    realesrgan_binary = resolve_realesrgan_binary(args.realesrgan_path)
    models_dir = resolve_models_dir(args.models_dir, realesrgan_binary)

    return Toolchain(
        ffmpeg=ffmpeg_bin,
        ffprobe=ffprobe_bin,
        realesrgan_binary=realesrgan_binary,
        models_dir=models_dir,
    )
