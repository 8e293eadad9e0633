"""
ffmpeg / ffprobe helpers for clip encoding and concatenation
"""

import asyncio
from pathlib import Path
from typing import List, Sequence

from research_video import config
from research_video.errors import StorageError
from research_video.utils.logging import get_logger

logger = get_logger(__name__)


def build_clip_cmd(frame: Path, audio: Path, duration: float, output: Path, fps: int = config.VIDEO_FPS) -> List[str]:
    """Still frame + audio track, cut to exactly `duration` seconds."""
    return [
        "ffmpeg", "-y",
        "-loop", "1", "-framerate", str(fps), "-i", str(frame),
        "-i", str(audio),
        "-t", f"{duration:.3f}",
        "-c:v", "libx264", "-tune", "stillimage", "-preset", "veryfast",
        "-pix_fmt", "yuv420p", "-r", str(fps),
        "-c:a", "aac", "-b:a", "128k", "-ar", "44100", "-ac", "2",
        str(output),
    ]


def build_concat_cmd(list_file: Path, output: Path) -> List[str]:
    return [
        "ffmpeg", "-y",
        "-f", "concat", "-safe", "0", "-i", str(list_file),
        "-c", "copy", "-movflags", "+faststart",
        str(output),
    ]


def build_cover_cmd(video: Path, output: Path, at: float = 0.0) -> List[str]:
    return [
        "ffmpeg", "-y",
        "-ss", f"{at:.3f}", "-i", str(video),
        "-frames:v", "1", "-q:v", "2",
        str(output),
    ]


def write_concat_list(paths: Sequence[Path], list_file: Path) -> Path:
    lines = []
    for path in paths:
        escaped = str(path.resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    list_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return list_file


async def run_ffmpeg(cmd: List[str], timeout: float = config.FFMPEG_TIMEOUT) -> None:
    """Run an ffmpeg command. The child process is killed if the caller is cancelled."""
    logger.debug("ffmpeg: %s", " ".join(cmd))
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise StorageError(f"ffmpeg not available: {exc}") from exc

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise StorageError(f"ffmpeg timed out after {timeout:.0f}s") from exc
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    if process.returncode != 0:
        tail = stderr.decode(errors="ignore")[-800:] if stderr else ""
        raise StorageError(f"ffmpeg exited with {process.returncode}: {tail}")


async def probe_duration(path: Path) -> float:
    """Duration of a media file in seconds, 0.0 if it cannot be probed"""
    cmd = [
        "ffprobe", "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=30)
        return float(stdout.decode().strip())
    except (OSError, ValueError, asyncio.TimeoutError) as exc:
        logger.warning("Could not probe duration for %s: %s", path, exc)
        return 0.0
