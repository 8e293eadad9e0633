"""
Final video assembly.

Each segment becomes one intermediate clip per image: the letterboxed still
plus the matching slice of the segment's narration (padded with a short
silence buffer). Clips are encoded with an exact duration so the final
timeline is the sum of the planned clip durations, then concatenated in
segment order.
"""

import asyncio
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from moviepy import VideoFileClip, concatenate_videoclips, vfx
from PIL import Image, ImageOps
from pydub import AudioSegment

from research_video import config
from research_video.errors import PreconditionError, ValidationError
from research_video.models import Segment, SynthesisStatus
from research_video.services.storage import LocalStorage
from research_video.utils import ffmpeg
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

VIDEO_FOLDER = "research-video/videos"
COVER_FOLDER = "research-video/covers"

NO_TRANSITION = ("", "none", "cut")

ProgressCallback = Callable[[int, str], Awaitable[None]]


@dataclass
class ClipSlice:
    image_url: str
    start_ms: int
    duration_ms: int


@dataclass
class ClipPlan:
    order: int
    audio_url: str
    total_ms: int
    slices: List[ClipSlice] = field(default_factory=list)


@dataclass
class ComposeResult:
    video_url: str
    cover_url: str
    duration: float


def infer_resolution(width: int, height: int) -> Tuple[int, int]:
    ratio = width / height if height else 1.0
    if ratio > 1.2:
        return 1280, 720
    if ratio < 0.8:
        return 720, 1280
    return 720, 720


def find_incomplete(segments: List[Segment]) -> List[int]:
    """Orders of segments missing audio or imagery, or whose last synthesis failed."""
    return [
        s.order
        for s in segments
        if not s.has_audio()
        or not s.has_image()
        or s.tts_status == SynthesisStatus.FAILED
        or s.image_status == SynthesisStatus.FAILED
    ]


def _split_ms(total_ms: int, ratios: List[float]) -> List[int]:
    parts = [int(round(total_ms * r)) for r in ratios[:-1]]
    parts.append(total_ms - sum(parts))
    return parts


def plan_clips(segments: List[Segment], buffer: float = config.CLIP_BUFFER_SECONDS) -> List[ClipPlan]:
    plans = []
    for segment in sorted(segments, key=lambda s: s.order):
        total_ms = int(round((segment.audio_duration + buffer) * 1000))
        if segment.images:
            urls = [img.image_url for img in segment.images]
            ratios = [img.duration_ratio for img in segment.images]
        else:
            urls, ratios = [segment.image_url], [1.0]

        plan = ClipPlan(order=segment.order, audio_url=segment.audio_url, total_ms=total_ms)
        start = 0
        for url, duration_ms in zip(urls, _split_ms(total_ms, ratios)):
            plan.slices.append(ClipSlice(image_url=url, start_ms=start, duration_ms=duration_ms))
            start += duration_ms
        plans.append(plan)
    return plans


def letterbox(source: Path, target: Path, size: Tuple[int, int], fill: str = config.VIDEO_FILL_COLOR) -> Path:
    with Image.open(source) as img:
        framed = ImageOps.pad(img.convert("RGB"), size, method=Image.Resampling.LANCZOS, color=fill)
    framed.save(target, format="PNG")
    return target


def image_size(path: Path) -> Tuple[int, int]:
    with Image.open(path) as img:
        return img.size


def slice_audio(source: Path, plan: ClipPlan, workdir: Path) -> List[Path]:
    """Pad narration with trailing silence to the clip length and cut it per image."""
    audio = AudioSegment.from_file(source)
    if len(audio) < plan.total_ms:
        audio = audio + AudioSegment.silent(duration=plan.total_ms - len(audio), frame_rate=audio.frame_rate)
    audio = audio[:plan.total_ms]

    paths = []
    for idx, piece in enumerate(plan.slices):
        path = workdir / f"audio_{plan.order:04d}_{idx}.wav"
        audio[piece.start_ms:piece.start_ms + piece.duration_ms].export(path, format="wav")
        paths.append(path)
    return paths


def fade_concat(segment_clips: List[List[Path]], output: Path, transition: float = config.TRANSITION_SECONDS) -> Path:
    """Join segments with a fade through black at each segment boundary.

    Sub-clips of one segment are joined back to back. Fades do not overlap
    neighbouring clips, so the output keeps the summed clip duration.
    """
    clips = [[VideoFileClip(str(path)) for path in paths] for paths in segment_clips]
    half = transition / 2
    try:
        joined = []
        last = len(clips) - 1
        for idx, parts in enumerate(clips):
            segment = parts[0] if len(parts) == 1 else concatenate_videoclips(parts, method="compose")
            effects = []
            if idx > 0:
                effects.append(vfx.FadeIn(half))
            if idx < last:
                effects.append(vfx.FadeOut(half))
            joined.append(segment.with_effects(effects) if effects else segment)
        final = concatenate_videoclips(joined, method="compose")
        final.write_videofile(
            str(output),
            codec="libx264",
            audio_codec="aac",
            fps=config.VIDEO_FPS,
            preset="medium",
            logger=None,
        )
        final.close()
    finally:
        for parts in clips:
            for clip in parts:
                clip.close()
    return output


async def _render_segment(
    plan: ClipPlan,
    storage: LocalStorage,
    workdir: Path,
    size: Tuple[int, int],
    semaphore: asyncio.Semaphore,
) -> List[Path]:
    async with semaphore:
        audio_src = await storage.fetch_to(plan.audio_url, workdir / f"narration_{plan.order:04d}{Path(plan.audio_url).suffix}")
        audio_paths = await asyncio.to_thread(slice_audio, audio_src, plan, workdir)

        clip_paths = []
        for idx, (piece, audio_path) in enumerate(zip(plan.slices, audio_paths)):
            raw = await storage.fetch_to(piece.image_url, workdir / f"image_{plan.order:04d}_{idx}.src")
            frame = await asyncio.to_thread(letterbox, raw, workdir / f"frame_{plan.order:04d}_{idx}.png", size)
            clip = workdir / f"clip_{plan.order:04d}_{idx}.mp4"
            await ffmpeg.run_ffmpeg(ffmpeg.build_clip_cmd(frame, audio_path, piece.duration_ms / 1000, clip))
            clip_paths.append(clip)
        return clip_paths


async def compose_video(
    segments: List[Segment],
    storage: LocalStorage,
    transition: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
    project_id: Optional[str] = None,
) -> ComposeResult:
    if not segments:
        raise ValidationError("没有可合成的片段", project_id=project_id)
    missing = find_incomplete(segments)
    if missing:
        raise PreconditionError("部分片段缺少音频或图片", indices=missing, project_id=project_id)

    plans = plan_clips(segments)
    planned_seconds = sum(p.total_ms for p in plans) / 1000
    use_fade = (transition or "").strip().lower() not in NO_TRANSITION and len(plans) > 1

    async def report(progress: int, message: str) -> None:
        if on_progress:
            await on_progress(progress, message)

    with tempfile.TemporaryDirectory(prefix="compose_") as tmp:
        workdir = Path(tmp)

        probe = await storage.fetch_to(plans[0].slices[0].image_url, workdir / "probe.src")
        size = infer_resolution(*await asyncio.to_thread(image_size, probe))
        logger.info("Composing %d segments at %dx%d (~%.1fs)", len(plans), size[0], size[1], planned_seconds)
        await report(5, f"输出分辨率 {size[0]}x{size[1]}")

        semaphore = asyncio.Semaphore(config.COMPOSE_CONCURRENCY)
        done = 0

        async def render(plan: ClipPlan) -> List[Path]:
            nonlocal done
            paths = await _render_segment(plan, storage, workdir, size, semaphore)
            done += 1
            await report(5 + int(done / len(plans) * 75), f"片段 {done}/{len(plans)} 已渲染")
            return paths

        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(render(plan)) for plan in plans]
        except ExceptionGroup as eg:
            raise eg.exceptions[0] from eg
        segment_clips = [task.result() for task in tasks]
        clip_paths = [path for paths in segment_clips for path in paths]

        output = workdir / "final.mp4"
        await report(85, "正在拼接视频")
        if use_fade:
            await asyncio.to_thread(fade_concat, segment_clips, output)
        else:
            list_file = ffmpeg.write_concat_list(clip_paths, workdir / "concat.txt")
            await ffmpeg.run_ffmpeg(ffmpeg.build_concat_cmd(list_file, output))

        cover = workdir / "cover.jpg"
        await ffmpeg.run_ffmpeg(ffmpeg.build_cover_cmd(clip_paths[0], cover))

        duration = await ffmpeg.probe_duration(output)
        if duration <= 0:
            duration = planned_seconds

        await report(95, "正在上传视频")
        video_url = storage.save_file(output, VIDEO_FOLDER, "mp4")
        cover_url = storage.save_file(cover, COVER_FOLDER, "jpg")

    logger.info("Composed video %s (%.1fs)", video_url, duration)
    return ComposeResult(video_url=video_url, cover_url=cover_url, duration=round(duration, 3))
