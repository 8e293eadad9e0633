import asyncio
import re
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from research_video import config
from research_video.errors import StorageError, SynthesisTimeoutError, UpstreamError
from research_video.models import Segment, SegmentImage, VisualStyle
from research_video.services.llm_client import LLMClient, parse_json_payload
from research_video.services.storage import LocalStorage
from research_video.utils.http import get_json, post_json
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

IMAGE_FOLDER = "research-video/images"

STYLE_DIRECTIONS = {
    VisualStyle.INFOGRAPHIC: "professional Chinese infographic slide, glassmorphism information cards, dark navy gradient background, tech grid pattern",
    VisualStyle.PHOTO: "photorealistic editorial news photograph, natural lighting, documentary composition",
    VisualStyle.ILLUSTRATION: "rich narrative digital illustration, cinematic lighting, storytelling scene",
    VisualStyle.DIAGRAM: "clean data visualization diagram, charts and comparison tables, flat vector style",
}

MULTI_IMAGE_PROMPT = """
你是一位专业的信息图设计师。请分析解说内容，决定需要多少张信息图（1 到 {max_images} 张，绝大多数情况只用 1 张），
并为每张图片规划内容和时长占比。

只返回 JSON：
{{
  "images": [
    {{"durationRatio": 1.0, "prompt": "完整的英文图片生成提示词（中文内容用双引号包裹）"}}
  ]
}}
durationRatio 之和为 1.0。
""".strip()


@dataclass
class ImagePlanItem:
    prompt: str
    duration_ratio: float = 1.0


class ImageSynthesizer:
    """Create-task / poll-task image generation adapter."""

    def __init__(
        self,
        create_url: str = config.IMG_CREATE_URL,
        poll_url: str = config.IMG_POLL_URL,
        api_key: Optional[str] = config.IMG_API_KEY,
        poll_interval: float = config.IMG_POLL_INTERVAL,
        poll_timeout: float = config.IMG_POLL_TIMEOUT,
    ):
        self.create_url = create_url
        self.poll_url = poll_url
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout

    async def _create_task(self, prompt: str, model: str, aspect_ratio: str) -> int:
        headers = {
            "Authorization": self.api_key or "",
            "Content-Type": "application/json;charset:utf-8;",
        }
        body = {
            "prompt": prompt,
            "model": model,
            "aspectRatio": aspect_ratio,
        }
        response = await post_json(self.create_url, headers=headers, data=body)
        data = response.json()
        if data.get("code") != 200:
            raise UpstreamError(f"生图创建任务失败：{data}")
        task_id = (data.get("data") or {}).get("id")
        if task_id is None:
            raise UpstreamError("生图创建任务未返回 id")
        return int(task_id)

    async def _poll_task(self, task_id: int) -> str:
        headers = {"Authorization": self.api_key or ""}
        deadline = time.monotonic() + self.poll_timeout
        while time.monotonic() < deadline:
            response = await get_json(f"{self.poll_url}?id={task_id}", headers=headers)
            data = response.json()
            if data.get("code") != 200:
                raise UpstreamError(f"生图轮询失败：{data}")
            detail = data.get("data") or {}
            status = detail.get("status")
            if status == 2:
                image_url = detail.get("image_url")
                if not image_url:
                    raise UpstreamError("生图成功但未返回 image_url")
                return image_url
            if status == 3:
                raise UpstreamError(f"生图生成失败：{detail.get('fail_reason')}")
            await asyncio.sleep(self.poll_interval)
        raise SynthesisTimeoutError("生图轮询超时")

    async def generate(self, prompt: str, model: str = config.DEFAULT_IMAGE_MODEL, aspect_ratio: str = "16:9") -> str:
        try:
            task_id = await self._create_task(prompt, model, aspect_ratio)
            return await self._poll_task(task_id)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"生图请求失败：{exc}") from exc


def build_image_prompt(segment: Segment, topic: str = "", style: Optional[str] = None) -> str:
    chapter_title = segment.chapter_title or f"第{segment.order + 1}章"
    sentences = [s.strip()[:80] for s in re.split(r"[。！？!?]", segment.text) if len(s.strip()) > 10][:6]

    lines = [
        f"{STYLE_DIRECTIONS[segment.visual_style]}.",
        f'Large Chinese title "{chapter_title}" at the top.',
    ]
    if topic:
        lines.append(f'Overall video topic: "{topic}".')
    for idx, sentence in enumerate(sentences, start=1):
        lines.append(f'Card {idx}: Chinese text "{sentence}".')
    for point in segment.key_points:
        lines.append(f'Highlight badge: "{point}".')
    if style:
        lines.append(f"Style hint: {style}.")
    lines.append("Ultra high quality, all Chinese text clearly visible and complete.")
    return "\n".join(lines)


def normalize_ratios(ratios: List[float]) -> List[float]:
    """Scale ratios to sum to exactly 1.0; the last entry absorbs rounding."""
    if not ratios:
        return []
    cleaned = [r if r and r > 0 else 0.0 for r in ratios]
    total = sum(cleaned)
    if total <= 0:
        cleaned = [1.0] * len(ratios)
        total = float(len(ratios))
    normalized = [round(r / total, 6) for r in cleaned[:-1]]
    normalized.append(1.0 - sum(normalized))
    return normalized


def _parse_plan(payload: str, max_images: int) -> List[ImagePlanItem]:
    data = parse_json_payload(payload)
    images = data.get("images") if isinstance(data, dict) else data
    if not isinstance(images, list):
        raise ValueError("图片规划缺少 images 数组")

    items: List[ImagePlanItem] = []
    for image in images[:max_images]:
        if not isinstance(image, dict) or not str(image.get("prompt") or "").strip():
            continue
        try:
            ratio = float(image.get("durationRatio") or 0)
        except (TypeError, ValueError):
            ratio = 0.0
        items.append(ImagePlanItem(prompt=str(image["prompt"]).strip(), duration_ratio=ratio))
    if not items:
        raise ValueError("图片规划为空")
    return items


async def plan_segment_images(
    llm: Optional[LLMClient],
    segment: Segment,
    topic: str = "",
    style: Optional[str] = None,
    multi_image: bool = False,
    override_prompt: Optional[str] = None,
    max_images: int = config.IMAGE_MAX_PER_SEGMENT,
) -> List[ImagePlanItem]:
    if override_prompt and override_prompt.strip():
        return [ImagePlanItem(prompt=override_prompt.strip())]

    if multi_image and llm is not None:
        user = (
            f"章节标题：{segment.chapter_title or ''}\n"
            f"视觉风格：{segment.visual_style.value}\n"
            f"风格提示：{style or '无'}\n\n"
            f"完整解说内容：\n{segment.text}"
        )
        try:
            raw = await llm.complete(system=MULTI_IMAGE_PROMPT.format(max_images=max_images), user=user, json_mode=True)
            items = _parse_plan(raw, max_images)
        except (UpstreamError, ValueError) as exc:
            logger.warning("Multi-image plan failed for segment %d, using single image: %s", segment.order, exc)
        else:
            ratios = normalize_ratios([item.duration_ratio for item in items])
            for item, ratio in zip(items, ratios):
                item.duration_ratio = ratio
            return items

    return [ImagePlanItem(prompt=build_image_prompt(segment, topic, style))]


def _suffix_of(url: str) -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix.lstrip(".").lower()
    return suffix if suffix in ("png", "jpg", "jpeg", "webp") else "png"


async def store_image(storage: LocalStorage, url: str) -> str:
    """Copy an image into durable storage. Local URLs are returned unchanged."""
    try:
        return await storage.mirror(url, IMAGE_FOLDER, _suffix_of(url))
    except StorageError as exc:
        raise UpstreamError(f"图片转存失败：{exc.message}") from exc


async def generate_segment_images(
    synth: ImageSynthesizer,
    storage: LocalStorage,
    plan: List[ImagePlanItem],
    model: str = config.DEFAULT_IMAGE_MODEL,
    aspect_ratio: str = "16:9",
    limiter: Optional[asyncio.Semaphore] = None,
) -> List[SegmentImage]:
    """Generate every planned image concurrently. Any failure fails the whole segment.

    `limiter` is shared by every segment of a batch so the number of vendor
    calls in flight stays under the batch cap even in multi-image mode.
    """

    async def one(item: ImagePlanItem) -> SegmentImage:
        if limiter is None:
            remote_url = await synth.generate(item.prompt, model=model, aspect_ratio=aspect_ratio)
        else:
            async with limiter:
                remote_url = await synth.generate(item.prompt, model=model, aspect_ratio=aspect_ratio)
        durable_url = await store_image(storage, remote_url)
        return SegmentImage(image_url=durable_url, duration_ratio=item.duration_ratio, prompt=item.prompt)

    results = await asyncio.gather(*(one(item) for item in plan), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
