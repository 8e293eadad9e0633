import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from research_video import config
from research_video.errors import UpstreamError, ValidationError
from research_video.models import ScriptDraft, ScriptSegment, VisualStyle
from research_video.services.llm_client import LLMClient, parse_json_payload
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]

CONTENT_FILTER_PROMPT = """
你是一个内容整理专家，负责整理和优化深度研究结果。

核心原则：保留尽可能多的内容，目标是保留原始内容的 70-90%。你的任务是整理和去重，不是总结。
1. 去除完全重复的段落
2. 去除明显无关的广告、导航等杂项内容
3. 保留所有与主题相关的信息、数据、观点、分析和引用
4. 整理成清晰的 Markdown 格式

直接输出整理后的完整内容。
""".strip()

SCRIPT_PROMPT = """
你是一位专业的深度研究视频脚本撰写者，擅长将复杂主题转化为引人入胜的视频解说。

根据提供的研究资料撰写完整、深入的视频解说脚本：开篇引入、若干核心章节（通常6-12个）、总结展望。
语言口语化、适合朗读；完整覆盖研究资料中的重要信息；每个章节聚焦一个主题，提炼2-5个关键要点，每章节200-400字。

只返回 JSON：
{
  "title": "视频标题（8-15字）",
  "segments": [
    {
      "chapterTitle": "章节标题",
      "text": "该章节的完整解说词",
      "keyPoints": ["要点1", "要点2"],
      "emotion": "neutral|happy|excited|serious|calm",
      "visualStyle": "infographic|news|data|story|comparison"
    }
  ]
}
""".strip()

VISUAL_STYLE_MAP: Dict[str, VisualStyle] = {
    "infographic": VisualStyle.INFOGRAPHIC,
    "photo": VisualStyle.PHOTO,
    "news": VisualStyle.PHOTO,
    "illustration": VisualStyle.ILLUSTRATION,
    "story": VisualStyle.ILLUSTRATION,
    "diagram": VisualStyle.DIAGRAM,
    "data": VisualStyle.DIAGRAM,
    "comparison": VisualStyle.DIAGRAM,
}

_FILLER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^\s*(skip to (main )?content|跳转到主要内容)\s*$",
        r"^\s*(accept (all )?cookies|cookie (settings|policy)|本网站使用\s*cookie).*$",
        r"^\s*(advertisement|sponsored|广告|推广)\s*$",
        r"^\s*(subscribe|sign up|登录|注册|分享到|share( this)?)\W*$",
        r"^\s*(home|首页)\s*[>›/|].*$",
        r"^\s*(上一篇|下一篇|相关阅读|推荐阅读|热门文章)[:：].*$",
    )
]


def map_visual_style(value: Optional[str]) -> VisualStyle:
    return VISUAL_STYLE_MAP.get((value or "").strip().lower(), VisualStyle.INFOGRAPHIC)


def estimate_duration(text: str) -> float:
    return len(text) / config.CHARS_PER_SECOND


def strip_filler(text: str) -> str:
    """Deterministic cleanup: filler lines, duplicate paragraphs, blank runs."""
    paragraphs = []
    seen = set()
    for block in re.split(r"\n\s*\n", text or ""):
        lines = [line.rstrip() for line in block.splitlines() if not any(p.match(line) for p in _FILLER_PATTERNS)]
        paragraph = "\n".join(line for line in lines if line.strip()).strip()
        if not paragraph:
            continue
        key = re.sub(r"\s+", " ", paragraph)
        if key in seen:
            continue
        seen.add(key)
        paragraphs.append(paragraph)
    return "\n\n".join(paragraphs)


async def filter_content(
    llm: LLMClient,
    text: str,
    topic: str,
    on_progress: Optional[ProgressCallback] = None,
) -> str:
    cleaned = strip_filler(text)
    if len(cleaned) <= config.CONTENT_FILTER_MIN_CHARS:
        return cleaned

    if on_progress:
        await on_progress(5, f"正在筛选有用信息（原始内容 {round(len(text) / 1000)}K 字符）")
    user = (
        f"## 用户研究主题\n{topic}\n\n"
        f"## 原始研究结果（{len(cleaned)} 字符）\n{cleaned}\n\n"
        "请整理以上内容，保留尽可能多的有用信息。"
    )
    try:
        filtered = await llm.complete(
            system=CONTENT_FILTER_PROMPT,
            user=user,
            model=config.LLM_FILTER_MODEL,
            temperature=0.3,
        )
    except UpstreamError as exc:
        logger.warning("Content filter failed, keeping deterministic cleanup: %s", exc)
        if on_progress:
            await on_progress(30, "内容筛选失败，使用原始内容继续")
        return cleaned

    filtered = filtered.strip() or cleaned
    ratio = round(len(filtered) / max(1, len(cleaned)) * 100)
    logger.info("Content filter: %d -> %d chars (%d%%)", len(cleaned), len(filtered), ratio)
    if on_progress:
        await on_progress(30, f"内容筛选完成：保留 {ratio}%")
    return filtered


def smart_segment_text(text: str, min_chars: int = 150, max_chars: int = 400) -> List[str]:
    """Pack paragraphs into chunks of roughly min_chars..max_chars characters."""
    paragraphs = [p for p in re.split(r"\n\n+", text or "") if p.strip()]
    segments: List[str] = []
    current = ""

    for para in paragraphs:
        if len(current) + len(para) <= max_chars:
            current = f"{current}\n\n{para}" if current else para
        elif len(current) >= min_chars:
            segments.append(current.strip())
            current = para
        else:
            current = f"{current}\n\n{para}" if current else para

    if current.strip():
        if len(current) < min_chars and segments:
            segments[-1] += "\n\n" + current.strip()
        else:
            segments.append(current.strip())
    return segments


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def normalize_segments(raw_segments: List[Dict[str, Any]]) -> List[ScriptSegment]:
    """Drop empty segments, renumber densely, map styles and estimate durations."""
    segments: List[ScriptSegment] = []
    for item in raw_segments:
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        segments.append(ScriptSegment(
            order=len(segments),
            text=text,
            chapter_title=(item.get("chapterTitle") or item.get("chapter_title") or None),
            key_points=_as_str_list(item.get("keyPoints") or item.get("key_points")),
            visual_style=map_visual_style(item.get("visualStyle") or item.get("visual_style")),
            emotion=item.get("emotion") or None,
            estimated_duration=estimate_duration(text),
        ))
    return segments


def parse_script(payload: str) -> ScriptDraft:
    data = parse_json_payload(payload)
    if not isinstance(data, dict) or not isinstance(data.get("segments"), list):
        raise ValueError("脚本缺少 segments 数组")
    segments = normalize_segments(data["segments"])
    if not segments:
        raise ValueError("脚本没有有效章节")
    return ScriptDraft(title=str(data.get("title") or "").strip(), segments=segments)


def fallback_script(text: str, topic: str) -> ScriptDraft:
    chunks = smart_segment_text(text)
    return ScriptDraft(
        title=topic,
        segments=normalize_segments([{"text": chunk} for chunk in chunks]),
    )


async def generate_script(
    llm: LLMClient,
    content: str,
    topic: str,
    on_progress: Optional[ProgressCallback] = None,
) -> ScriptDraft:
    if not (content or "").strip():
        raise ValidationError("没有可用于生成脚本的研究内容")

    filtered = await filter_content(llm, content, topic, on_progress)
    if on_progress:
        await on_progress(40, "正在生成解说脚本")

    raw = await llm.complete(
        system=SCRIPT_PROMPT,
        user=f"## 主题\n{topic}\n\n## 研究资料\n{filtered}",
        json_mode=True,
        temperature=0.7,
    )
    try:
        draft = parse_script(raw)
    except ValueError as exc:
        logger.warning("Script output unparseable, falling back to paragraph packing: %s", exc)
        draft = fallback_script(filtered, topic)

    if not draft.segments:
        raise UpstreamError("脚本生成失败：没有有效章节")
    if not draft.title:
        draft.title = topic
    logger.info("Script ready: %d segments, ~%.0fs", len(draft.segments), draft.estimated_duration)
    return draft
