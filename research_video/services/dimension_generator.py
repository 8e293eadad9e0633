from datetime import date, timedelta
from typing import List, Optional

from research_video.errors import UpstreamError, ValidationError
from research_video.models import ResearchDimension
from research_video.services.llm_client import LLMClient, parse_json_payload
from research_video.utils.logging import get_logger

logger = get_logger(__name__)


def _cn_date(day: date) -> str:
    return f"{day.year}年{day.month}月{day.day}日"


def build_dimension_prompt(today: Optional[date] = None) -> str:
    today = today or date.today()
    week_start = today - timedelta(days=today.weekday())
    week_end = week_start + timedelta(days=6)
    today_cn = _cn_date(today)
    week_cn = f"{_cn_date(week_start)}至{_cn_date(week_end)}"

    return f"""
你是一位专业的研究策划师。用户想要制作一个关于特定主题的视频。

## 当前时间上下文
- 今天是：{today_cn}
- 本周是：{week_cn}
- 当前年份：{today.year}年

当用户主题包含时间相关词语时，必须转换为具体日期：
- "今日/今天" → "{today_cn}"
- "本周/这周" → "{week_cn}"
- "本月/这个月" → "{today.year}年{today.month}月"
- "最近/近期" → "最近7天（{today_cn}前后）"

请分析用户的主题，生成互补的研究维度，确保：
1. 维度之间互补，覆盖主题的不同方面
2. 每个维度都能产生有价值的内容
3. 维度的组合能够形成完整的叙事
4. 搜索查询必须包含具体日期，确保研究结果的时效性

每个维度包含：
- dimension: 维度名称（2-6个字）
- query: 深度研究的搜索查询（详细、可执行、包含具体日期）
- priority: 重要性 (1-5，5最重要)

只返回 JSON 数组：
[{{"dimension": "维度名", "query": "搜索查询", "priority": 5}}]
""".strip()


def parse_dimensions(payload: str, max_dimensions: int) -> List[ResearchDimension]:
    try:
        data = parse_json_payload(payload)
    except ValueError as exc:
        raise UpstreamError(f"研究维度解析失败：{exc}") from exc

    if isinstance(data, dict):
        data = data.get("dimensions") or data.get("items") or []
    if not isinstance(data, list):
        raise UpstreamError("研究维度不是数组")

    dimensions: List[ResearchDimension] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        title = str(item.get("dimension") or item.get("title") or "").strip()
        query = str(item.get("query") or "").strip()
        if not title or not query:
            continue
        try:
            priority = int(item.get("priority", 3))
        except (TypeError, ValueError):
            priority = 3
        dimensions.append(ResearchDimension(title=title, query=query, priority=max(1, min(5, priority))))

    if not dimensions:
        raise UpstreamError("LLM 未返回有效研究维度")
    return dimensions[:max_dimensions]


async def generate_dimensions(llm: LLMClient, topic: str, max_dimensions: int = 4) -> List[ResearchDimension]:
    if not topic.strip():
        raise ValidationError("topic 不能为空")
    content = await llm.complete(
        system=build_dimension_prompt(),
        user=f"用户主题：{topic}\n\n请生成 {max_dimensions} 个研究维度。",
        temperature=0.5,
    )
    dimensions = parse_dimensions(content, max_dimensions)
    logger.info("Generated %d research dimensions for %r", len(dimensions), topic)
    return dimensions
