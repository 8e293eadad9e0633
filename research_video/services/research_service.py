import time
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, List, Optional

from research_video import config
from research_video.errors import UpstreamError
from research_video.models import DimensionStatus, ReasoningEffort, ResearchDimension
from research_video.services.llm_client import LLMClient
from research_video.services.scheduler import ItemResult, RetryPolicy, run_bounded
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

RESEARCH_BUDGETS = {
    ReasoningEffort.LOW: config.RESEARCH_BUDGET_LOW,
    ReasoningEffort.MEDIUM: config.RESEARCH_BUDGET_MEDIUM,
    ReasoningEffort.HIGH: config.RESEARCH_BUDGET_HIGH,
}

RESEARCH_SYSTEM_PROMPT = """
你是一名严谨的深度研究员。请围绕给定的查询进行全面调研，输出结构清晰的 Markdown 报告：
包含关键事实、数据、时间线、各方观点与来源引用。不要编造数据，不确定的信息要注明。
""".strip()


@dataclass
class ResearchResult:
    merged: str
    dimensions: List[ResearchDimension]
    elapsed: float


class ResearchClient:
    """Deep-research adapter: one query in, one report out."""

    def __init__(self, llm: LLMClient, model: str = config.RESEARCH_MODEL):
        self.llm = llm
        self.model = model

    async def research(self, query: str, effort: ReasoningEffort = ReasoningEffort.LOW) -> str:
        return await self.llm.complete(
            system=RESEARCH_SYSTEM_PROMPT,
            user=query,
            model=self.model,
            reasoning_effort=effort.value,
            timeout=RESEARCH_BUDGETS[effort],
        )


def budget_for(effort: ReasoningEffort) -> float:
    return RESEARCH_BUDGETS[effort]


def merge_research(topic: str, dimensions: List[ResearchDimension], today: Optional[date] = None) -> str:
    """Join successful results in dimension order under a dated header."""
    today = today or date.today()
    sections = [
        f"## {d.title}\n\n{d.result}"
        for d in dimensions
        if d.status == DimensionStatus.COMPLETED and d.result
    ]
    if not sections:
        raise UpstreamError("所有研究维度都失败了")
    header = f"# {topic}\n\n> 研究日期：{today.year}年{today.month}月{today.day}日"
    return f"{header}\n\n" + "\n\n---\n\n".join(sections)


async def run_parallel_research(
    topic: str,
    dimensions: List[ResearchDimension],
    client: ResearchClient,
    effort: ReasoningEffort = ReasoningEffort.LOW,
    on_dimension_done: Optional[Callable[[ResearchDimension, int, int], Awaitable[None]]] = None,
) -> ResearchResult:
    """Research every dimension concurrently. Fails only when all dimensions fail."""
    if not dimensions:
        raise UpstreamError("没有可研究的维度")

    started = time.monotonic()
    for dimension in dimensions:
        dimension.status = DimensionStatus.RESEARCHING
        dimension.result = None
        dimension.error = None

    async def research_one(dimension: ResearchDimension) -> str:
        content = await client.research(dimension.query, effort)
        if not content.strip():
            raise UpstreamError(f"研究结果为空：{dimension.title}")
        return content

    async def record(result: ItemResult[str], done: int, total: int) -> None:
        dimension = dimensions[result.index]
        if result.ok:
            dimension.status = DimensionStatus.COMPLETED
            dimension.result = result.value
            logger.info("Research dimension %r done (%d chars)", dimension.title, len(result.value or ""))
        else:
            dimension.status = DimensionStatus.FAILED
            dimension.error = str(result.error) or type(result.error).__name__
            logger.warning("Research dimension %r failed: %s", dimension.title, dimension.error)
        if on_dimension_done:
            await on_dimension_done(dimension, done, total)

    policy = RetryPolicy(max_attempts=config.RESEARCH_MAX_ATTEMPTS, timeout=budget_for(effort))
    await run_bounded(dimensions, research_one, concurrency=len(dimensions), policy=policy, on_complete=record)

    merged = merge_research(topic, dimensions)
    elapsed = time.monotonic() - started
    logger.info("Research merged %d/%d dimensions in %.1fs", sum(d.status == DimensionStatus.COMPLETED for d in dimensions), len(dimensions), elapsed)
    return ResearchResult(merged=merged, dimensions=dimensions, elapsed=elapsed)
