import json
import re
from typing import Any, Optional

import httpx

from research_video import config
from research_video.errors import UpstreamError
from research_video.utils.http import post_json
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def parse_json_payload(payload: str) -> Any:
    """Decode model output that may wrap its JSON in a fenced block or prose."""
    text = (payload or "").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = _FENCED_BLOCK.search(text)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = text.find(opener), text.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                continue

    raise ValueError(f"LLM 返回非 JSON：{text[:200]}")


class LLMClient:
    """OpenAI-compatible chat/completions client."""

    def __init__(
        self,
        base_url: str = config.LLM_BASE_URL,
        api_key: Optional[str] = config.LLM_API_KEY,
        model: str = config.LLM_MODEL,
        timeout: float = config.LLM_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    async def complete(
        self,
        system: str,
        user: str,
        json_mode: bool = False,
        temperature: float = 0.7,
        model: Optional[str] = None,
        reasoning_effort: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
            "Content-Type": "application/json",
        }
        payload = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        if reasoning_effort:
            payload["reasoning_effort"] = reasoning_effort

        try:
            response = await post_json(
                f"{self.base_url}/chat/completions",
                headers=headers,
                data=payload,
                timeout=timeout or self.timeout,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"LLM 调用失败：{exc}") from exc

        try:
            content = response.json()["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise UpstreamError(f"LLM 返回格式异常：{exc!r}") from exc
        if config.DEBUG_SAVE_LLM_RAW:
            (config.GENERATED_DIR / "llm_raw.txt").write_text(content or "", encoding="utf-8")
        if not content:
            raise UpstreamError("LLM 返回内容为空")
        return content
