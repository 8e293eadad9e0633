import io
import json
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest
from PIL import Image
from pydub.generators import Sine

from research_video.errors import UpstreamError
from research_video.models import ReasoningEffort
from research_video.services.pipeline import ResearchVideoPipeline
from research_video.services.repository import FileProjectRepository
from research_video.services.scheduler import RetryPolicy
from research_video.services.storage import LocalStorage


def make_wav(seconds: float = 1.0, freq: int = 440, gain: float = -10.0) -> bytes:
    tone = Sine(freq).to_audio_segment(duration=int(seconds * 1000)).apply_gain(gain)
    buffer = io.BytesIO()
    tone.export(buffer, format="wav")
    return buffer.getvalue()


def make_png(size=(1600, 900), color=(30, 120, 200)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


SCRIPT_PAYLOAD = {
    "title": "太阳系漫游",
    "segments": [
        {
            "chapterTitle": "开场",
            "text": "大家好",
            "keyPoints": ["八大行星"],
            "emotion": "neutral",
            "visualStyle": "news",
        }
    ],
}


class FakeLLM:
    """Routes on the system prompt so one fake serves every LLM-backed step."""

    def __init__(self, script: Optional[dict] = None, dimensions: Optional[list] = None):
        self.script = script if script is not None else SCRIPT_PAYLOAD
        self.dimensions = dimensions
        self.filter_error: Optional[Exception] = None
        self.plan: Optional[str] = None
        self.calls: List[Dict[str, str]] = []

    async def complete(self, system: str, user: str, **kwargs) -> str:
        self.calls.append({"system": system, "user": user, **{k: str(v) for k, v in kwargs.items()}})
        if "研究策划师" in system:
            count = int(user.split("请生成 ")[1].split(" ")[0])
            dims = self.dimensions or [
                {"dimension": f"维度{i}", "query": f"查询{i}", "priority": 5 - i} for i in range(count + 2)
            ]
            return json.dumps(dims, ensure_ascii=False)
        if "内容整理专家" in system:
            if self.filter_error:
                raise self.filter_error
            return user.split("字符）\n", 1)[-1]
        if "脚本撰写者" in system:
            return json.dumps(self.script, ensure_ascii=False)
        if "信息图设计师" in system:
            if self.plan is None:
                raise UpstreamError("no plan configured")
            return self.plan
        return "研究内容"


class FakeResearch:
    def __init__(self, failing: Optional[Set[str]] = None):
        self.failing = failing or set()
        self.queries: List[str] = []

    async def research(self, query: str, effort: ReasoningEffort = ReasoningEffort.LOW) -> str:
        self.queries.append(query)
        if query in self.failing:
            raise UpstreamError(f"research failed for {query}")
        return f"关于「{query}」的研究报告。"


class FakeSpeech:
    audio_format = "wav"

    def __init__(self, seconds: float = 1.0, failing_texts: Optional[Set[str]] = None):
        self.seconds = seconds
        self.failing_texts = failing_texts or set()
        self.calls: Dict[str, int] = defaultdict(int)
        self.last_params: Dict[str, dict] = {}

    async def synthesize(self, text: str, voice_id=None, speed=1.0, emotion=None, pitch=None, volume=None) -> bytes:
        self.calls[text] += 1
        self.last_params[text] = {"voice_id": voice_id, "speed": speed, "emotion": emotion, "pitch": pitch, "volume": volume}
        if text in self.failing_texts:
            raise UpstreamError("speech vendor unavailable")
        return make_wav(self.seconds)


class FakeImages:
    """Writes a PNG into local storage and returns its URL, like a vendor plus mirror."""

    def __init__(self, storage: LocalStorage, size=(1600, 900), failing_prompts: Optional[Set[str]] = None):
        self.storage = storage
        self.size = size
        self.failing_prompts = failing_prompts or set()
        self.prompts: List[str] = []

    async def generate(self, prompt: str, model: str = "", aspect_ratio: str = "16:9") -> str:
        self.prompts.append(prompt)
        if prompt in self.failing_prompts:
            raise UpstreamError("image vendor rejected prompt")
        return self.storage.save_bytes(make_png(self.size), "vendor", "png")


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "generated", "/generated")


@pytest.fixture
def repository(tmp_path: Path) -> FileProjectRepository:
    return FileProjectRepository(tmp_path / "projects")


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_research() -> FakeResearch:
    return FakeResearch()


@pytest.fixture
def fake_speech() -> FakeSpeech:
    return FakeSpeech()


@pytest.fixture
def fake_images(storage) -> FakeImages:
    return FakeImages(storage)


@pytest.fixture
def pipeline(repository, storage, fake_llm, fake_research, fake_speech, fake_images) -> ResearchVideoPipeline:
    return ResearchVideoPipeline(
        repository=repository,
        storage=storage,
        llm=fake_llm,
        research_client=fake_research,
        speech=fake_speech,
        images=fake_images,
        heartbeat_interval=0.05,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, timeout=10),
    )


@pytest.fixture
def fake_ffmpeg(monkeypatch):
    """Replace ffmpeg/ffprobe with stubs that record commands and create the output file."""
    commands: List[List[str]] = []

    async def run_ffmpeg(cmd, timeout=None):
        commands.append(cmd)
        Path(cmd[-1]).write_bytes(b"\x00fake-media")

    async def probe_duration(path):
        return 0.0

    monkeypatch.setattr("research_video.utils.ffmpeg.run_ffmpeg", run_ffmpeg)
    monkeypatch.setattr("research_video.utils.ffmpeg.probe_duration", probe_duration)
    return commands


async def drain(stream) -> List[dict]:
    """Collect every SSE frame of a stream as decoded JSON, then wait for the stage task."""
    events = []
    async for frame in stream.frames():
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        events.append(json.loads(frame[len("data: "):]))
    if stream.task is not None:
        await stream.task
    return events
