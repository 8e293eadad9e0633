import asyncio
import io
import math
from typing import Optional, Tuple

import httpx
from pydub import AudioSegment

from research_video import config
from research_video.errors import UpstreamError
from research_video.services.storage import LocalStorage
from research_video.utils.http import post_json
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

AUDIO_FOLDER = "research-video/tts"


class SpeechSynthesizer:
    """HTTP speech synthesis adapter. Returns encoded audio in `audio_format`."""

    audio_format = config.TTS_AUDIO_FORMAT

    def __init__(self, api_url: str = config.TTS_API_URL, api_key: Optional[str] = config.TTS_API_KEY):
        self.api_url = api_url
        self.api_key = api_key

    async def synthesize(
        self,
        text: str,
        voice_id: Optional[str] = None,
        speed: float = 1.0,
        emotion: Optional[str] = None,
        pitch: Optional[float] = None,
        volume: Optional[float] = None,
    ) -> bytes:
        headers = {
            "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
            "Content-Type": "application/json",
        }
        body = {
            "input": text,
            "voice_id": voice_id or config.TTS_DEFAULT_VOICE_ID,
            "response_format": self.audio_format,
            "speed": speed,
            "sample_rate": config.TTS_SAMPLE_RATE,
        }
        if emotion:
            body["emotion"] = emotion
        if pitch is not None:
            body["pitch"] = pitch
        if volume is not None:
            body["loudness_rate"] = volume

        try:
            response = await post_json(self.api_url, headers=headers, data=body, timeout=config.SYNTHESIS_TIMEOUT)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"语音合成失败：{exc}") from exc
        if not response.content:
            raise UpstreamError("语音合成返回空音频")
        return response.content


def decode_audio(data: bytes, audio_format: str) -> AudioSegment:
    try:
        return AudioSegment.from_file(io.BytesIO(data), format=audio_format)
    except Exception as exc:  # noqa: BLE001
        raise UpstreamError(f"音频解码失败：{exc}") from exc


def normalize_loudness(audio: AudioSegment, target_dbfs: float = config.TTS_TARGET_DBFS) -> AudioSegment:
    """Apply gain so the clip's average loudness sits at `target_dbfs`. Silence is left as is."""
    if math.isinf(audio.dBFS):
        return audio
    return audio.apply_gain(target_dbfs - audio.dBFS)


def measure_duration(audio: AudioSegment) -> float:
    return round(len(audio) / 1000, 3)


def prepare_audio(data: bytes, audio_format: str) -> Tuple[bytes, float]:
    """Decode, normalize and re-encode a vendor clip. Returns (encoded bytes, seconds)."""
    audio = normalize_loudness(decode_audio(data, audio_format))
    buffer = io.BytesIO()
    audio.export(buffer, format=audio_format)
    return buffer.getvalue(), measure_duration(audio)


async def synthesize_segment(
    synth: SpeechSynthesizer,
    storage: LocalStorage,
    text: str,
    voice_id: Optional[str] = None,
    speed: float = 1.0,
    emotion: Optional[str] = None,
    pitch: Optional[float] = None,
    volume: Optional[float] = None,
) -> Tuple[str, float]:
    """Synthesize, normalize and store one narration clip. Returns (audio_url, seconds)."""
    raw = await synth.synthesize(text, voice_id=voice_id, speed=speed, emotion=emotion, pitch=pitch, volume=volume)
    encoded, duration = await asyncio.to_thread(prepare_audio, raw, synth.audio_format)
    if duration <= 0:
        raise UpstreamError("语音合成返回的音频时长为 0")

    url = storage.save_bytes(encoded, AUDIO_FOLDER, synth.audio_format)
    logger.debug("Stored %.2fs narration at %s", duration, url)
    return url, duration
