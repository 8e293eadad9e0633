"""
Research video pipeline: the stage handlers and the project state machine.

Every streaming stage follows the same shape. `start_*` validates the request
synchronously (so validation and precondition failures surface as plain HTTP
errors before any stream exists), then launches the stage body as a detached
task that writes the entry status, does the work, and writes the exit status.
Any exception inside a stage marks the project failed and ends the stream with
an error event.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from research_video import config
from research_video.errors import PipelineError, PreconditionError, ValidationError
from research_video.models import (
    CreateProjectRequest,
    DimensionsRequest,
    ImageBatchRequest,
    Project,
    ProjectDetail,
    ProjectStatus,
    ReasoningEffort,
    RegenerateImageRequest,
    RegenerateTTSRequest,
    ResearchDimension,
    Segment,
    SegmentImage,
    Stage,
    SynthesisStatus,
    UpdateSegmentRequest,
    utcnow,
)
from research_video.services import dimension_generator, image_service, research_service, script_segmenter, tts_service, video_composer
from research_video.services.image_service import ImageSynthesizer
from research_video.services.llm_client import LLMClient
from research_video.services.progress import ProgressStream, launch_detached
from research_video.services.repository import ProjectRepository
from research_video.services.research_service import ResearchClient
from research_video.services.scheduler import ItemResult, RetryPolicy, run_bounded, with_retry, with_timeout
from research_video.services.storage import LocalStorage
from research_video.services.tts_service import SpeechSynthesizer
from research_video.utils.logging import get_logger, set_project_id

logger = get_logger(__name__)

StageBody = Callable[[], Awaitable[Tuple[Dict[str, Any], Dict[str, Any]]]]

STAGE_TRANSITIONS = {
    Stage.DIMENSIONS: (ProjectStatus.RESEARCHING, ProjectStatus.DRAFT),
    Stage.RESEARCH: (ProjectStatus.RESEARCHING, ProjectStatus.DRAFT),
    Stage.SCRIPT: (ProjectStatus.SCRIPTING, ProjectStatus.DRAFT),
    Stage.TTS: (ProjectStatus.GENERATING_TTS, ProjectStatus.DRAFT),
    Stage.IMAGES: (ProjectStatus.GENERATING_IMAGES, ProjectStatus.READY_FOR_EDIT),
    Stage.COMPOSE: (ProjectStatus.COMPOSING, ProjectStatus.COMPLETED),
}

STAGE_LABELS = {
    Stage.DIMENSIONS: "生成研究维度",
    Stage.RESEARCH: "并行研究",
    Stage.SCRIPT: "生成脚本",
    Stage.TTS: "生成语音",
    Stage.IMAGES: "生成图片",
    Stage.COMPOSE: "合成视频",
}


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.message
    return str(exc) or type(exc).__name__


class ResearchVideoPipeline:
    def __init__(
        self,
        repository: ProjectRepository,
        storage: LocalStorage,
        llm: LLMClient,
        research_client: ResearchClient,
        speech: SpeechSynthesizer,
        images: ImageSynthesizer,
        heartbeat_interval: float = config.HEARTBEAT_INTERVAL,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.repository = repository
        self.storage = storage
        self.llm = llm
        self.research_client = research_client
        self.speech = speech
        self.images = images
        self.heartbeat_interval = heartbeat_interval
        self.retry_policy = retry_policy or RetryPolicy()

    # -- plain operations ---------------------------------------------------

    def create_project(self, req: CreateProjectRequest) -> Project:
        topic = (req.topic or "").strip()
        if not topic:
            raise ValidationError("topic 不能为空")

        project = Project(
            topic=topic,
            speaker=req.speaker or config.TTS_DEFAULT_VOICE_ID,
            speed=req.speed,
            image_model=req.image_model or config.DEFAULT_IMAGE_MODEL,
            aspect_ratio=req.aspect_ratio,
        )
        document = (req.document_content or "").strip()
        if document:
            project.research_results = f"# {topic}\n\n> 来源：用户上传文档\n\n{document}"
        return self.repository.create_project(project)

    def get_detail(self, project_id: str) -> ProjectDetail:
        project = self.repository.get_project(project_id)
        return ProjectDetail(project=project, segments=self.repository.list_segments(project_id))

    def get_segment(self, segment_id: str) -> Segment:
        return self.repository.get_segment(segment_id)

    async def edit_segment(self, segment_id: str, req: UpdateSegmentRequest) -> Segment:
        """Apply a manual edit to one segment. Changed text invalidates its audio."""
        segment = self.repository.get_segment(segment_id)
        fields: Dict[str, Any] = req.model_dump(exclude_none=True)
        if not fields:
            raise ValidationError("没有可更新的字段", project_id=segment.project_id)

        if "text" in fields:
            text = fields["text"].strip()
            if not text:
                raise ValidationError("片段文本不能为空", project_id=segment.project_id)
            fields["text"] = text
            if text != segment.text:
                fields.update(
                    estimated_duration=script_segmenter.estimate_duration(text),
                    audio_url=None,
                    audio_duration=None,
                    tts_status=SynthesisStatus.PENDING,
                    tts_error=None,
                )

        if "image_url" in fields:
            image_url = await image_service.store_image(self.storage, fields["image_url"].strip())
            prompt = fields.get("image_prompt", segment.image_prompt)
            fields.update(
                image_url=image_url,
                images=[SegmentImage(image_url=image_url, duration_ratio=1.0, prompt=prompt)],
                image_status=SynthesisStatus.COMPLETED,
                image_error=None,
            )

        logger.info("Edited segment %d: %s", segment.order, ", ".join(sorted(req.model_dump(exclude_none=True))))
        return self.repository.update_segment(segment_id, **fields)

    def delete_project(self, project_id: str) -> None:
        self.repository.delete_project(project_id)

    def _segments_or_raise(self, project_id: str) -> List[Segment]:
        segments = self.repository.list_segments(project_id)
        if not segments:
            raise ValidationError("项目还没有脚本片段", project_id=project_id)
        return segments

    # -- stage runner -------------------------------------------------------

    def _launch(self, project_id: str, stage: Stage, body: StageBody) -> ProgressStream:
        stream = ProgressStream(stage, heartbeat_interval=self.heartbeat_interval)
        stream.task = launch_detached(self._run_stage(project_id, stage, stream, body), name=f"{stage.value}:{project_id}")
        return stream

    async def _run_stage(self, project_id: str, stage: Stage, stream: ProgressStream, body: StageBody) -> None:
        running, finished = STAGE_TRANSITIONS[stage]
        label = STAGE_LABELS[stage]
        set_project_id(project_id)
        logger.info("Stage %s started", stage.value)

        try:
            self.repository.update_project(project_id, status=running)
            stream.progress(0, f"开始{label}")
            payload, fields = await body()
            fields = dict(fields)
            fields["status"] = finished
            if finished == ProjectStatus.COMPLETED:
                fields["completed_at"] = utcnow()
            self.repository.update_project(project_id, **fields)
        except Exception as exc:  # noqa: BLE001
            message = _error_text(exc)
            logger.exception("Stage %s failed: %s", stage.value, message)
            try:
                self.repository.update_project(project_id, status=ProjectStatus.FAILED)
            except PipelineError as persist_exc:
                logger.error("Could not mark project failed: %s", persist_exc)
            data = {"indices": exc.indices} if isinstance(exc, PreconditionError) else None
            stream.error(f"{label}失败：{message}", data=data)
            return

        logger.info("Stage %s completed", stage.value)
        stream.complete(payload, message=f"{label}完成")

    # -- dimensions ---------------------------------------------------------

    def start_dimensions(self, req: DimensionsRequest) -> ProgressStream:
        project = self.repository.get_project(req.project_id)
        topic = (req.topic or project.topic).strip()
        if not topic:
            raise ValidationError("topic 不能为空", project_id=project.id)

        async def body():
            stream.progress(10, "正在分析主题")
            call = with_retry(
                with_timeout(lambda: dimension_generator.generate_dimensions(self.llm, topic, req.max_dimensions), config.LLM_TIMEOUT),
                max_attempts=self.retry_policy.max_attempts,
                base_delay=self.retry_policy.base_delay,
            )
            dimensions = await call()
            for idx, dimension in enumerate(dimensions):
                stream.chunk({"dimension": _dump(dimension)}, index=idx, total=len(dimensions))
            return {"dimensions": [_dump(d) for d in dimensions]}, {"research_dimensions": dimensions}

        stream = self._launch(project.id, Stage.DIMENSIONS, body)
        return stream

    # -- research -----------------------------------------------------------

    def start_research(self, project_id: str, effort: ReasoningEffort = ReasoningEffort.LOW) -> ProgressStream:
        project = self.repository.get_project(project_id)
        if not project.research_dimensions:
            raise ValidationError("请先生成研究维度", project_id=project_id)
        dimensions = [ResearchDimension.model_validate(d.model_dump()) for d in project.research_dimensions]

        async def on_dimension_done(dimension: ResearchDimension, done: int, total: int) -> None:
            self.repository.update_project(project_id, research_dimensions=dimensions)
            stream.progress(
                int(done / total * 95),
                f"{dimension.title}：{'完成' if dimension.error is None else '失败'}",
                index=done,
                total=total,
                data={"dimensionId": dimension.id, "title": dimension.title, "status": dimension.status.value, "error": dimension.error},
            )

        async def body():
            stream.progress(1, f"开始并行研究 {len(dimensions)} 个维度（{effort.value}）")
            result = await research_service.run_parallel_research(
                project.topic, dimensions, self.research_client, effort, on_dimension_done
            )
            payload = {
                "dimensions": [_dump(d) for d in result.dimensions],
                "mergedLength": len(result.merged),
                "elapsed": round(result.elapsed, 2),
            }
            return payload, {"research_results": result.merged, "research_dimensions": result.dimensions}

        stream = self._launch(project_id, Stage.RESEARCH, body)
        return stream

    # -- script -------------------------------------------------------------

    def start_script(self, project_id: str) -> ProgressStream:
        project = self.repository.get_project(project_id)
        if not (project.research_results or "").strip():
            raise ValidationError("项目还没有研究结果", project_id=project_id)

        async def on_progress(progress: int, message: str) -> None:
            stream.progress(progress, message)

        async def body():
            call = with_retry(
                lambda: script_segmenter.generate_script(self.llm, project.research_results, project.topic, on_progress),
                max_attempts=self.retry_policy.max_attempts,
                base_delay=self.retry_policy.base_delay,
            )
            draft = await call()
            segments = self.repository.replace_segments(
                project_id, [Segment.from_script(project_id, s) for s in draft.segments]
            )
            for segment in segments:
                stream.chunk({"segment": _dump(segment)}, index=segment.order, total=len(segments))
            payload = {
                "title": draft.title,
                "segmentCount": len(segments),
                "estimatedDuration": round(draft.estimated_duration, 1),
            }
            return payload, {"title": draft.title, "full_script": draft.full_script}

        stream = self._launch(project_id, Stage.SCRIPT, body)
        return stream

    # -- speech -------------------------------------------------------------

    async def _synthesize_audio(self, project: Project, segment: Segment, text: str, **params: Any):
        self.repository.update_segment(segment.id, tts_status=SynthesisStatus.GENERATING, tts_error=None)
        return await tts_service.synthesize_segment(
            self.speech,
            self.storage,
            text,
            voice_id=project.speaker,
            speed=project.speed,
            emotion=params.get("emotion") or segment.emotion,
            pitch=params.get("pitch"),
            volume=params.get("volume"),
        )

    def start_tts(self, project_id: str) -> ProgressStream:
        project = self.repository.get_project(project_id)
        segments = self._segments_or_raise(project_id)

        async def record(result: ItemResult, done: int, total: int) -> None:
            segment = segments[result.index]
            if result.ok:
                audio_url, duration = result.value
                self.repository.update_segment(
                    segment.id,
                    audio_url=audio_url,
                    audio_duration=duration,
                    tts_status=SynthesisStatus.COMPLETED,
                    tts_error=None,
                )
                data = {"segmentId": segment.id, "status": "completed", "audioUrl": audio_url, "duration": duration}
            else:
                error = _error_text(result.error)
                self.repository.update_segment(segment.id, tts_status=SynthesisStatus.FAILED, tts_error=error)
                data = {"segmentId": segment.id, "status": "failed", "error": error}
            stream.progress(int(done / total * 100), f"语音生成进度 {done}/{total}", index=segment.order, total=total, data=data)

        async def body():
            report = await run_bounded(
                segments,
                lambda segment: self._synthesize_audio(project, segment, segment.text),
                concurrency=config.TTS_CONCURRENCY,
                policy=self.retry_policy,
                on_complete=record,
                require_all=config.REQUIRE_FULL_BATCH_SUCCESS,
                project_id=project_id,
            )
            return self._batch_summary(segments, report.results), {}

        stream = self._launch(project_id, Stage.TTS, body)
        return stream

    async def regenerate_tts(self, req: RegenerateTTSRequest) -> Segment:
        segment = self.repository.get_segment(req.segment_id)
        project = self.repository.get_project(segment.project_id)
        set_project_id(project.id)

        text = segment.text
        if req.override_text and req.override_text.strip():
            text = req.override_text.strip()

        call = with_retry(
            with_timeout(
                lambda: self._synthesize_audio(project, segment, text, emotion=req.emotion, pitch=req.pitch, volume=req.volume),
                self.retry_policy.timeout,
            ),
            max_attempts=self.retry_policy.max_attempts,
            base_delay=self.retry_policy.base_delay,
        )
        try:
            audio_url, duration = await call()
        except Exception as exc:
            self.repository.update_segment(segment.id, tts_status=SynthesisStatus.FAILED, tts_error=_error_text(exc))
            raise

        logger.info("Regenerated audio for segment %d (%.2fs)", segment.order, duration)
        return self.repository.update_segment(
            segment.id,
            text=text,
            estimated_duration=script_segmenter.estimate_duration(text),
            audio_url=audio_url,
            audio_duration=duration,
            tts_status=SynthesisStatus.COMPLETED,
            tts_error=None,
        )

    # -- images -------------------------------------------------------------

    async def _synthesize_images(
        self,
        project: Project,
        segment: Segment,
        style: Optional[str] = None,
        multi_image: bool = False,
        override_prompt: Optional[str] = None,
        limiter: Optional[asyncio.Semaphore] = None,
    ):
        self.repository.update_segment(segment.id, image_status=SynthesisStatus.GENERATING, image_error=None)
        plan = await image_service.plan_segment_images(
            self.llm,
            segment,
            topic=project.topic,
            style=style,
            multi_image=multi_image,
            override_prompt=override_prompt,
        )
        generated = await image_service.generate_segment_images(
            self.images,
            self.storage,
            plan,
            model=project.image_model,
            aspect_ratio=project.aspect_ratio,
            limiter=limiter,
        )
        return {
            "image_url": generated[0].image_url,
            "images": generated,
            "image_prompt": "\n\n".join(item.prompt for item in plan),
        }

    def start_images(self, req: ImageBatchRequest) -> ProgressStream:
        project = self.repository.get_project(req.project_id)
        segments = self._segments_or_raise(project.id)
        missing_audio = [s.order for s in segments if not s.has_audio()]
        if missing_audio:
            raise PreconditionError("部分片段还没有语音", indices=missing_audio, project_id=project.id)

        async def record(result: ItemResult, done: int, total: int) -> None:
            segment = segments[result.index]
            if result.ok:
                fields = result.value
                self.repository.update_segment(
                    segment.id, image_status=SynthesisStatus.COMPLETED, image_error=None, **fields
                )
                data = {
                    "segmentId": segment.id,
                    "status": "completed",
                    "imageUrl": fields["image_url"],
                    "images": [_dump(img) for img in fields["images"]],
                }
            else:
                error = _error_text(result.error)
                self.repository.update_segment(segment.id, image_status=SynthesisStatus.FAILED, image_error=error)
                data = {"segmentId": segment.id, "status": "failed", "error": error}
            stream.progress(int(done / total * 100), f"图片生成进度 {done}/{total}", index=segment.order, total=total, data=data)

        async def body():
            limiter = asyncio.Semaphore(config.IMAGE_CONCURRENCY)
            report = await run_bounded(
                segments,
                lambda segment: self._synthesize_images(
                    project, segment, style=req.style, multi_image=req.multi_image, limiter=limiter
                ),
                concurrency=config.IMAGE_CONCURRENCY,
                policy=self.retry_policy,
                on_complete=record,
                require_all=config.REQUIRE_FULL_BATCH_SUCCESS,
                project_id=project.id,
            )
            return self._batch_summary(segments, report.results), {}

        stream = self._launch(project.id, Stage.IMAGES, body)
        return stream

    async def regenerate_image(self, req: RegenerateImageRequest) -> Segment:
        segment = self.repository.get_segment(req.segment_id)
        project = self.repository.get_project(segment.project_id)
        set_project_id(project.id)

        call = with_retry(
            with_timeout(
                lambda: self._synthesize_images(
                    project, segment, multi_image=len(segment.images) > 1, override_prompt=req.override_prompt
                ),
                self.retry_policy.timeout,
            ),
            max_attempts=self.retry_policy.max_attempts,
            base_delay=self.retry_policy.base_delay,
        )
        try:
            fields = await call()
        except Exception as exc:
            self.repository.update_segment(segment.id, image_status=SynthesisStatus.FAILED, image_error=_error_text(exc))
            raise

        logger.info("Regenerated %d image(s) for segment %d", len(fields["images"]), segment.order)
        return self.repository.update_segment(
            segment.id, image_status=SynthesisStatus.COMPLETED, image_error=None, **fields
        )

    # -- compose ------------------------------------------------------------

    def start_compose(self, project_id: str, transition: Optional[str] = None) -> ProgressStream:
        self.repository.get_project(project_id)
        segments = self._segments_or_raise(project_id)
        missing = video_composer.find_incomplete(segments)
        if missing:
            raise PreconditionError("部分片段缺少音频或图片", indices=missing, project_id=project_id)

        async def on_progress(progress: int, message: str) -> None:
            stream.progress(progress, message)

        async def body():
            result = await video_composer.compose_video(
                segments, self.storage, transition=transition, on_progress=on_progress, project_id=project_id
            )
            payload = {"videoUrl": result.video_url, "coverUrl": result.cover_url, "duration": result.duration}
            return payload, {"video_url": result.video_url, "cover_url": result.cover_url, "duration": result.duration}

        stream = self._launch(project_id, Stage.COMPOSE, body)
        return stream

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _batch_summary(segments: List[Segment], results: List[ItemResult]) -> Dict[str, Any]:
        failed = [segments[r.index].order for r in results if not r.ok]
        return {
            "total": len(segments),
            "succeeded": len(results) - len(failed),
            "failed": failed,
            "results": [
                {
                    "segmentId": segments[r.index].id,
                    "order": segments[r.index].order,
                    "ok": r.ok,
                    "attempts": r.attempts,
                    "error": None if r.ok else _error_text(r.error),
                }
                for r in results
            ],
        }

