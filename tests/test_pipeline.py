import asyncio
import json

import pytest
from conftest import drain

from research_video import config
from research_video.errors import NotFoundError, PreconditionError, StorageError, UpstreamError, ValidationError
from research_video.models import (
    CreateProjectRequest,
    DimensionsRequest,
    DimensionStatus,
    ImageBatchRequest,
    ProjectStatus,
    RegenerateImageRequest,
    RegenerateTTSRequest,
    SynthesisStatus,
    UpdateSegmentRequest,
)


def _types(events):
    return [e["type"] for e in events if e["type"] != "heartbeat"]


async def _project_with_segments(pipeline, fake_llm, texts):
    fake_llm.script = {"title": "测试", "segments": [{"text": t, "chapterTitle": f"章{i}"} for i, t in enumerate(texts)]}
    project = pipeline.create_project(CreateProjectRequest(topic="测试", document_content="资料"))
    await drain(pipeline.start_script(project.id))
    return project


@pytest.mark.asyncio
async def test_full_pipeline_from_topic_to_video(pipeline, repository, fake_ffmpeg):
    project = pipeline.create_project(CreateProjectRequest(topic="太阳系"))
    assert project.status == ProjectStatus.DRAFT

    events = await drain(pipeline.start_dimensions(DimensionsRequest(project_id=project.id, max_dimensions=3)))
    assert _types(events)[-1] == "complete"
    assert len(repository.get_project(project.id).research_dimensions) == 3

    events = await drain(pipeline.start_research(project.id))
    assert _types(events)[-1] == "complete"
    stored = repository.get_project(project.id)
    assert stored.research_results.startswith("# 太阳系\n\n> 研究日期：")
    assert stored.research_results.count("\n\n---\n\n") == 2
    assert all(d.status == DimensionStatus.COMPLETED for d in stored.research_dimensions)

    events = await drain(pipeline.start_script(project.id))
    assert "chunk" in _types(events)
    segments = repository.list_segments(project.id)
    assert [(s.order, s.text) for s in segments] == [(0, "大家好")]
    assert repository.get_project(project.id).title == "太阳系漫游"

    await drain(pipeline.start_tts(project.id))
    segment = repository.list_segments(project.id)[0]
    assert segment.tts_status == SynthesisStatus.COMPLETED
    assert segment.audio_duration > 0

    await drain(pipeline.start_images(ImageBatchRequest(project_id=project.id)))
    segment = repository.list_segments(project.id)[0]
    assert segment.image_status == SynthesisStatus.COMPLETED
    assert segment.image_url
    assert repository.get_project(project.id).status == ProjectStatus.READY_FOR_EDIT

    events = await drain(pipeline.start_compose(project.id))
    final = events[-1]
    assert final["type"] == "complete"
    assert final["data"]["videoUrl"] and final["data"]["coverUrl"]
    assert final["data"]["duration"] == pytest.approx(segment.audio_duration + 0.5, abs=0.01)
    done = repository.get_project(project.id)
    assert done.status == ProjectStatus.COMPLETED
    assert done.completed_at is not None
    assert done.video_url == final["data"]["videoUrl"]


@pytest.mark.asyncio
async def test_compose_precondition_keeps_status_and_lists_segments(pipeline, repository, fake_llm, fake_ffmpeg):
    project = await _project_with_segments(pipeline, fake_llm, ["第一段", "第二段"])
    await drain(pipeline.start_tts(project.id))
    await drain(pipeline.start_images(ImageBatchRequest(project_id=project.id)))
    second = repository.list_segments(project.id)[1]
    repository.update_segment(second.id, image_url=None, images=[])

    with pytest.raises(PreconditionError) as excinfo:
        pipeline.start_compose(project.id)

    assert excinfo.value.indices == [1]
    assert repository.get_project(project.id).status == ProjectStatus.READY_FOR_EDIT
    assert fake_ffmpeg == []


@pytest.mark.asyncio
async def test_tts_failure_is_recorded_per_segment_and_batch_completes(pipeline, repository, fake_llm, fake_speech):
    fake_speech.failing_texts = {"坏段"}
    project = await _project_with_segments(pipeline, fake_llm, ["好段一", "坏段", "好段二"])

    events = await drain(pipeline.start_tts(project.id))

    assert _types(events)[-1] == "complete"
    summary = events[-1]["data"]
    assert summary["succeeded"] == 2
    assert summary["failed"] == [1]
    assert fake_speech.calls["坏段"] == 3
    segments = repository.list_segments(project.id)
    assert [s.tts_status for s in segments] == [SynthesisStatus.COMPLETED, SynthesisStatus.FAILED, SynthesisStatus.COMPLETED]
    assert "speech vendor unavailable" in segments[1].tts_error
    assert repository.get_project(project.id).status == ProjectStatus.DRAFT


@pytest.mark.asyncio
async def test_images_require_audio_first(pipeline, fake_llm, fake_speech):
    fake_speech.failing_texts = {"无声"}
    project = await _project_with_segments(pipeline, fake_llm, ["有声", "无声"])
    await drain(pipeline.start_tts(project.id))

    with pytest.raises(PreconditionError) as excinfo:
        pipeline.start_images(ImageBatchRequest(project_id=project.id))
    assert excinfo.value.indices == [1]


@pytest.mark.asyncio
async def test_regenerate_tts_touches_only_its_segment(pipeline, repository, fake_llm, fake_speech):
    project = await _project_with_segments(pipeline, fake_llm, ["一", "二", "三"])
    await drain(pipeline.start_tts(project.id))
    before = repository.list_segments(project.id)

    fake_speech.seconds = 2.0
    updated = await pipeline.regenerate_tts(
        RegenerateTTSRequest(segment_id=before[1].id, override_text="新的第二段", emotion="happy", pitch=1.1)
    )

    after = repository.list_segments(project.id)
    assert updated.text == "新的第二段"
    assert updated.audio_duration == pytest.approx(2.0, abs=0.01)
    assert updated.audio_url != before[1].audio_url
    assert fake_speech.last_params["新的第二段"]["emotion"] == "happy"
    assert fake_speech.last_params["新的第二段"]["pitch"] == 1.1
    assert after[0] == before[0]
    assert after[2] == before[2]


@pytest.mark.asyncio
async def test_regenerate_image_with_override_prompt(pipeline, repository, fake_llm, fake_images):
    project = await _project_with_segments(pipeline, fake_llm, ["一", "二"])
    segments = repository.list_segments(project.id)

    updated = await pipeline.regenerate_image(RegenerateImageRequest(segment_id=segments[0].id, override_prompt="custom"))

    assert fake_images.prompts == ["custom"]
    assert updated.image_status == SynthesisStatus.COMPLETED
    assert updated.image_prompt == "custom"
    assert [img.duration_ratio for img in updated.images] == [1.0]
    assert repository.list_segments(project.id)[1] == segments[1]


@pytest.mark.asyncio
async def test_regenerate_unknown_segment_is_not_found(pipeline):
    with pytest.raises(NotFoundError):
        await pipeline.regenerate_tts(RegenerateTTSRequest(segment_id="nope"))


@pytest.mark.asyncio
async def test_rerunning_script_replaces_segments(pipeline, repository, fake_llm):
    project = await _project_with_segments(pipeline, fake_llm, ["一", "二", "三"])
    old_ids = {s.id for s in repository.list_segments(project.id)}

    fake_llm.script = {"title": "新", "segments": [{"text": "甲"}, {"text": ""}, {"text": "乙"}]}
    await drain(pipeline.start_script(project.id))

    segments = repository.list_segments(project.id)
    assert [(s.order, s.text) for s in segments] == [(0, "甲"), (1, "乙")]
    assert not old_ids & {s.id for s in segments}


@pytest.mark.asyncio
async def test_stage_failure_marks_project_failed(pipeline, repository, fake_research):
    project = pipeline.create_project(CreateProjectRequest(topic="失败"))
    await drain(pipeline.start_dimensions(DimensionsRequest(project_id=project.id, max_dimensions=2)))
    fake_research.failing = {d.query for d in repository.get_project(project.id).research_dimensions}

    events = await drain(pipeline.start_research(project.id))

    assert events[-1]["type"] == "error"
    assert "所有研究维度都失败了" in events[-1]["message"]
    stored = repository.get_project(project.id)
    assert stored.status == ProjectStatus.FAILED
    assert all(d.status == DimensionStatus.FAILED for d in stored.research_dimensions)


def test_create_rejects_blank_topic(pipeline):
    with pytest.raises(ValidationError):
        pipeline.create_project(CreateProjectRequest(topic="   "))


def test_document_content_prefills_research(pipeline):
    project = pipeline.create_project(CreateProjectRequest(topic="主题", document_content="上传的文档"))

    assert project.research_results == "# 主题\n\n> 来源：用户上传文档\n\n上传的文档"


def test_script_without_research_is_rejected(pipeline):
    project = pipeline.create_project(CreateProjectRequest(topic="主题"))

    with pytest.raises(ValidationError):
        pipeline.start_script(project.id)


@pytest.mark.asyncio
async def test_multi_image_batch_respects_cap(pipeline, repository, fake_llm, fake_images, monkeypatch):
    monkeypatch.setattr(config, "IMAGE_CONCURRENCY", 2)
    fake_llm.plan = json.dumps({"images": [
        {"prompt": "远景", "durationRatio": 0.4},
        {"prompt": "中景", "durationRatio": 0.3},
        {"prompt": "特写", "durationRatio": 0.3},
    ]}, ensure_ascii=False)
    project = await _project_with_segments(pipeline, fake_llm, ["一", "二", "三", "四"])
    await drain(pipeline.start_tts(project.id))

    state = {"in_flight": 0, "peak": 0}
    real_generate = fake_images.generate

    async def counting_generate(prompt, model="", aspect_ratio="16:9"):
        state["in_flight"] += 1
        state["peak"] = max(state["peak"], state["in_flight"])
        try:
            await asyncio.sleep(0.01)
            return await real_generate(prompt, model=model, aspect_ratio=aspect_ratio)
        finally:
            state["in_flight"] -= 1

    monkeypatch.setattr(fake_images, "generate", counting_generate)

    events = await drain(pipeline.start_images(ImageBatchRequest(project_id=project.id, multi_image=True)))

    assert _types(events)[-1] == "complete"
    assert len(fake_images.prompts) == 12
    assert state["peak"] <= 2
    assert all(len(s.images) == 3 for s in repository.list_segments(project.id))


@pytest.mark.asyncio
async def test_compose_render_failure_marks_project_failed(pipeline, repository, fake_llm, fake_ffmpeg, monkeypatch):
    project = await _project_with_segments(pipeline, fake_llm, ["第一段", "第二段"])
    await drain(pipeline.start_tts(project.id))
    await drain(pipeline.start_images(ImageBatchRequest(project_id=project.id)))

    async def broken_ffmpeg(cmd, timeout=None):
        raise StorageError("encoder crashed")

    monkeypatch.setattr("research_video.utils.ffmpeg.run_ffmpeg", broken_ffmpeg)

    events = await drain(pipeline.start_compose(project.id))

    assert events[-1]["type"] == "error"
    assert events[-1]["message"] == "合成视频失败：encoder crashed"
    stored = repository.get_project(project.id)
    assert stored.status == ProjectStatus.FAILED
    assert stored.video_url is None


@pytest.mark.asyncio
async def test_failed_override_keeps_previous_text_and_blocks_compose(pipeline, repository, fake_llm, fake_speech, fake_ffmpeg):
    project = await _project_with_segments(pipeline, fake_llm, ["原文一", "原文二"])
    await drain(pipeline.start_tts(project.id))
    await drain(pipeline.start_images(ImageBatchRequest(project_id=project.id)))
    target = repository.list_segments(project.id)[0]
    fake_speech.failing_texts = {"改写"}

    with pytest.raises(UpstreamError):
        await pipeline.regenerate_tts(RegenerateTTSRequest(segment_id=target.id, override_text="改写"))

    stored = repository.get_segment(target.id)
    assert stored.text == "原文一"
    assert stored.tts_status == SynthesisStatus.FAILED
    with pytest.raises(PreconditionError) as excinfo:
        pipeline.start_compose(project.id)
    assert excinfo.value.indices == [0]


@pytest.mark.asyncio
async def test_edit_segment_text_invalidates_only_that_audio(pipeline, repository, fake_llm):
    project = await _project_with_segments(pipeline, fake_llm, ["一", "二", "三"])
    await drain(pipeline.start_tts(project.id))
    before = repository.list_segments(project.id)

    updated = await pipeline.edit_segment(before[1].id, UpdateSegmentRequest(text="  手工修改  ", chapter_title="新章"))

    after = repository.list_segments(project.id)
    assert updated.text == "手工修改"
    assert updated.chapter_title == "新章"
    assert updated.audio_url is None
    assert updated.tts_status == SynthesisStatus.PENDING
    assert after[0] == before[0]
    assert after[2] == before[2]


@pytest.mark.asyncio
async def test_edit_segment_image_url_replaces_imagery(pipeline, repository, fake_llm, storage):
    project = await _project_with_segments(pipeline, fake_llm, ["一", "二"])
    segment = repository.list_segments(project.id)[0]
    local_url = storage.save_bytes(b"png-bytes", "uploads", "png")

    updated = await pipeline.edit_segment(segment.id, UpdateSegmentRequest(image_url=local_url, image_prompt="手绘"))

    assert updated.image_url == local_url
    assert [(img.image_url, img.duration_ratio, img.prompt) for img in updated.images] == [(local_url, 1.0, "手绘")]
    assert updated.image_status == SynthesisStatus.COMPLETED
    assert updated.image_prompt == "手绘"


@pytest.mark.asyncio
async def test_edit_segment_requires_a_field(pipeline, fake_llm):
    project = await _project_with_segments(pipeline, fake_llm, ["一"])
    segment_id = pipeline.get_detail(project.id).segments[0].id

    with pytest.raises(ValidationError):
        await pipeline.edit_segment(segment_id, UpdateSegmentRequest())
    with pytest.raises(ValidationError):
        await pipeline.edit_segment(segment_id, UpdateSegmentRequest(text="   "))


@pytest.mark.asyncio
async def test_deleted_project_and_its_segments_are_gone(pipeline, repository, fake_llm):
    project = await _project_with_segments(pipeline, fake_llm, ["一"])
    segment_id = repository.list_segments(project.id)[0].id

    pipeline.delete_project(project.id)

    with pytest.raises(NotFoundError):
        pipeline.get_detail(project.id)
    with pytest.raises(NotFoundError):
        pipeline.get_segment(segment_id)
    with pytest.raises(NotFoundError):
        pipeline.delete_project(project.id)
