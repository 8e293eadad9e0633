from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from research_video import config
from research_video.errors import (
    NotFoundError,
    PipelineError,
    PreconditionError,
    StorageError,
    SynthesisTimeoutError,
    UpstreamError,
    ValidationError,
)
from research_video.models import (
    ComposeRequest,
    CreateProjectRequest,
    CreateProjectResponse,
    DimensionsRequest,
    ImageBatchRequest,
    ProjectDetail,
    ProjectStageRequest,
    RegenerateImageRequest,
    RegenerateTTSRequest,
    ResearchRequest,
    Segment,
    UpdateSegmentRequest,
)
from research_video.services.image_service import ImageSynthesizer
from research_video.services.llm_client import LLMClient
from research_video.services.pipeline import ResearchVideoPipeline
from research_video.services.progress import SSE_HEADERS, ProgressStream
from research_video.services.repository import FileProjectRepository
from research_video.services.research_service import ResearchClient
from research_video.services.storage import LocalStorage
from research_video.services.tts_service import SpeechSynthesizer
from research_video.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    PreconditionError: 409,
    SynthesisTimeoutError: 504,
    UpstreamError: 502,
    StorageError: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL, use_json=config.LOG_JSON, log_file=Path(config.LOG_FILE) if config.LOG_FILE else None)
    logger.info("Research video service started, media under %s", config.GENERATED_DIR)
    yield


app = FastAPI(title="深度研究视频生成系统", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_pipeline() -> ResearchVideoPipeline:
    llm = LLMClient()
    return ResearchVideoPipeline(
        repository=FileProjectRepository(config.PROJECTS_DIR),
        storage=LocalStorage(config.GENERATED_DIR, config.PUBLIC_MEDIA_PREFIX),
        llm=llm,
        research_client=ResearchClient(llm),
        speech=SpeechSynthesizer(),
        images=ImageSynthesizer(),
    )


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    content = {"error": exc.message, "code": exc.code}
    if isinstance(exc, PreconditionError):
        content["segments"] = exc.indices
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=content)


def _sse(stream: ProgressStream) -> StreamingResponse:
    return StreamingResponse(stream.frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/api/research-video/create", response_model=CreateProjectResponse, response_model_by_alias=True)
async def create_project(req: CreateProjectRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    project = pipeline.create_project(req)
    return CreateProjectResponse(project_id=project.id, project=project)


@app.post("/api/research-video/dimensions")
async def generate_dimensions(req: DimensionsRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return _sse(pipeline.start_dimensions(req))


@app.post("/api/research-video/research")
async def run_research(req: ResearchRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return _sse(pipeline.start_research(req.project_id, req.reasoning_effort))


@app.post("/api/research-video/script")
async def generate_script(req: ProjectStageRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return _sse(pipeline.start_script(req.project_id))


@app.post("/api/research-video/tts/generate")
async def generate_tts(req: ProjectStageRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return _sse(pipeline.start_tts(req.project_id))


@app.post("/api/research-video/tts/regenerate", response_model=Segment, response_model_by_alias=True)
async def regenerate_tts(req: RegenerateTTSRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return await pipeline.regenerate_tts(req)


@app.post("/api/research-video/images/generate")
async def generate_images(req: ImageBatchRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return _sse(pipeline.start_images(req))


@app.post("/api/research-video/images/regenerate", response_model=Segment, response_model_by_alias=True)
async def regenerate_image(req: RegenerateImageRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return await pipeline.regenerate_image(req)


@app.post("/api/research-video/compose")
async def compose(req: ComposeRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return _sse(pipeline.start_compose(req.project_id, req.transition))


@app.get("/api/research-video/segment/{segment_id}", response_model=Segment, response_model_by_alias=True)
async def get_segment(segment_id: str, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return pipeline.get_segment(segment_id)


@app.patch("/api/research-video/segment/{segment_id}", response_model=Segment, response_model_by_alias=True)
async def update_segment(
    segment_id: str, req: UpdateSegmentRequest, pipeline: ResearchVideoPipeline = Depends(get_pipeline)
):
    return await pipeline.edit_segment(segment_id, req)


@app.get("/api/research-video/{project_id}", response_model=ProjectDetail, response_model_by_alias=True)
async def get_project(project_id: str, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    return pipeline.get_detail(project_id)


@app.delete("/api/research-video/{project_id}")
async def delete_project(project_id: str, pipeline: ResearchVideoPipeline = Depends(get_pipeline)):
    pipeline.delete_project(project_id)
    return {"success": True}


@app.get("/")
async def root():
    return {"message": "深度研究视频生成服务，接口位于 /api/research-video"}


app.mount(config.PUBLIC_MEDIA_PREFIX, StaticFiles(directory=config.GENERATED_DIR), name="generated")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("research_video.main:app", host="0.0.0.0", port=8000, reload=True)
