"""
Project repository - data access for projects and their segments.

The pipeline only talks to the abstract ProjectRepository. FileProjectRepository
keeps one JSON document per project holding the project record and its ordered
segment list, so replacing a project's segments is a single atomic write.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

from research_video import config
from research_video.errors import NotFoundError, StorageError
from research_video.models import Project, Segment, utcnow
from research_video.utils.logging import get_logger

logger = get_logger(__name__)


class ProjectRepository(ABC):
    """Abstract repository for projects and segments."""

    @abstractmethod
    def create_project(self, project: Project) -> Project:
        pass

    @abstractmethod
    def get_project(self, project_id: str) -> Project:
        """Raises NotFoundError when the project does not exist."""
        pass

    @abstractmethod
    def update_project(self, project_id: str, **fields: Any) -> Project:
        pass

    @abstractmethod
    def list_segments(self, project_id: str) -> List[Segment]:
        """Segments of a project ordered by `order`."""
        pass

    @abstractmethod
    def replace_segments(self, project_id: str, segments: List[Segment]) -> List[Segment]:
        """Delete every existing segment of the project and insert the new set."""
        pass

    @abstractmethod
    def get_segment(self, segment_id: str) -> Segment:
        pass

    @abstractmethod
    def update_segment(self, segment_id: str, **fields: Any) -> Segment:
        pass

    @abstractmethod
    def delete_project(self, project_id: str) -> None:
        """Soft delete. The project and its segments are no longer found afterwards."""
        pass


class FileProjectRepository(ProjectRepository):
    """
    File-based repository: `<root>/<project_id>.json` = {"project": ..., "segments": [...]}.

    Writes go to a temp file and are moved into place with os.replace, so a
    reader never sees a half-written document. A process-wide lock serialises
    read-modify-write cycles from concurrent workers.
    """

    def __init__(self, root: Path = config.PROJECTS_DIR):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._segment_index: Dict[str, str] = {}

    def _path(self, project_id: str) -> Path:
        return self.root / f"{project_id}.json"

    def _load(self, project_id: str) -> Dict[str, Any]:
        path = self._path(project_id)
        if not path.exists():
            raise NotFoundError(f"项目不存在：{project_id}", project_id=project_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"读取项目失败：{exc}", project_id=project_id) from exc

    def _save(self, project: Project, segments: List[Segment]) -> None:
        document = {
            "project": project.model_dump(mode="json"),
            "segments": [segment.model_dump(mode="json") for segment in segments],
        }
        path = self._path(project.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageError(f"写入项目失败：{exc}", project_id=project.id) from exc

    def _read(self, project_id: str):
        document = self._load(project_id)
        project = Project.model_validate(document["project"])
        if project.deleted_at is not None:
            raise NotFoundError(f"项目不存在：{project_id}", project_id=project_id)
        segments = [Segment.model_validate(item) for item in document.get("segments", [])]
        segments.sort(key=lambda s: s.order)
        return project, segments

    def _project_of_segment(self, segment_id: str) -> str:
        project_id = self._segment_index.get(segment_id)
        if project_id and self._path(project_id).exists():
            return project_id
        for path in self.root.glob("*.json"):
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("Skipping unreadable project file %s", path.name)
                continue
            for item in document.get("segments", []):
                self._segment_index[item["id"]] = path.stem
        project_id = self._segment_index.get(segment_id)
        if not project_id:
            raise NotFoundError(f"片段不存在：{segment_id}")
        return project_id

    def create_project(self, project: Project) -> Project:
        with self._lock:
            self._save(project, [])
        logger.info("Created project %s", project.id)
        return project

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            project, _ = self._read(project_id)
            return project

    def update_project(self, project_id: str, **fields: Any) -> Project:
        with self._lock:
            project, segments = self._read(project_id)
            data = project.model_dump()
            data.update(fields)
            data["updated_at"] = utcnow()
            updated = Project.model_validate(data)
            self._save(updated, segments)
            return updated

    def list_segments(self, project_id: str) -> List[Segment]:
        with self._lock:
            _, segments = self._read(project_id)
            return segments

    def replace_segments(self, project_id: str, segments: List[Segment]) -> List[Segment]:
        with self._lock:
            project, old_segments = self._read(project_id)
            for old in old_segments:
                self._segment_index.pop(old.id, None)
            ordered = sorted(segments, key=lambda s: s.order)
            project = project.model_copy(update={"updated_at": utcnow()})
            self._save(project, ordered)
            for segment in ordered:
                self._segment_index[segment.id] = project_id
            return ordered

    def get_segment(self, segment_id: str) -> Segment:
        with self._lock:
            project_id = self._project_of_segment(segment_id)
            _, segments = self._read(project_id)
            for segment in segments:
                if segment.id == segment_id:
                    return segment
            self._segment_index.pop(segment_id, None)
            raise NotFoundError(f"片段不存在：{segment_id}", project_id=project_id)

    def update_segment(self, segment_id: str, **fields: Any) -> Segment:
        with self._lock:
            project_id = self._project_of_segment(segment_id)
            project, segments = self._read(project_id)
            for idx, segment in enumerate(segments):
                if segment.id == segment_id:
                    data = segment.model_dump()
                    data.update(fields)
                    segments[idx] = Segment.model_validate(data)
                    self._save(project, segments)
                    return segments[idx]
            self._segment_index.pop(segment_id, None)
            raise NotFoundError(f"片段不存在：{segment_id}", project_id=project_id)

    def delete_project(self, project_id: str) -> None:
        with self._lock:
            project, segments = self._read(project_id)
            self._save(project.model_copy(update={"deleted_at": utcnow(), "updated_at": utcnow()}), segments)
            for segment in segments:
                self._segment_index.pop(segment.id, None)
        logger.info("Deleted project %s", project_id)
