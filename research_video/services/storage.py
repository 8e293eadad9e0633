import shutil
import uuid
from pathlib import Path
from typing import Optional

import httpx

from research_video import config
from research_video.errors import StorageError
from research_video.utils.http import get_bytes
from research_video.utils.logging import get_logger

logger = get_logger(__name__)


class LocalStorage:
    """Durable media storage on local disk, served under a public URL prefix."""

    def __init__(self, root: Path = config.GENERATED_DIR, public_prefix: str = config.PUBLIC_MEDIA_PREFIX):
        self.root = Path(root)
        self.public_prefix = public_prefix.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _target(self, folder: str, suffix: str) -> Path:
        directory = self.root / folder
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{uuid.uuid4().hex}.{suffix.lstrip('.')}"

    def url_for(self, path: Path) -> str:
        relative = path.resolve().relative_to(self.root.resolve())
        return f"{self.public_prefix}/{relative.as_posix()}"

    def save_bytes(self, data: bytes, folder: str, suffix: str) -> str:
        path = self._target(folder, suffix)
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"写入存储失败：{exc}") from exc
        return self.url_for(path)

    def save_file(self, source: Path, folder: str, suffix: Optional[str] = None) -> str:
        path = self._target(folder, suffix or Path(source).suffix or "bin")
        try:
            shutil.copyfile(source, path)
        except OSError as exc:
            raise StorageError(f"写入存储失败：{exc}") from exc
        return self.url_for(path)

    def resolve(self, url: str) -> Optional[Path]:
        """Local path of a URL issued by this storage, None for foreign URLs."""
        if not url.startswith(self.public_prefix + "/"):
            return None
        relative = url[len(self.public_prefix) + 1:]
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            return None
        return path

    async def fetch_to(self, url: str, dest: Path) -> Path:
        local = self.resolve(url)
        if local is not None:
            if not local.exists():
                raise StorageError(f"媒体文件不存在：{url}")
            shutil.copyfile(local, dest)
            return dest
        try:
            content = await get_bytes(url, timeout=60.0)
        except httpx.HTTPError as exc:
            raise StorageError(f"下载媒体失败：{url} ({exc})") from exc
        dest.write_bytes(content)
        return dest

    async def mirror(self, url: str, folder: str, suffix: str) -> str:
        """Copy a remote asset into durable storage and return the durable URL."""
        if self.resolve(url) is not None:
            return url
        try:
            content = await get_bytes(url, timeout=60.0)
        except httpx.HTTPError as exc:
            raise StorageError(f"下载媒体失败：{url} ({exc})") from exc
        return self.save_bytes(content, folder, suffix)
