"""Project-confined file operations for the browser's file manager.

Every path a client sends is relative to a project root and is resolved
through :meth:`FileService.validate_path` first; nothing here touches a
path outside that root. Blocking filesystem calls run in a worker thread.
"""
from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from eve.engine.errors import FileServiceError, PathValidationError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024

ALLOWED_EXTENSIONS = frozenset({
    "txt", "md", "json", "yaml", "yml", "js", "ts", "jsx", "tsx",
    "css", "scss", "html", "xml", "svg", "py", "rb", "go", "rs",
    "java", "c", "cpp", "h", "hpp", "sh", "bash", "sql", "toml",
    "ini", "env", "conf", "config", "lock", "gitignore", "log",
})

_ERRNO_MESSAGES = {
    errno.ENOENT: "File not found",
    errno.EACCES: "Permission denied",
    errno.EISDIR: "Path is a directory",
    errno.ENOTDIR: "Not a directory",
}


def _translate(exc: OSError, not_found: str | None = None) -> FileServiceError:
    if exc.errno == errno.ENOENT and not_found:
        return FileServiceError(not_found)
    return FileServiceError(_ERRNO_MESSAGES.get(exc.errno, exc.strerror or str(exc)))


def _check_name(name: str) -> None:
    if not name or name in (".", ".."):
        raise FileServiceError("Invalid name")
    if "/" in name or "\\" in name:
        raise FileServiceError("Name cannot contain path separators")


class FileService:
    """Stateless; the project root is passed with every call."""

    def __init__(self, max_file_size: int = MAX_FILE_SIZE) -> None:
        self.max_file_size = max_file_size

    # ── Path policy ──

    @staticmethod
    def validate_path(project_path: str, relative_path: str | None) -> Path:
        """Resolve *relative_path* under *project_path* or raise."""
        root = os.path.abspath(project_path)
        relative = (relative_path or "").lstrip("/") or "."
        resolved = os.path.normpath(os.path.join(root, relative))
        if resolved != root and os.path.commonpath([root, resolved]) != root:
            raise PathValidationError(relative_path or "")
        return Path(resolved)

    @staticmethod
    def is_allowed_file(filename: str | os.PathLike) -> bool:
        name = os.path.basename(os.fspath(filename))
        stem, dot, ext = name.rpartition(".")
        if not dot or not stem:
            # extensionless, or a dotfile such as ".gitignore"
            return True
        return ext.lower() in ALLOWED_EXTENSIONS

    @staticmethod
    def _relative(project_path: str, target: Path) -> str:
        return os.path.relpath(target, os.path.abspath(project_path))

    # ── Operations ──

    async def list_directory(self, project_path: str, relative_path: str | None) -> list[dict[str, Any]]:
        target = self.validate_path(project_path, relative_path)
        return await asyncio.to_thread(self._list_directory, target)

    def _list_directory(self, target: Path) -> list[dict[str, Any]]:
        try:
            entries = list(os.scandir(target))
        except OSError as exc:
            raise _translate(exc, "Directory not found") from exc
        items = []
        for entry in entries:
            if entry.name.startswith("."):
                continue
            is_dir = entry.is_dir()
            size = 0
            if not is_dir:
                try:
                    size = entry.stat().st_size
                except OSError:
                    logger.debug("stat failed for %s", entry.path)
            items.append({"name": entry.name, "type": "directory" if is_dir else "file", "size": size})
        items.sort(key=lambda item: (item["type"] != "directory", item["name"].lower()))
        return items

    async def read_file(self, project_path: str, relative_path: str) -> dict[str, Any]:
        target = self.validate_path(project_path, relative_path)
        if not self.is_allowed_file(target):
            raise FileServiceError("File type not allowed for editing")
        return await asyncio.to_thread(self._read_file, target)

    def _read_file(self, target: Path) -> dict[str, Any]:
        try:
            size = target.stat().st_size
            if target.is_dir():
                raise FileServiceError("Path is a directory")
            if size > self.max_file_size:
                raise FileServiceError(f"File too large (max {self.max_file_size // 1024 // 1024}MB)")
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise _translate(exc) from exc
        return {"content": content, "size": size}

    async def write_file(self, project_path: str, relative_path: str, content: str) -> None:
        target = self.validate_path(project_path, relative_path)
        if not self.is_allowed_file(target):
            raise FileServiceError("File type not allowed for editing")
        data = (content or "").encode("utf-8")
        if len(data) > self.max_file_size:
            raise FileServiceError(f"Content too large (max {self.max_file_size // 1024 // 1024}MB)")
        try:
            await asyncio.to_thread(target.write_bytes, data)
        except OSError as exc:
            raise _translate(exc, "Directory not found") from exc
        logger.info("Wrote %d bytes to %s", len(data), target)

    async def rename_file(self, project_path: str, relative_path: str, new_name: str) -> str:
        _check_name(new_name)
        source = self.validate_path(project_path, relative_path)
        if source == Path(os.path.abspath(project_path)):
            raise FileServiceError("Cannot rename project root")
        dest = self.validate_path(project_path, str(Path(relative_path.lstrip("/")).parent / new_name))
        return await asyncio.to_thread(self._rename, project_path, source, dest, new_name)

    def _rename(self, project_path: str, source: Path, dest: Path, new_name: str) -> str:
        try:
            is_dir = source.is_dir()
            if not source.exists():
                raise FileServiceError("File not found")
            if not is_dir and not self.is_allowed_file(new_name):
                raise FileServiceError("File type not allowed")
            if dest.exists():
                raise FileServiceError(f"'{new_name}' already exists")
            os.rename(source, dest)
        except OSError as exc:
            raise _translate(exc) from exc
        logger.info("Renamed %s -> %s", source, dest)
        return self._relative(project_path, dest)

    async def move_file(self, project_path: str, source_path: str, dest_directory: str) -> str:
        source = self.validate_path(project_path, source_path)
        dest_dir = self.validate_path(project_path, dest_directory)
        root = Path(os.path.abspath(project_path))
        if source == root:
            raise FileServiceError("Cannot move project root")
        return await asyncio.to_thread(self._move, project_path, source, dest_dir)

    def _move(self, project_path: str, source: Path, dest_dir: Path) -> str:
        try:
            if not source.exists():
                raise FileServiceError("File not found")
            if not dest_dir.is_dir():
                raise FileServiceError("Destination must be a directory")
            if source.is_dir() and (dest_dir == source or source in dest_dir.parents):
                raise FileServiceError("Cannot move a directory into itself")
            dest = dest_dir / source.name
            if dest.exists():
                raise FileServiceError(f"'{source.name}' already exists in destination")
            shutil.move(str(source), str(dest))
        except OSError as exc:
            raise _translate(exc) from exc
        logger.info("Moved %s -> %s", source, dest)
        return self._relative(project_path, dest)

    async def delete_file(self, project_path: str, relative_path: str) -> None:
        target = self.validate_path(project_path, relative_path)
        if target == Path(os.path.abspath(project_path)):
            raise FileServiceError("Cannot delete project root")
        await asyncio.to_thread(self._delete, target)

    def _delete(self, target: Path) -> None:
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError as exc:
            raise _translate(exc) from exc
        logger.info("Deleted %s", target)

    async def create_directory(self, project_path: str, parent_path: str | None, name: str) -> str:
        _check_name(name)
        parent = self.validate_path(project_path, parent_path)
        target = self.validate_path(project_path, self._relative(project_path, parent / name))
        return await asyncio.to_thread(self._mkdir, project_path, parent, target)

    def _mkdir(self, project_path: str, parent: Path, target: Path) -> str:
        if not parent.is_dir():
            raise FileServiceError("Parent directory not found")
        if target.exists():
            raise FileServiceError("Directory already exists")
        try:
            target.mkdir()
        except OSError as exc:
            raise _translate(exc) from exc
        logger.info("Created directory %s", target)
        return self._relative(project_path, target)
