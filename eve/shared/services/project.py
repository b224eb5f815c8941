"""Project registry persisted to <dataDir>/projects.json.

A project names a working directory and the default model for sessions
opened in it. The whole manifest is rewritten on every mutation.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from eve.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Project:
    id: str
    name: str
    path: str
    model: str = "haiku"
    created_at: str = field(default_factory=_now_iso)
    allowed_tools: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "model": self.model,
            "createdAt": self.created_at,
        }
        if self.allowed_tools:
            data["allowedTools"] = list(self.allowed_tools)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        tools = data.get("allowedTools")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            path=str(data["path"]),
            model=str(data.get("model") or "haiku"),
            created_at=str(data.get("createdAt") or _now_iso()),
            allowed_tools=[str(t) for t in tools] if isinstance(tools, list) else [],
        )


class ProjectStore:
    """Owns the projects map; every access goes through its lock."""

    def __init__(self, data_dir: Path) -> None:
        self._path = Path(data_dir) / "projects.json"
        self._lock = threading.RLock()
        self._projects: dict[str, Project] = {}
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        try:
            data = read_json(self._path, default={"projects": []})
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read %s: %s; starting empty", self._path, exc)
            data = {"projects": []}
        projects: dict[str, Project] = {}
        for raw in data.get("projects", []) if isinstance(data, dict) else []:
            try:
                project = Project.from_dict(raw)
            except (KeyError, TypeError):
                logger.warning("Skipping malformed project entry: %r", raw)
                continue
            projects[project.id] = project
        with self._lock:
            self._projects = projects
        logger.info("Loaded %d project(s) from %s", len(projects), self._path)

    def _save(self) -> None:
        atomic_write_json(
            self._path, {"projects": [p.to_dict() for p in self._projects.values()]},
        )

    def get(self, project_id: str | None) -> Project | None:
        if not project_id:
            return None
        with self._lock:
            return self._projects.get(project_id)

    def list(self) -> list[Project]:
        with self._lock:
            return list(self._projects.values())

    def add(
        self,
        name: str,
        path: str,
        model: str,
        *,
        valid_models: list[str] | None = None,
        allowed_tools: list[str] | None = None,
    ) -> Project:
        if valid_models is not None and model not in valid_models:
            model = "haiku"
        project = Project(
            id=str(uuid.uuid4()),
            name=name,
            path=path,
            model=model or "haiku",
            allowed_tools=list(allowed_tools or []),
        )
        with self._lock:
            self._projects[project.id] = project
            self._save()
        logger.info("Added project %s (%s) at %s", project.name, project.id, project.path)
        return project

    def remove(self, project_id: str) -> bool:
        with self._lock:
            if self._projects.pop(project_id, None) is None:
                return False
            self._save()
        logger.info("Removed project %s", project_id)
        return True
