"""Time-triggered prompt runner.

Each project may keep a ``.tasks.json`` manifest at its root. Enabled
tasks get one pending timer each; when it fires the scheduler hands a
:class:`TaskRequest` to the session manager over a queue and waits for
the reply future. Every execution is logged newest-first under
``<dataDir>/task-logs/<projectId>-<taskId>.json`` and the task is armed
again afterwards, whatever the outcome.

Project roots are watched with watchdog; a change to the manifest is
reloaded on the event loop after a short debounce.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from eve.engine.errors import (
    EveError,
    ProjectNotFoundError,
    TaskNotFoundError,
    TaskTimeoutError,
)
from eve.shared.services.durable_write import atomic_write_json, read_json
from eve.shared.services.project import Project, ProjectStore

logger = logging.getLogger(__name__)

TASKS_FILENAME = ".tasks.json"
TASK_LOGS_DIR = "task-logs"
MAX_LOG_ENTRIES = 100
SCHEDULE_TYPES = ("daily", "hourly", "interval", "weekly", "cron")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
RELOAD_DEBOUNCE_SECONDS = 0.1

Notify = Callable[[dict[str, Any]], None]


def _now() -> datetime:
    return datetime.now().astimezone()


def _iso(dt: datetime) -> str:
    return dt.astimezone().isoformat()


def _parse_hhmm(value: Any) -> tuple[int, int]:
    try:
        hours, minutes = str(value or "00:00").split(":", 1)
        h, m = int(hours), int(minutes)
    except ValueError:
        return 0, 0
    return min(max(h, 0), 23), min(max(m, 0), 59)


def _next_daily(now: datetime, hour: int, minute: int) -> datetime:
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _next_hourly(now: datetime, minute: int) -> datetime:
    candidate = now.replace(minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(hours=1)
    return candidate


def _cron_fields(expression: str) -> tuple[int | None, int | None] | None:
    """(minute, hour) for the supported subset, None for anything else.

    Supported: ``m h * * *`` and ``m * * * *``.
    """
    parts = expression.split()
    if len(parts) != 5 or parts[2:] != ["*", "*", "*"]:
        return None
    minute_s, hour_s = parts[0], parts[1]
    if not minute_s.isdigit() or not 0 <= int(minute_s) <= 59:
        return None
    if hour_s == "*":
        return int(minute_s), None
    if hour_s.isdigit() and 0 <= int(hour_s) <= 23:
        return int(minute_s), int(hour_s)
    return None


def schedule_warning(schedule: Any) -> str | None:
    """Describe why *schedule* will not run as written, if it won't."""
    if not isinstance(schedule, dict) or schedule.get("type") not in SCHEDULE_TYPES:
        return f"invalid schedule {schedule!r}"
    if schedule["type"] == "cron":
        expression = str(schedule.get("expression") or "")
        if not expression:
            return "cron schedule has no expression"
        if _cron_fields(expression) is None:
            return (
                f"cron expression {expression!r} is outside the supported subset "
                "('m h * * *', 'm * * * *'); it will run hourly instead"
            )
    return None


def compute_next_run(schedule: dict[str, Any] | None, now: datetime | None = None) -> datetime | None:
    """Next fire time for *schedule* after *now*, or None if it is invalid."""
    if not isinstance(schedule, dict) or not schedule.get("type"):
        return None
    now = now or _now()
    kind = schedule["type"]

    if kind == "daily":
        return _next_daily(now, *_parse_hhmm(schedule.get("time")))

    if kind == "hourly":
        try:
            minute = int(schedule.get("minute") or 0)
        except (TypeError, ValueError):
            minute = 0
        return _next_hourly(now, min(max(minute, 0), 59))

    if kind == "interval":
        try:
            minutes = float(schedule.get("minutes") or 60)
        except (TypeError, ValueError):
            minutes = 60
        return now + timedelta(minutes=minutes if minutes > 0 else 60)

    if kind == "weekly":
        day = str(schedule.get("day") or "monday").lower()
        target = WEEKDAYS.index(day) if day in WEEKDAYS else 0
        hour, minute = _parse_hhmm(schedule.get("time"))
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        days_until = (target - now.weekday()) % 7
        if days_until == 0 and candidate <= now:
            days_until = 7
        return candidate + timedelta(days=days_until)

    if kind == "cron":
        expression = str(schedule.get("expression") or "")
        if not expression:
            return None
        fields = _cron_fields(expression)
        if fields is None:
            return now + timedelta(hours=1)
        minute, hour = fields
        if hour is None:
            return _next_hourly(now, minute)
        return _next_daily(now, hour, minute)

    return None


@dataclass
class Task:
    id: str
    name: str
    prompt: str
    schedule: dict[str, Any]
    enabled: bool = True
    model: str | None = None
    args: list[str] = field(default_factory=list)
    created_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        args = data.get("args")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            prompt=str(data.get("prompt") or ""),
            schedule=data.get("schedule") if isinstance(data.get("schedule"), dict) else {},
            enabled=data.get("enabled") is not False,
            model=data.get("model"),
            args=[str(a) for a in args] if isinstance(args, list) else [],
            created_at=data.get("createdAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "schedule": self.schedule,
            "enabled": self.enabled,
        }
        if self.model:
            data["model"] = self.model
        if self.args:
            data["args"] = list(self.args)
        if self.created_at:
            data["createdAt"] = self.created_at
        return data


@dataclass
class TaskExecution:
    task_id: str
    task_name: str
    project_id: str
    project_name: str
    started_at: str = field(default_factory=lambda: _iso(_now()))
    status: str = "running"
    completed_at: str | None = None
    response: str | None = None
    error: str | None = None
    stats: dict[str, Any] | None = None

    def finish(self, *, response: str | None = None, stats: dict | None = None, error: str | None = None) -> None:
        self.completed_at = _iso(_now())
        if error is None:
            self.status = "success"
            self.response = response
            self.stats = stats
        else:
            self.status = "error"
            self.error = error

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "taskName": self.task_name,
            "projectId": self.project_id,
            "projectName": self.project_name,
            "startedAt": self.started_at,
            "status": self.status,
        }
        for key, value in (
            ("completedAt", self.completed_at),
            ("response", self.response),
            ("error", self.error),
            ("stats", self.stats),
        ):
            if value is not None:
                data[key] = value
        return data


@dataclass
class TaskRequest:
    """One headless run asked of the session manager.

    The manager resolves ``reply`` with ``{"response", "stats"}`` or sets
    an exception; the scheduler cancels it on timeout.
    """
    project_id: str
    project: Project
    task: Task
    reply: asyncio.Future = field(repr=False)


@dataclass
class _Armed:
    project_id: str
    task: Task
    next_run: datetime
    handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class _ManifestHandler(FileSystemEventHandler):
    """Calls *on_change* (from the observer thread) when ``.tasks.json`` is written.

    Only write-side events count; opened/closed events fire on every
    read, including the scheduler's own reload.
    """

    def __init__(self, on_change: Callable[[], None]) -> None:
        super().__init__()
        self.on_change = on_change

    def _check(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = (event.src_path, getattr(event, "dest_path", "") or "")
        if any(Path(str(p)).name == TASKS_FILENAME for p in paths if p):
            self.on_change()

    def on_created(self, event: FileSystemEvent) -> None:
        self._check(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._check(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writes land as a rename onto the manifest.
        self._check(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._check(event)


class TaskScheduler:
    """Owns the armed timers and manifest watchers for every project."""

    def __init__(
        self,
        projects: ProjectStore,
        data_dir: Path,
        *,
        timeout_seconds: float = 300.0,
        notify: Notify | None = None,
        requests: asyncio.Queue | None = None,
    ) -> None:
        self.projects = projects
        self.logs_dir = Path(data_dir) / TASK_LOGS_DIR
        self.timeout_seconds = timeout_seconds
        self.notify = notify
        self.requests: asyncio.Queue[TaskRequest] = requests or asyncio.Queue()
        self.running = False
        self._armed: dict[str, _Armed] = {}
        self._executing: set[str] = set()
        self._observer: Observer | None = None
        self._watches: dict[str, ObservedWatch] = {}
        self._reloads: dict[str, asyncio.TimerHandle] = {}
        self._runs: set[asyncio.Task] = set()

    @staticmethod
    def _key(project_id: str, task_id: str) -> str:
        return f"{project_id}:{task_id}"

    def _emit(self, frame: dict[str, Any]) -> None:
        if self.notify is None:
            return
        try:
            self.notify(frame)
        except Exception:
            logger.exception("Task notification failed: %s", frame.get("type"))

    # ── Lifecycle ──

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.daemon = True
        self._observer.start()
        for project in self.projects.list():
            self.add_project(project)
        logger.info("Task scheduler started (%d task(s) armed)", len(self._armed))

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        for armed in self._armed.values():
            if armed.handle is not None:
                armed.handle.cancel()
        self._armed.clear()
        for handle in self._reloads.values():
            handle.cancel()
        self._reloads.clear()
        self._watches.clear()
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        runs = list(self._runs)
        for task in runs:
            task.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)
        logger.info("Task scheduler stopped")

    def add_project(self, project: Project) -> None:
        self.reload_project(project.id)
        if self.running and project.id not in self._watches:
            self._watch(project)

    def remove_project(self, project_id: str) -> None:
        self._disarm_project(project_id)
        handle = self._reloads.pop(project_id, None)
        if handle is not None:
            handle.cancel()
        watch = self._watches.pop(project_id, None)
        if watch is not None and self._observer is not None:
            try:
                self._observer.unschedule(watch)
            except KeyError:
                pass

    # ── Manifest ──

    @staticmethod
    def tasks_file(project: Project) -> Path:
        return Path(project.path) / TASKS_FILENAME

    def _read_manifest(self, project: Project) -> list[dict[str, Any]]:
        data = read_json(self.tasks_file(project), default={"tasks": []})
        tasks = data.get("tasks") if isinstance(data, dict) else None
        if not isinstance(tasks, list):
            raise ValueError(f"{TASKS_FILENAME} has no 'tasks' list")
        return [t for t in tasks if isinstance(t, dict) and t.get("id")]

    def _write_manifest(self, project: Project, tasks: list[dict[str, Any]]) -> None:
        atomic_write_json(self.tasks_file(project), {"tasks": tasks})

    def load_tasks(self, project_id: str) -> list[Task]:
        project = self.projects.get(project_id)
        if project is None:
            return []
        try:
            return [Task.from_dict(raw) for raw in self._read_manifest(project)]
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read tasks for project %s: %s", project_id, exc)
            return []

    def _disarm_project(self, project_id: str) -> None:
        prefix = f"{project_id}:"
        for key in [k for k in self._armed if k.startswith(prefix)]:
            armed = self._armed.pop(key)
            if armed.handle is not None:
                armed.handle.cancel()

    def reload_project(self, project_id: str) -> int:
        """Drop and re-arm every timer for *project_id*; returns the armed count."""
        self._disarm_project(project_id)
        project = self.projects.get(project_id)
        if project is None:
            return 0
        if not self.tasks_file(project).exists():
            return 0
        try:
            raw_tasks = self._read_manifest(project)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load tasks for project %s: %s", project_id, exc)
            return 0
        armed = 0
        for raw in raw_tasks:
            task = Task.from_dict(raw)
            problem = schedule_warning(task.schedule)
            if problem:
                logger.warning("Task %s (%s): %s", task.id, task.name, problem)
            if task.enabled and self._arm(project_id, task):
                armed += 1
        logger.info("Loaded %d task(s) for project %s (%d armed)", len(raw_tasks), project_id, armed)
        self._emit({"type": "tasks_updated", "projectId": project_id})
        return armed

    def _watch(self, project: Project) -> None:
        loop = asyncio.get_running_loop()
        handler = _ManifestHandler(
            lambda: loop.call_soon_threadsafe(self._schedule_reload, project.id),
        )
        try:
            self._watches[project.id] = self._observer.schedule(
                handler, project.path, recursive=False,
            )
        except OSError as exc:
            logger.warning("Cannot watch %s for project %s: %s", project.path, project.id, exc)

    def _schedule_reload(self, project_id: str) -> None:
        if not self.running or project_id not in self._watches:
            return
        previous = self._reloads.pop(project_id, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._reloads[project_id] = loop.call_later(
            RELOAD_DEBOUNCE_SECONDS, self._reload_changed, project_id,
        )

    def _reload_changed(self, project_id: str) -> None:
        self._reloads.pop(project_id, None)
        logger.info("%s changed for project %s", TASKS_FILENAME, project_id)
        try:
            self.reload_project(project_id)
        except Exception:
            logger.exception("Reload failed for project %s", project_id)

    # ── Timers ──

    def _arm(self, project_id: str, task: Task) -> bool:
        key = self._key(project_id, task.id)
        next_run = compute_next_run(task.schedule)
        if next_run is None:
            logger.error("Invalid schedule for task %s", task.id)
            return False
        previous = self._armed.pop(key, None)
        if previous is not None and previous.handle is not None:
            previous.handle.cancel()
        delay = max(0.0, (next_run - _now()).total_seconds())
        armed = _Armed(project_id=project_id, task=task, next_run=next_run)
        if self.running:
            loop = asyncio.get_running_loop()
            armed.handle = loop.call_later(delay, self._fire, project_id, task)
        self._armed[key] = armed
        logger.info("Scheduled %s for %s", task.name, _iso(next_run))
        return True

    def _fire(self, project_id: str, task: Task) -> None:
        run = asyncio.create_task(self.execute_task(project_id, task))
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)

    async def execute_task(self, project_id: str, task: Task) -> TaskExecution | None:
        key = self._key(project_id, task.id)
        project = self.projects.get(project_id)
        if project is None:
            logger.error("Project %s not found for task %s", project_id, task.id)
            return None
        if key in self._executing:
            logger.warning("Task %s still running; skipping this fire", task.name)
            return None

        execution = TaskExecution(
            task_id=task.id,
            task_name=task.name,
            project_id=project_id,
            project_name=project.name,
        )
        self._executing.add(key)
        logger.info("Executing task: %s", task.name)
        self._emit({"type": "task_started", **execution.to_dict()})
        try:
            reply = asyncio.get_running_loop().create_future()
            await self.requests.put(TaskRequest(project_id, project, task, reply))
            try:
                result = await asyncio.wait_for(reply, timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                raise TaskTimeoutError(task.id, self.timeout_seconds)
            execution.finish(response=result.get("response"), stats=result.get("stats"))
            logger.info("Task completed: %s", task.name)
            self._emit({"type": "task_completed", **execution.to_dict()})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            execution.finish(error=str(exc) or type(exc).__name__)
            logger.error("Task failed: %s: %s", task.name, execution.error)
            self._emit({"type": "task_failed", **execution.to_dict()})
        finally:
            self._executing.discard(key)

        await asyncio.to_thread(self.log_execution, project_id, task.id, execution)

        if self.running:
            armed = self._armed.get(key)
            if armed is not None and armed.task.enabled:
                self._arm(project_id, armed.task)
        return execution

    # ── Execution log ──

    def _log_path(self, project_id: str, task_id: str) -> Path:
        return self.logs_dir / f"{Path(project_id).name}-{Path(task_id).name}.json"

    def log_execution(self, project_id: str, task_id: str, execution: TaskExecution) -> None:
        path = self._log_path(project_id, task_id)
        try:
            logs = read_json(path, default=[])
            if not isinstance(logs, list):
                logs = []
        except (OSError, ValueError) as exc:
            logger.error("Failed to read task log %s: %s", path, exc)
            logs = []
        logs.insert(0, execution.to_dict())
        try:
            atomic_write_json(path, logs[:MAX_LOG_ENTRIES])
        except OSError as exc:
            logger.error("Failed to write task log %s: %s", path, exc)

    def get_task_history(self, project_id: str, task_id: str) -> list[dict[str, Any]]:
        try:
            logs = read_json(self._log_path(project_id, task_id), default=[])
        except (OSError, ValueError) as exc:
            logger.error("Failed to read task history for %s/%s: %s", project_id, task_id, exc)
            return []
        return logs if isinstance(logs, list) else []

    # ── Queries ──

    def get_scheduled_tasks(self) -> list[dict[str, Any]]:
        tasks = []
        for armed in self._armed.values():
            project = self.projects.get(armed.project_id)
            tasks.append({
                **armed.task.to_dict(),
                "projectId": armed.project_id,
                "projectName": project.name if project else "Unknown",
                "nextRun": _iso(armed.next_run),
            })
        return tasks

    def next_run(self, project_id: str, task_id: str) -> datetime | None:
        armed = self._armed.get(self._key(project_id, task_id))
        return armed.next_run if armed else None

    def is_executing(self, project_id: str, task_id: str) -> bool:
        return self._key(project_id, task_id) in self._executing

    def get_all_tasks(self) -> list[dict[str, Any]]:
        all_tasks = []
        for project in self.projects.list():
            if not self.tasks_file(project).exists():
                continue
            for task in self.load_tasks(project.id):
                next_run = self.next_run(project.id, task.id)
                all_tasks.append({
                    **task.to_dict(),
                    "model": task.model,
                    "createdAt": task.created_at,
                    "projectId": project.id,
                    "projectName": project.name,
                    "nextRun": _iso(next_run) if next_run else None,
                })
        return all_tasks

    # ── Mutations ──

    def _project(self, project_id: str) -> Project:
        project = self.projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def _find(self, project_id: str, task_id: str) -> tuple[Project, list[dict[str, Any]], int]:
        project = self._project(project_id)
        if not self.tasks_file(project).exists():
            raise EveError("No tasks file found")
        tasks = self._read_manifest(project)
        for index, raw in enumerate(tasks):
            if raw.get("id") == task_id:
                return project, tasks, index
        raise TaskNotFoundError(project_id, task_id)

    def run_task_now(self, project_id: str, task_id: str) -> asyncio.Task:
        _, tasks, index = self._find(project_id, task_id)
        if self.is_executing(project_id, task_id):
            raise EveError("Task is already running")
        run = asyncio.create_task(self.execute_task(project_id, Task.from_dict(tasks[index])))
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)
        return run

    def create_task(self, project_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        project = self._project(project_id)
        try:
            tasks = self._read_manifest(project)
        except ValueError:
            tasks = []
        task = Task(
            id=uuid.uuid4().hex[:12],
            name=str(fields["name"]),
            prompt=str(fields["prompt"]),
            schedule=dict(fields["schedule"]),
            enabled=fields.get("enabled") is not False,
            model=fields.get("model"),
            args=list(fields.get("args") or []),
            created_at=_iso(_now()),
        )
        tasks.append(task.to_dict())
        self._write_manifest(project, tasks)
        logger.info("Created task %s (%s) in project %s", task.id, task.name, project_id)
        return task.to_dict()

    def update_task(self, project_id: str, task_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        project, tasks, index = self._find(project_id, task_id)
        merged = {**tasks[index], **{k: v for k, v in updates.items() if k != "id"}}
        tasks[index] = merged
        self._write_manifest(project, tasks)
        logger.info("Updated task %s in project %s", task_id, project_id)
        return merged

    def delete_task(self, project_id: str, task_id: str) -> None:
        project, tasks, index = self._find(project_id, task_id)
        del tasks[index]
        self._write_manifest(project, tasks)
        armed = self._armed.pop(self._key(project_id, task_id), None)
        if armed is not None and armed.handle is not None:
            armed.handle.cancel()
        logger.info("Deleted task %s from project %s", task_id, project_id)
