"""Merge an uploaded export into the signed-in owner's data.

Entities are applied in a fixed order (projects, tasks, sessions, events,
queue, settings) and each step commits on its own. A storage failure stops
the run with an ``rpc_error`` naming the step; earlier steps stay applied.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from config import ImportConfig
from models import (
    QUEUE_LIMIT,
    FocusSession,
    PomodoroEvent,
    PomodoroPhase,
    Project,
    Task,
    TaskQueueItem,
    UserSettings,
)
from services.clock import parse_iso
from services.error_handler import RpcError, log_service_error
from services.export import APP_TAG, SCHEMA_VERSION
from services.import_parse import ImportParseError, RawImportData, parse_archive, parse_workbook
from services.phase_engine import LIMITS
from services.settings import POMODORO_FIELDS
from services.validation import (
    empty_to_null,
    parse_boolean,
    parse_integer,
    parse_uuid,
    to_string_value,
)

logger = logging.getLogger(__name__)

SUPPORTED_MODES = ("merge",)
ENTITIES = ("projects", "tasks", "sessions", "events", "queue", "settings")

T = TypeVar("T")


def chunked(items: list[T], size: int) -> Iterable[list[T]]:
    for start in range(0, len(items), max(1, size)):
        yield items[start:start + size]


def _counts() -> dict[str, int]:
    return {name: 0 for name in ENTITIES}


@dataclass
class ImportResult:
    imported: dict[str, int] = field(default_factory=_counts)
    skipped: dict[str, int] = field(default_factory=_counts)
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "imported": dict(self.imported),
            "skipped": dict(self.skipped),
            "warnings": list(self.warnings),
        }


def validate_mode(mode: Optional[str]) -> str:
    if mode not in SUPPORTED_MODES:
        raise ImportParseError("unsupported_mode", "Unsupported mode", {"allowed": list(SUPPORTED_MODES)})
    return mode


def parse_upload(filename: Optional[str], content: bytes) -> RawImportData:
    """Pick the parser from the file extension."""
    name = (filename or "").lower()
    if name.endswith(".xlsx"):
        return parse_workbook(content)
    if name.endswith(".zip"):
        return parse_archive(content)
    raise ImportParseError("invalid_file", "Unsupported file format", "Supported formats are .xlsx and .zip")


def validate_manifest(manifest: Optional[dict]) -> None:
    manifest = manifest or {}
    version = to_string_value(manifest.get("schema_version"))
    app = to_string_value(manifest.get("app")).lower()
    if version != SCHEMA_VERSION or app != APP_TAG:
        raise ImportParseError(
            "invalid_manifest",
            "Invalid manifest",
            {
                "expected": {"schema_version": SCHEMA_VERSION, "app": APP_TAG},
                "actual": {"schema_version": version or None, "app": app or None},
            },
        )


def _non_negative(value: Optional[int]) -> int:
    return max(0, value if value is not None else 0)


def _parse_phase(value: Any) -> Optional[PomodoroPhase]:
    text = to_string_value(value)
    if not text:
        return None
    try:
        return PomodoroPhase(text)
    except ValueError:
        return None


def _in_limits(field_name: str, value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    low, high = LIMITS[POMODORO_FIELDS[field_name]]
    return value if low <= value <= high else None


# Row normalization ----------------------------------------------------------


def normalize_projects(rows: list[dict], result: ImportResult) -> list[dict]:
    normalized = []
    for index, row in enumerate(rows, start=1):
        record = {
            "id": parse_uuid(row.get("id")),
            "name": to_string_value(row.get("name")),
            "archived_at": parse_iso(row.get("archived_at")),
            "created_at": parse_iso(row.get("created_at")),
            "updated_at": parse_iso(row.get("updated_at")),
        }
        if not record["id"] or not record["name"] or not record["created_at"] or not record["updated_at"]:
            result.skipped["projects"] += 1
            result.warn(f"Projects row {index} skipped (invalid required fields).")
            continue
        record["_row"] = index
        normalized.append(record)
    return normalized


def normalize_tasks(rows: list[dict], result: ImportResult) -> list[dict]:
    normalized = []
    for index, row in enumerate(rows, start=1):
        completed = parse_boolean(row.get("completed"))
        raw_project_id = empty_to_null(row.get("project_id"))
        record = {
            "id": parse_uuid(row.get("id")),
            "title": to_string_value(row.get("title")),
            "completed": completed if completed is not None else False,
            "project_id": parse_uuid(raw_project_id),
            "archived_at": parse_iso(row.get("archived_at")),
            "created_at": parse_iso(row.get("created_at")),
            "updated_at": parse_iso(row.get("updated_at")),
        }
        for name in POMODORO_FIELDS:
            record[name] = _in_limits(name, parse_integer(row.get(name)))
        if not record["id"] or not record["title"] or not record["created_at"] or not record["updated_at"]:
            result.skipped["tasks"] += 1
            result.warn(f"Tasks row {index} skipped (invalid required fields).")
            continue
        if not _is_missing(row.get("completed")) and completed is None:
            result.warn(f"Tasks row {index} completed invalid; set to false.")
        if raw_project_id is not None and record["project_id"] is None:
            result.warn(f"Tasks row {index} project_id invalid; set to null.")
        record["_row"] = index
        normalized.append(record)
    return normalized


def normalize_sessions(rows: list[dict], result: ImportResult) -> list[dict]:
    normalized = []
    for index, row in enumerate(rows, start=1):
        raw_task_id = empty_to_null(row.get("task_id"))
        duration = parse_integer(row.get("duration_seconds"))
        record = {
            "id": parse_uuid(row.get("id")),
            "task_id": parse_uuid(raw_task_id),
            "started_at": parse_iso(row.get("started_at")),
            "ended_at": parse_iso(row.get("ended_at")),
            "music_url": empty_to_null(to_string_value(row.get("music_url"))),
            "pomodoro_phase": _parse_phase(row.get("pomodoro_phase")),
            "pomodoro_phase_started_at": parse_iso(empty_to_null(row.get("pomodoro_phase_started_at"))),
            "pomodoro_is_paused": parse_boolean(row.get("pomodoro_is_paused")) or False,
            "pomodoro_paused_at": parse_iso(empty_to_null(row.get("pomodoro_paused_at"))),
            "pomodoro_cycle_count": _non_negative(parse_integer(row.get("pomodoro_cycle_count"))),
        }
        if not record["id"] or not record["started_at"]:
            result.skipped["sessions"] += 1
            result.warn(f"Sessions row {index} skipped (invalid required fields).")
            continue
        if raw_task_id is not None and record["task_id"] is None:
            result.warn(f"Sessions row {index} task_id invalid; set to null.")
        if record["ended_at"] is None and duration is not None:
            record["ended_at"] = record["started_at"] + timedelta(seconds=duration)
            result.warn(f"Sessions row {index} ended_at synthesized.")
        if record["ended_at"] is None:
            result.skipped["sessions"] += 1
            result.warn(f"Sessions row {index} skipped (missing ended_at).")
            continue
        record["duration_seconds"] = _non_negative(duration)
        record["_row"] = index
        normalized.append(record)
    return normalized


def normalize_events(rows: list[dict], result: ImportResult) -> list[dict]:
    normalized = []
    for index, row in enumerate(rows, start=1):
        record = {
            "id": parse_uuid(row.get("id")),
            "session_id": parse_uuid(row.get("session_id")),
            "task_id": parse_uuid(row.get("task_id")),
            "event_type": to_string_value(row.get("event_type")),
            "pomodoro_cycle_count": parse_integer(row.get("pomodoro_cycle_count")),
            "occurred_at": parse_iso(row.get("occurred_at")),
        }
        if not all(record[key] for key in ("id", "session_id", "task_id", "event_type", "occurred_at")):
            result.skipped["events"] += 1
            result.warn(f"PomodoroEvents row {index} skipped (invalid required fields).")
            continue
        record["_row"] = index
        normalized.append(record)
    return normalized


def normalize_queue(rows: list[dict], result: ImportResult) -> list[dict]:
    normalized = []
    for index, row in enumerate(rows, start=1):
        record = {
            "task_id": parse_uuid(row.get("task_id")),
            "sort_order": parse_integer(row.get("sort_order")),
            "created_at": parse_iso(row.get("created_at")),
        }
        if not record["task_id"] or record["sort_order"] is None or not record["created_at"]:
            result.skipped["queue"] += 1
            result.warn(f"Queue row {index} skipped (invalid required fields).")
            continue
        normalized.append(record)
    return normalized


def normalize_settings(rows: list[dict], result: ImportResult) -> Optional[dict]:
    """The first settings row, or None when absent or unusable."""
    if not rows:
        return None
    row = rows[0]
    raw_default = empty_to_null(row.get("default_task_id"))
    record = {
        "timezone": to_string_value(row.get("timezone")) or None,
        "default_task_id": parse_uuid(raw_default),
        "created_at": parse_iso(row.get("created_at")),
        "updated_at": parse_iso(row.get("updated_at")),
        "pomodoro_v2_enabled": parse_boolean(row.get("pomodoro_v2_enabled")),
    }
    for name in POMODORO_FIELDS:
        record[name] = _in_limits(name, parse_integer(row.get(name)))
    if raw_default is not None and record["default_task_id"] is None:
        result.warn("Settings default_task_id invalid; set to null.")
    if record["created_at"] is None or record["updated_at"] is None:
        result.skipped["settings"] += 1
        result.warn("Settings row skipped (invalid timestamps).")
        return None
    return record


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_newer(incoming: datetime, existing: Optional[datetime]) -> bool:
    if existing is None:
        return True
    return parse_iso(incoming) > parse_iso(existing)


def _model_fields(record: dict) -> dict:
    return {key: value for key, value in record.items() if not key.startswith("_")}


# Merge ----------------------------------------------------------------------


class ImportService:
    def __init__(
        self,
        db: Session,
        user_id: str,
        config: Optional[ImportConfig] = None,
    ):
        self.db = db
        self.user_id = user_id
        self.config = config or ImportConfig()

    def run(self, mode: Optional[str], filename: Optional[str], content: bytes) -> ImportResult:
        """Validate and merge one upload.

        Raises:
            ImportParseError: The upload or its manifest is unusable.
            RpcError: A storage step failed; ``details.scope`` names it.
        """
        validate_mode(mode)
        if content is None or not filename:
            raise ImportParseError("invalid_file", "Missing file", {"expectedField": "file"})
        limit = self.config.max_upload_mb * 1024 * 1024
        if len(content) > limit:
            raise ImportParseError("file_too_large", "File is too large", {"max_bytes": limit})

        raw = parse_upload(filename, content)
        validate_manifest(raw.manifest)
        return self.merge(raw)

    def merge(self, raw: RawImportData) -> ImportResult:
        result = ImportResult()
        projects = normalize_projects(raw.rows("Projects"), result)
        tasks = normalize_tasks(raw.rows("Tasks"), result)
        sessions = normalize_sessions(raw.rows("Sessions"), result)
        events = normalize_events(raw.rows("PomodoroEvents"), result)
        queue = normalize_queue(raw.rows("Queue"), result)
        settings = normalize_settings(raw.rows("Settings"), result)

        self._merge_updatable(Project, "projects", "Projects", projects, result)
        self._resolve_task_projects(tasks, result)
        self._merge_updatable(Task, "tasks", "Tasks", tasks, result)
        self._resolve_session_tasks(sessions, result)
        self._insert_only(FocusSession, "sessions", "Sessions", sessions, result)
        self._filter_events(events, result)
        self._insert_only(PomodoroEvent, "events", "PomodoroEvents", events, result)
        self._replace_queue(queue, result)
        if settings is not None:
            self._merge_settings(settings, result)

        logger.info(f"Import for {self.user_id}: imported={result.imported} skipped={result.skipped}")
        return result

    # Steps ------------------------------------------------------------------

    def _existing(self, model, ids: list[str], scope: str, label: str) -> dict[str, Any]:
        """Stored rows among ``ids`` keyed by id, across all owners."""
        found = {}
        with self._step(scope, label):
            for batch in chunked(ids, self.config.chunk_size):
                for row in self.db.exec(select(model).where(model.id.in_(batch))).all():
                    found[row.id] = row
        return found

    def _merge_updatable(self, model, entity: str, sheet: str, records: list[dict], result: ImportResult) -> None:
        existing = self._existing(model, [r["id"] for r in records], f"import.{entity}.select", entity)
        inserts, updates = [], []
        for record in records:
            current = existing.get(record["id"])
            if current is None:
                inserts.append(record)
            elif current.user_id != self.user_id:
                result.skipped[entity] += 1
                result.warn(f"{sheet} row {record['_row']} skipped (id belongs to another account).")
            elif _is_newer(record["updated_at"], current.updated_at):
                updates.append((current, record))

        with self._step(f"import.{entity}.insert", entity):
            for batch in chunked(inserts, self.config.chunk_size):
                self.db.add_all(model(**_model_fields(record), user_id=self.user_id) for record in batch)
                self.db.commit()
                result.imported[entity] += len(batch)
        with self._step(f"import.{entity}.update", entity):
            for batch in chunked(updates, self.config.chunk_size):
                for current, record in batch:
                    for name, value in _model_fields(record).items():
                        setattr(current, name, value)
                    self.db.add(current)
                self.db.commit()
                result.imported[entity] += len(batch)

    def _insert_only(self, model, entity: str, sheet: str, records: list[dict], result: ImportResult) -> None:
        existing = self._existing(model, [r["id"] for r in records], f"import.{entity}.select", entity)
        inserts = []
        for record in records:
            current = existing.get(record["id"])
            if current is None:
                inserts.append(record)
            elif current.user_id != self.user_id:
                result.skipped[entity] += 1
                result.warn(f"{sheet} row {record['_row']} skipped (id belongs to another account).")

        with self._step(f"import.{entity}.insert", entity):
            for batch in chunked(inserts, self.config.chunk_size):
                self.db.add_all(model(**_model_fields(record), user_id=self.user_id) for record in batch)
                self.db.commit()
                result.imported[entity] += len(batch)

    def _owned_ids(self, model, ids: Iterable[str], scope: str, label: str) -> set[str]:
        ids = sorted(set(ids))
        owned = set()
        with self._step(scope, label):
            for batch in chunked(ids, self.config.chunk_size):
                statement = select(model.id).where(model.id.in_(batch), model.user_id == self.user_id)
                owned.update(self.db.exec(statement).all())
        return owned

    def _resolve_task_projects(self, tasks: list[dict], result: ImportResult) -> None:
        wanted = [t["project_id"] for t in tasks if t["project_id"]]
        owned = self._owned_ids(Project, wanted, "import.tasks.select", "tasks")
        for task in tasks:
            if task["project_id"] and task["project_id"] not in owned:
                result.warn(f"Tasks row {task['_row']} project_id not found; set to null.")
                task["project_id"] = None

    def _resolve_session_tasks(self, sessions: list[dict], result: ImportResult) -> None:
        wanted = [s["task_id"] for s in sessions if s["task_id"]]
        owned = self._owned_ids(Task, wanted, "import.sessions.select", "sessions")
        for session in sessions:
            if session["task_id"] and session["task_id"] not in owned:
                result.warn(f"Sessions row {session['_row']} task_id not found; set to null.")
                session["task_id"] = None

    def _filter_events(self, events: list[dict], result: ImportResult) -> None:
        sessions = self._owned_ids(FocusSession, [e["session_id"] for e in events], "import.events.select", "events")
        tasks = self._owned_ids(Task, [e["task_id"] for e in events], "import.events.select", "events")
        kept = []
        for event in events:
            if event["session_id"] in sessions and event["task_id"] in tasks:
                kept.append(event)
                continue
            result.skipped["events"] += 1
            result.warn(f"PomodoroEvents row {event['_row']} skipped (missing session or task).")
        events[:] = kept

    def _replace_queue(self, queue: list[dict], result: ImportResult) -> None:
        """Replace the whole queue with the surviving rows, repacked from 0."""
        owned = self._owned_ids(Task, [q["task_id"] for q in queue], "import.queue.select", "queue")
        surviving = [item for item in queue if item["task_id"] in owned]
        missing = len(queue) - len(surviving)
        if missing:
            result.warn("Queue items with missing tasks were skipped.")
            result.skipped["queue"] += missing

        # Keep the first occurrence of a task listed twice
        seen: set[str] = set()
        ordered = []
        for item in sorted(surviving, key=lambda q: (q["sort_order"], q["created_at"])):
            if item["task_id"] in seen:
                result.skipped["queue"] += 1
                continue
            seen.add(item["task_id"])
            ordered.append(item)
        if len(ordered) > QUEUE_LIMIT:
            result.warn(f"Queue truncated to {QUEUE_LIMIT} items.")
            result.skipped["queue"] += len(ordered) - QUEUE_LIMIT
            ordered = ordered[:QUEUE_LIMIT]

        with self._step("import.queue.delete", "queue"):
            statement = select(TaskQueueItem).where(TaskQueueItem.user_id == self.user_id)
            for item in self.db.exec(statement).all():
                self.db.delete(item)
            self.db.flush()
        with self._step("import.queue.insert", "queue"):
            self.db.add_all(
                TaskQueueItem(
                    user_id=self.user_id,
                    task_id=item["task_id"],
                    sort_order=position,
                    created_at=item["created_at"],
                )
                for position, item in enumerate(ordered)
            )
            self.db.commit()
            result.imported["queue"] += len(ordered)

    def _merge_settings(self, record: dict, result: ImportResult) -> None:
        with self._step("import.settings.select", "settings"):
            current = self.db.get(UserSettings, self.user_id)
        if current is not None:
            incoming, stored = parse_iso(record["updated_at"]), parse_iso(current.updated_at)
            if incoming == stored:
                return
            if incoming < stored:
                result.skipped["settings"] += 1
                return

        if record["default_task_id"]:
            owned = self._owned_ids(Task, [record["default_task_id"]], "import.settings.select", "settings")
            if record["default_task_id"] not in owned:
                result.warn("Settings default_task_id not found; set to null.")
                record["default_task_id"] = None

        with self._step("import.settings.upsert", "settings"):
            settings = current or UserSettings(user_id=self.user_id)
            for name, value in record.items():
                # Unusable numbers and flags keep the stored or default value
                if value is None and name not in ("default_task_id",):
                    continue
                setattr(settings, name, value)
            self.db.add(settings)
            self.db.commit()
            result.imported["settings"] += 1

    def _step(self, scope: str, label: str) -> "_ImportStep":
        return _ImportStep(self, scope, label)


class _ImportStep:
    """Turns storage failures inside one import step into ``RpcError``."""

    def __init__(self, service: ImportService, scope: str, label: str):
        self.service = service
        self.scope = scope
        self.label = label

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is None or not isinstance(exc, SQLAlchemyError):
            return False
        self.service.db.rollback()
        mapped = log_service_error(self.scope, exc, user_id=self.service.user_id)
        details = {"scope": self.scope, **mapped.meta}
        raise RpcError(f"Failed to import {self.label}", details=details) from exc
