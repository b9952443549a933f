"""Two-way sync between local projects/tasks and a Notion database.

One Notion database holds both kinds of rows, told apart by the ``Type``
select. Local ids travel in the ``App ID`` property so either side can
find its counterpart again.

A run has two phases per entity, projects first so task project names can
resolve against them:

* pull: Notion pages whose App ID matches no local row become local rows;
* reconcile: every local row (freshly pulled ones included) is matched to
  its page and the newer side wins. Notion only wins when the page was
  edited after the mapping's ``last_pulled_at``.

A failure on one row is counted and the run carries on; any such failure
marks the whole run as errored.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlmodel import Session, select

from config import NotionConfig
from models import (
    NotionConnection,
    NotionProjectMap,
    NotionSyncStatus,
    NotionTaskMap,
    Project,
    Task,
)
from services.clock import parse_iso, to_iso, to_ms, utc_now
from services.error_handler import ExternalApiError, InvalidInputError, log_service_error
from services.notion_client import NotionApiError, NotionClient
from services.realtime import ChangeFeed, ChangeType, row_snapshot
from services.validation import (
    UUID_PATTERN,
    is_uuid,
    normalize_lookup,
    normalize_notion_database_id,
    normalize_project_name,
    normalize_task_title,
    validate_notion_token,
)
from services.worker_pool import run_with_concurrency

logger = logging.getLogger(__name__)

NAME = "Name"
TYPE = "Type"
COMPLETED = "Completed"
PROJECT = "Project"
ARCHIVED = "Archived"
APP_ID = "App ID"

TYPE_OPTIONS = ("Project", "Task")
LAST_ERROR_MAX = 500

NOT_CONNECTED_MESSAGE = "Connect Notion first."
INVALID_CONNECTION_MESSAGE = "Notion connection is invalid. Please reconnect."
PARTIAL_FAILURE_MESSAGE = "Notion sync completed with errors. Please try again."


class NotionSyncError(ExternalApiError):
    code = "notion_sync_failed"
    default_message = "Notion sync failed. Please try again."


@dataclass
class NotionSyncSummary:
    created_projects: int = 0
    created_tasks: int = 0
    updated_projects: int = 0
    updated_tasks: int = 0
    pulled_projects: int = 0
    pulled_tasks: int = 0
    archived_projects: int = 0
    restored_projects: int = 0
    archived_tasks: int = 0
    restored_tasks: int = 0
    warnings: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class NotionProjectRecord:
    page_id: str
    app_id: Optional[str]
    name: str
    archived: bool
    last_edited_at: Optional[str]


@dataclass
class NotionTaskRecord:
    page_id: str
    app_id: Optional[str]
    title: str
    completed: bool
    project_name: str
    archived: bool
    last_edited_at: Optional[str]


@dataclass
class NotionConnectionSummary:
    connected: bool
    last_synced_at: Optional[str] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None


# Schema -------------------------------------------------------------------


def validate_database_schema(database: dict) -> Optional[str]:
    """Message listing missing or mistyped properties, or None if valid."""
    properties = database.get("properties") or {}
    missing = []

    def has(name: str, kind: str) -> bool:
        prop = properties.get(name)
        return isinstance(prop, dict) and prop.get("type") == kind

    if not has(NAME, "title"):
        missing.append("Name (Title)")
    if not has(TYPE, "select"):
        missing.append("Type (Select)")
    else:
        options = (properties[TYPE].get("select") or {}).get("options") or []
        names = {option.get("name") for option in options if isinstance(option, dict)}
        if any(option not in names for option in TYPE_OPTIONS):
            missing.append("Type options (Project, Task)")
    if not has(COMPLETED, "checkbox"):
        missing.append("Completed (Checkbox)")
    if not has(PROJECT, "rich_text"):
        missing.append("Project (Rich text)")
    if not has(ARCHIVED, "checkbox"):
        missing.append("Archived (Checkbox)")
    if not has(APP_ID, "rich_text"):
        missing.append("App ID (Rich text)")

    if not missing:
        return None
    return f"Notion database is missing required properties: {', '.join(missing)}."


# Page parsing -------------------------------------------------------------


def _property(properties: Optional[dict], key: str, kind: str) -> Optional[dict]:
    if not isinstance(properties, dict):
        return None
    prop = properties.get(key)
    if not isinstance(prop, dict) or prop.get("type") != kind:
        return None
    return prop


def _read_text(properties: Optional[dict], key: str, kind: str) -> str:
    prop = _property(properties, key, kind)
    if prop is None:
        return ""
    parts = []
    for item in prop.get(kind) or []:
        if not isinstance(item, dict):
            continue
        text = item.get("plain_text")
        if text is None:
            text = (item.get("text") or {}).get("content")
        parts.append(text or "")
    return "".join(parts).strip()


def _read_checkbox(properties: Optional[dict], key: str) -> bool:
    prop = _property(properties, key, "checkbox")
    return bool(prop and prop.get("checkbox"))


def _read_app_id(properties: Optional[dict]) -> Optional[str]:
    value = _read_text(properties, APP_ID, "rich_text")
    if not value:
        return None
    return value.lower() if UUID_PATTERN.match(value) else value


def parse_project_page(page: dict) -> NotionProjectRecord:
    properties = page.get("properties")
    return NotionProjectRecord(
        page_id=page["id"],
        app_id=_read_app_id(properties),
        name=_read_text(properties, NAME, "title"),
        archived=_read_checkbox(properties, ARCHIVED),
        last_edited_at=page.get("last_edited_time"),
    )


def parse_task_page(page: dict) -> NotionTaskRecord:
    properties = page.get("properties")
    return NotionTaskRecord(
        page_id=page["id"],
        app_id=_read_app_id(properties),
        title=_read_text(properties, NAME, "title"),
        completed=_read_checkbox(properties, COMPLETED),
        project_name=_read_text(properties, PROJECT, "rich_text"),
        archived=_read_checkbox(properties, ARCHIVED),
        last_edited_at=page.get("last_edited_time"),
    )


# Property builders --------------------------------------------------------


def _rich_text(content: str) -> list[dict]:
    return [{"text": {"content": content}}] if content else []


def build_app_id_properties(app_id: str) -> dict:
    return {APP_ID: {"rich_text": _rich_text(app_id)}}


def build_project_properties(project: Project) -> dict:
    return {
        NAME: {"title": [{"text": {"content": project.name}}]},
        TYPE: {"select": {"name": "Project"}},
        COMPLETED: {"checkbox": False},
        PROJECT: {"rich_text": _rich_text(project.name)},
        ARCHIVED: {"checkbox": project.archived_at is not None},
        APP_ID: {"rich_text": _rich_text(project.id)},
    }


def build_task_properties(task: Task, project_name: str) -> dict:
    return {
        NAME: {"title": [{"text": {"content": task.title}}]},
        TYPE: {"select": {"name": "Task"}},
        COMPLETED: {"checkbox": bool(task.completed)},
        PROJECT: {"rich_text": _rich_text(project_name)},
        ARCHIVED: {"checkbox": task.archived_at is not None},
        APP_ID: {"rich_text": _rich_text(task.id)},
    }


# Error messages -----------------------------------------------------------


def map_notion_error(error: BaseException) -> str:
    """User-facing message for a failure that aborted the whole run."""
    if isinstance(error, NotionApiError) and error.status is not None:
        if error.status in (401, 403):
            return "Notion token is invalid or lacks access to the database."
        if error.status == 404:
            return "Notion database was not found."
        if error.status == 429:
            return "Notion rate limit exceeded. Please try again."
        if error.status >= 500:
            return "Notion API is unavailable. Please try again."
    return "Notion sync failed. Please try again."


def to_item_error_message(error: BaseException) -> str:
    """Short message for a failure on a single page or row."""
    if isinstance(error, NotionApiError) and error.status is not None:
        if error.status == 404:
            return "Notion page not found."
        if error.status in (401, 403):
            return "Notion authorization failed."
        if error.status == 429:
            return "Notion rate limit exceeded."
        if error.status >= 500:
            return "Notion API error."
    return "Unexpected sync error."


def _timestamp_ms(value: Any) -> Optional[float]:
    return to_ms(parse_iso(value))


# Engine -------------------------------------------------------------------


class NotionSyncEngine:
    """One sync run for one owner against one Notion database."""

    def __init__(
        self,
        db: Session,
        user_id: str,
        client: NotionClient,
        database_id: str,
        concurrency: int = 3,
        feed: Optional[ChangeFeed] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.user_id = user_id
        self.client = client
        self.database_id = database_id
        self.concurrency = concurrency
        self.feed = feed
        self.now = now
        self.summary = NotionSyncSummary()
        self.errors: list[str] = []
        self._projects: dict[str, Project] = {}
        self._tasks: dict[str, Task] = {}
        self._active_project_names: dict[str, str] = {}

    async def run(self) -> NotionSyncSummary:
        """Validate the database schema, then pull and reconcile.

        Raises ``NotionSyncError`` when the schema is invalid; nothing is
        written in that case. ``NotionApiError`` from the initial reads
        propagates to the caller.
        """
        database = await self.client.get_database(self.database_id)
        schema_error = validate_database_schema(database)
        if schema_error:
            raise NotionSyncError(schema_error, code="notion_schema_invalid")

        self._load_local()
        project_pages = await self.client.query_database(
            self.database_id, {"property": TYPE, "select": {"equals": "Project"}}
        )
        task_pages = await self.client.query_database(
            self.database_id, {"property": TYPE, "select": {"equals": "Task"}}
        )
        notion_projects = [parse_project_page(page) for page in project_pages]
        notion_tasks = [parse_task_page(page) for page in task_pages]
        projects_by_page = {record.page_id: record for record in notion_projects}
        projects_by_app_id = {record.app_id: record for record in notion_projects if record.app_id}
        tasks_by_page = {record.page_id: record for record in notion_tasks}
        tasks_by_app_id = {record.app_id: record for record in notion_tasks if record.app_id}

        await self._each(notion_projects, self._pull_project)
        await self._each(
            list(self._projects.values()),
            lambda project: self._reconcile_project(project, projects_by_page, projects_by_app_id),
        )
        await self._each(notion_tasks, self._pull_task)
        await self._each(
            list(self._tasks.values()),
            lambda task: self._reconcile_task(task, tasks_by_page, tasks_by_app_id),
        )

        logger.info(f"Notion sync for {self.user_id}: {self.summary.to_dict()}")
        return self.summary

    async def _each(self, items: list, worker) -> None:
        async def guarded(item):
            try:
                return await worker(item)
            except Exception:
                self.db.rollback()
                raise

        result = await run_with_concurrency(items, self.concurrency, guarded)
        for outcome in result.failures:
            self.summary.errors += 1
            self.errors.append(to_item_error_message(outcome.error))
            log_service_error("notion.sync.item", outcome.error, user_id=self.user_id)

    def _load_local(self) -> None:
        projects = self.db.exec(select(Project).where(Project.user_id == self.user_id)).all()
        tasks = self.db.exec(select(Task).where(Task.user_id == self.user_id)).all()
        self._projects = {project.id: project for project in projects}
        self._tasks = {task.id: task for task in tasks}
        self._active_project_names = {
            normalize_lookup(project.name): project.id
            for project in projects
            if project.archived_at is None
        }

    # Projects ---------------------------------------------------------------

    async def _pull_project(self, record: NotionProjectRecord) -> None:
        if record.app_id and record.app_id in self._projects:
            return

        now = self.now()
        project = Project(
            user_id=self.user_id,
            name=normalize_project_name(record.name),
            archived_at=now if record.archived else None,
            created_at=now,
            updated_at=now,
        )
        reusable = self._reusable_id(Project, record.app_id)
        if reusable:
            project.id = reusable
        self.db.add(project)
        self.db.commit()
        self.db.refresh(project)

        self.summary.pulled_projects += 1
        self._projects[project.id] = project
        if project.archived_at is None:
            self._active_project_names[normalize_lookup(project.name)] = project.id

        if record.app_id != project.id:
            await self.client.update_page(record.page_id, build_app_id_properties(project.id))
        self._upsert_mapping(NotionProjectMap, project.id, record.page_id, self.now())

    async def _reconcile_project(self, project: Project, by_page: dict, by_app_id: dict) -> None:
        mapping = self._mapping(NotionProjectMap, project.id)
        record = await self._resolve_record(
            NotionProjectMap, project.id, mapping, by_page, by_app_id, parse_project_page
        )
        if record is None:
            page = await self.client.create_page(self.database_id, build_project_properties(project))
            self.summary.created_projects += 1
            self._upsert_mapping(NotionProjectMap, project.id, page["id"], None)
            return

        mapping = self._mapping(NotionProjectMap, project.id)
        notion_newer, app_newer = self._compare(project.updated_at, record.last_edited_at, mapping)

        if notion_newer:
            name = normalize_project_name(record.name)
            was_archived = project.archived_at is not None
            if normalize_lookup(project.name) == normalize_lookup(name) and was_archived == record.archived:
                return
            if not was_archived:
                self._active_project_names.pop(normalize_lookup(project.name), None)
            project.name = name
            project.archived_at = (project.archived_at or self.now()) if record.archived else None
            project.updated_at = self.now()
            self.db.add(project)
            self.db.commit()
            self.db.refresh(project)

            self.summary.pulled_projects += 1
            if not was_archived and record.archived:
                self.summary.archived_projects += 1
            if was_archived and not record.archived:
                self.summary.restored_projects += 1
            if project.archived_at is None:
                self._active_project_names[normalize_lookup(project.name)] = project.id
            self._set_last_pulled(NotionProjectMap, project.id)
            return

        if app_newer:
            differs = (
                normalize_lookup(project.name) != normalize_lookup(record.name)
                or (project.archived_at is not None) != record.archived
            )
            if differs:
                await self.client.update_page(record.page_id, build_project_properties(project))
                self.summary.updated_projects += 1

    # Tasks ------------------------------------------------------------------

    async def _pull_task(self, record: NotionTaskRecord) -> None:
        if record.app_id and record.app_id in self._tasks:
            return

        project_id = self._resolve_project(record.project_name)
        now = self.now()
        task = Task(
            user_id=self.user_id,
            title=normalize_task_title(record.title),
            completed=record.completed,
            completed_at=now if record.completed else None,
            project_id=project_id,
            archived_at=now if record.archived else None,
            created_at=now,
            updated_at=now,
        )
        reusable = self._reusable_id(Task, record.app_id)
        if reusable:
            task.id = reusable
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)

        self.summary.pulled_tasks += 1
        self._tasks[task.id] = task
        self._publish(ChangeType.insert, task)

        if record.app_id != task.id:
            await self.client.update_page(record.page_id, build_app_id_properties(task.id))
        self._upsert_mapping(NotionTaskMap, task.id, record.page_id, self.now())

    async def _reconcile_task(self, task: Task, by_page: dict, by_app_id: dict) -> None:
        mapping = self._mapping(NotionTaskMap, task.id)
        record = await self._resolve_record(NotionTaskMap, task.id, mapping, by_page, by_app_id, parse_task_page)
        if record is None:
            page = await self.client.create_page(
                self.database_id, build_task_properties(task, self._project_name(task))
            )
            self.summary.created_tasks += 1
            self._upsert_mapping(NotionTaskMap, task.id, page["id"], None)
            return

        mapping = self._mapping(NotionTaskMap, task.id)
        notion_newer, app_newer = self._compare(task.updated_at, record.last_edited_at, mapping)

        if notion_newer:
            title = normalize_task_title(record.title)
            project_id = self._resolve_project(record.project_name)
            was_archived = task.archived_at is not None
            differs = (
                normalize_lookup(task.title) != normalize_lookup(title)
                or task.completed != record.completed
                or task.project_id != project_id
                or was_archived != record.archived
            )
            if not differs:
                return
            before = row_snapshot(task)
            if task.completed != record.completed:
                task.completed_at = self.now() if record.completed else None
            task.title = title
            task.completed = record.completed
            task.project_id = project_id
            task.archived_at = (task.archived_at or self.now()) if record.archived else None
            task.updated_at = self.now()
            self.db.add(task)
            self.db.commit()
            self.db.refresh(task)

            self.summary.pulled_tasks += 1
            if not was_archived and record.archived:
                self.summary.archived_tasks += 1
            if was_archived and not record.archived:
                self.summary.restored_tasks += 1
            self._publish(ChangeType.update, task, before)
            self._set_last_pulled(NotionTaskMap, task.id)
            return

        if app_newer:
            project_name = self._project_name(task)
            differs = (
                normalize_lookup(task.title) != normalize_lookup(record.title)
                or task.completed != record.completed
                or (task.archived_at is not None) != record.archived
                or normalize_lookup(project_name) != normalize_lookup(record.project_name)
            )
            if differs:
                await self.client.update_page(record.page_id, build_task_properties(task, project_name))
                self.summary.updated_tasks += 1

    def _resolve_project(self, project_name: str) -> Optional[str]:
        """Active project id for a Notion project name; warns when unknown."""
        if not project_name.strip():
            return None
        project_id = self._active_project_names.get(normalize_lookup(project_name))
        if project_id is None:
            self.summary.warnings += 1
        return project_id

    def _project_name(self, task: Task) -> str:
        project = self._projects.get(task.project_id) if task.project_id else None
        return project.name if project else ""

    # Shared -----------------------------------------------------------------

    async def _resolve_record(self, map_model, entity_id: str, mapping, by_page: dict, by_app_id: dict, parse):
        """Find the page for a local row: mapping, then App ID index, then a query."""
        record = by_page.get(mapping.notion_page_id) if mapping else None
        if record is None:
            record = by_app_id.get(entity_id)
            if record is not None and (mapping is None or mapping.notion_page_id != record.page_id):
                self._upsert_mapping(map_model, entity_id, record.page_id, mapping.last_pulled_at if mapping else None)
        if record is None:
            page = await self.client.query_database_by_app_id(self.database_id, entity_id)
            if page is not None:
                record = parse(page)
                self._upsert_mapping(map_model, entity_id, record.page_id, mapping.last_pulled_at if mapping else None)
        return record

    @staticmethod
    def _compare(app_updated_at: datetime, notion_edited_at: Optional[str], mapping) -> tuple[bool, bool]:
        """(notion wins, app wins) for one row; equal timestamps favour neither."""
        app_ms = to_ms(app_updated_at) or 0
        notion_ms = _timestamp_ms(notion_edited_at) or 0
        pulled_ms = to_ms(mapping.last_pulled_at) if mapping and mapping.last_pulled_at else None
        eligible = pulled_ms is None or notion_ms > pulled_ms
        return eligible and notion_ms > app_ms, app_ms > notion_ms

    def _reusable_id(self, model, app_id: Optional[str]) -> Optional[str]:
        if not app_id or not is_uuid(app_id):
            return None
        candidate = app_id.strip().lower()
        if self.db.get(model, candidate) is not None:
            logger.warning(f"Notion App ID {candidate} is already taken; assigning a new id")
            return None
        return candidate

    def _mapping(self, map_model, entity_id: str):
        mapping = self.db.get(map_model, entity_id)
        if mapping is None or mapping.user_id != self.user_id:
            return None
        return mapping

    def _upsert_mapping(self, map_model, entity_id: str, page_id: str, last_pulled_at: Optional[datetime]) -> None:
        mapping = self.db.get(map_model, entity_id)
        if mapping is None:
            key = "project_id" if map_model is NotionProjectMap else "task_id"
            mapping = map_model(**{key: entity_id}, user_id=self.user_id, notion_page_id=page_id)
        mapping.notion_page_id = page_id
        mapping.last_pulled_at = last_pulled_at
        self.db.add(mapping)
        self.db.commit()

    def _set_last_pulled(self, map_model, entity_id: str) -> None:
        mapping = self._mapping(map_model, entity_id)
        if mapping is not None:
            mapping.last_pulled_at = self.now()
            self.db.add(mapping)
            self.db.commit()

    def _publish(self, change: ChangeType, task: Task, before: Optional[dict] = None) -> None:
        if self.feed is not None:
            self.feed.publish_row("tasks", change, self.user_id, new=task, old=before)


# Connection ---------------------------------------------------------------


class NotionConnectionService:
    def __init__(self, db: Session, user_id: str, now: Callable[[], datetime] = utc_now):
        self.db = db
        self.user_id = user_id
        self.now = now

    def load(self) -> Optional[NotionConnection]:
        return self.db.get(NotionConnection, self.user_id)

    def get(self) -> NotionConnectionSummary:
        return self._summary(self.load())

    def connect(self, token: str, database_id: str) -> NotionConnectionSummary:
        """Store credentials; reconnecting resets the last sync status."""
        try:
            token = validate_notion_token(token)
            database_id = normalize_notion_database_id(database_id)
        except ValueError as e:
            raise InvalidInputError(str(e)) from e

        connection = self.load() or NotionConnection(
            user_id=self.user_id, notion_token=token, notion_database_id=database_id
        )
        connection.notion_token = token
        connection.notion_database_id = database_id
        connection.last_status = NotionSyncStatus.idle
        connection.last_error = None
        connection.last_synced_at = None
        connection.updated_at = self.now()
        self.db.add(connection)
        self.db.commit()
        self.db.refresh(connection)
        logger.info(f"Notion connected for {self.user_id} (database {database_id})")
        return self._summary(connection)

    def disconnect(self) -> NotionConnectionSummary:
        """Drop the connection and every page mapping."""
        connection = self.load()
        if connection is not None:
            self.db.delete(connection)
        for model in (NotionTaskMap, NotionProjectMap):
            for mapping in self.db.exec(select(model).where(model.user_id == self.user_id)).all():
                self.db.delete(mapping)
        self.db.commit()
        logger.info(f"Notion disconnected for {self.user_id}")
        return NotionConnectionSummary(connected=False)

    def mark_success(self) -> None:
        connection = self.load()
        if connection is None:
            return
        connection.last_synced_at = self.now()
        connection.last_status = NotionSyncStatus.success
        connection.last_error = None
        connection.updated_at = self.now()
        self.db.add(connection)
        self.db.commit()

    def mark_error(self, message: str) -> None:
        connection = self.load()
        if connection is None:
            return
        connection.last_status = NotionSyncStatus.error
        connection.last_error = message.strip()[:LAST_ERROR_MAX] or "Notion sync failed."
        connection.updated_at = self.now()
        self.db.add(connection)
        self.db.commit()

    @staticmethod
    def _summary(connection: Optional[NotionConnection]) -> NotionConnectionSummary:
        if connection is None:
            return NotionConnectionSummary(connected=False)
        status = NotionSyncStatus(connection.last_status)
        return NotionConnectionSummary(
            connected=True,
            last_synced_at=to_iso(connection.last_synced_at),
            last_status=None if status is NotionSyncStatus.idle else status.value,
            last_error=connection.last_error,
        )


ClientFactory = Callable[[str], NotionClient]


async def sync_notion_now(
    db: Session,
    user_id: str,
    config: Optional[NotionConfig] = None,
    client_factory: Optional[ClientFactory] = None,
    feed: Optional[ChangeFeed] = None,
) -> NotionSyncSummary:
    """Run a sync for ``user_id`` and record the outcome on the connection.

    Raises:
        InvalidInputError: No connection is stored.
        NotionSyncError: The run failed or finished with row errors.
    """
    config = config or NotionConfig()
    connections = NotionConnectionService(db, user_id)
    connection = connections.load()
    if connection is None:
        raise InvalidInputError(NOT_CONNECTED_MESSAGE, code="notion_not_connected")

    try:
        token = validate_notion_token(connection.notion_token)
        database_id = normalize_notion_database_id(connection.notion_database_id)
    except ValueError as e:
        connections.mark_error(INVALID_CONNECTION_MESSAGE)
        raise NotionSyncError(INVALID_CONNECTION_MESSAGE, code="notion_connection_invalid") from e

    factory = client_factory or (lambda value: NotionClient(value, config=config))
    client = factory(token)
    engine = NotionSyncEngine(db, user_id, client, database_id, concurrency=config.concurrency, feed=feed)
    try:
        summary = await engine.run()
    except NotionSyncError as e:
        connections.mark_error(e.message)
        raise
    except Exception as e:
        db.rollback()
        message = map_notion_error(e)
        connections.mark_error(message)
        log_service_error("notion.sync", e, user_id=user_id)
        raise NotionSyncError(message) from e
    finally:
        await client.aclose()

    if engine.errors:
        connections.mark_error(PARTIAL_FAILURE_MESSAGE)
        raise NotionSyncError(
            PARTIAL_FAILURE_MESSAGE,
            code="notion_sync_partial",
            details={"summary": summary.to_dict(), "errors": engine.errors},
        )

    connections.mark_success()
    return summary
