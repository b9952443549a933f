"""Tests for data export and the merge importer."""

import csv
import io
import json
import re
import uuid
import zipfile
from datetime import datetime, timedelta, timezone

import pytest
from openpyxl import Workbook, load_workbook
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, Session, create_engine, select
from sqlmodel.pool import StaticPool

from config import ImportConfig
from models import FocusSession, PomodoroEvent, PomodoroPhase, Project, Task, TaskQueueItem, UserSettings
from services.error_handler import InvalidInputError, RpcError
from services.export import EXPORT_HEADERS, EXPORT_SHEETS, export_user_data, resolve_format
from services.import_parse import TABLE_SHEETS, ImportParseError
from services.importer import ImportService

from conftest import OTHER_USER_ID, USER_ID

T1 = "2026-01-05T08:00:00Z"
T2 = "2026-01-06T08:00:00Z"
MANIFEST = {"schema_version": "1", "app": "doittimer"}


def new_id() -> str:
    return str(uuid.uuid4())


def at(value: str) -> datetime:
    return datetime.fromisoformat(value)


def make_archive(tables=None, manifest=MANIFEST, omit=(), headers=None) -> bytes:
    """Zip laid out like an export, built from plain row dicts."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        if manifest is not None:
            archive.writestr("manifest.json", json.dumps(manifest))
        for name in TABLE_SHEETS:
            if name in omit:
                continue
            text = io.StringIO()
            fieldnames = (headers or {}).get(name, EXPORT_HEADERS[name])
            writer = csv.DictWriter(text, fieldnames=fieldnames, restval="")
            writer.writeheader()
            writer.writerows((tables or {}).get(name, []))
            archive.writestr(f"{name}.csv", text.getvalue())
    return buffer.getvalue()


def run_import(db, content: bytes, filename: str = "backup.zip", user_id: str = USER_ID):
    return ImportService(db, user_id).run("merge", filename, content).to_dict()


@pytest.fixture
def fresh_db():
    """A second, empty database to import into."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def populated(db):
    """One of everything for ``USER_ID`` plus noise from another owner."""
    started = at(T1)
    project = Project(user_id=USER_ID, name="Home", created_at=started, updated_at=started)
    db.add(project)
    db.commit()
    task = Task(
        user_id=USER_ID,
        title="Water plants",
        completed=True,
        completed_at=started,
        project_id=project.id,
        pomodoro_work_minutes=30,
        created_at=started,
        updated_at=started,
    )
    db.add(task)
    db.commit()
    session = FocusSession(
        user_id=USER_ID,
        task_id=task.id,
        started_at=started,
        ended_at=started + timedelta(minutes=25),
        duration_seconds=1500,
        pomodoro_phase=PomodoroPhase.work,
        pomodoro_cycle_count=1,
    )
    db.add(session)
    db.add(FocusSession(user_id=USER_ID, started_at=started + timedelta(hours=1)))
    db.commit()
    db.add(
        PomodoroEvent(
            user_id=USER_ID,
            session_id=session.id,
            task_id=task.id,
            event_type="phase_completed",
            pomodoro_cycle_count=1,
            occurred_at=started + timedelta(minutes=25),
        )
    )
    db.add(TaskQueueItem(user_id=USER_ID, task_id=task.id, sort_order=0, created_at=started))
    db.add(UserSettings(user_id=USER_ID, timezone="Europe/Paris", created_at=started, updated_at=started))
    db.add(Task(user_id=OTHER_USER_ID, title="Not mine"))
    db.commit()
    return {"project": project, "task": task, "session": session}


class TestExport:
    def test_resolve_format(self):
        assert resolve_format("XLSX") == "xlsx"
        assert resolve_format(" archive ") == "zip"
        with pytest.raises(InvalidInputError) as exc_info:
            resolve_format("pdf")
        assert exc_info.value.message == "Invalid format"

    def test_workbook_layout(self, db, populated):
        content, filename, media_type = export_user_data(db, USER_ID, "xlsx")

        assert re.fullmatch(r"doittimer-export-\d{4}-\d{2}-\d{2}\.xlsx", filename)
        assert media_type.endswith("spreadsheetml.sheet")
        workbook = load_workbook(io.BytesIO(content))
        assert workbook.sheetnames == list(EXPORT_SHEETS)
        assert workbook.active.title == "Tasks"
        for name in EXPORT_SHEETS:
            header = [cell.value for cell in workbook[name][1]]
            assert header == list(EXPORT_HEADERS[name])

        manifest = {row[0]: row[1] for row in workbook["Manifest"].iter_rows(min_row=2, values_only=True)}
        assert manifest["schema_version"] == "1"
        assert manifest["app"] == "doittimer"
        assert manifest["tasks_count"] == "1"
        # The running session is left out
        assert manifest["sessions_count"] == "1"
        assert manifest["settings_present"] == "1"

    def test_workbook_rows(self, db, populated):
        content, _, _ = export_user_data(db, USER_ID, "xlsx")
        workbook = load_workbook(io.BytesIO(content))
        rows = list(workbook["Tasks"].iter_rows(min_row=2, values_only=True))
        assert len(rows) == 1
        task = dict(zip(EXPORT_HEADERS["Tasks"], rows[0]))
        assert task["id"] == populated["task"].id
        assert task["completed"] is True
        assert task["project_id"] == populated["project"].id
        assert task["pomodoro_work_minutes"] == 30
        assert task["created_at"] == "2026-01-05T08:00:00Z"

    def test_archive_layout(self, db, populated):
        content, filename, media_type = export_user_data(db, USER_ID, "zip")

        assert filename.endswith(".zip")
        assert media_type == "application/zip"
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            names = set(archive.namelist())
            manifest = json.loads(archive.read("manifest.json"))
            tasks_csv = archive.read("Tasks.csv").decode("utf-8")
        assert names == {"manifest.json"} | {f"{name}.csv" for name in TABLE_SHEETS}
        assert manifest["projects_count"] == "1"
        row = next(csv.DictReader(io.StringIO(tasks_csv)))
        assert row["completed"] == "true"
        assert row["pomodoro_short_break_minutes"] == ""

    def test_empty_account(self, db):
        content, _, _ = export_user_data(db, USER_ID, "zip")
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            manifest = json.loads(archive.read("manifest.json"))
            settings_csv = archive.read("Settings.csv").decode("utf-8")
        assert manifest["settings_present"] == "0"
        assert settings_csv.strip() == ",".join(EXPORT_HEADERS["Settings"])


class TestRoundTrip:
    @pytest.mark.parametrize("fmt", ["xlsx", "zip"])
    def test_export_imports_cleanly(self, db, populated, fresh_db, fmt):
        content, filename, _ = export_user_data(db, USER_ID, fmt)

        result = run_import(fresh_db, content, filename)

        assert result["success"] is True
        assert result["imported"] == {
            "projects": 1,
            "tasks": 1,
            "sessions": 1,
            "events": 1,
            "queue": 1,
            "settings": 1,
        }
        assert result["warnings"] == []
        task = fresh_db.get(Task, populated["task"].id)
        assert task.project_id == populated["project"].id
        assert task.completed is True
        assert fresh_db.get(UserSettings, USER_ID).timezone == "Europe/Paris"

    def test_reimport_is_idempotent(self, db, populated):
        content, filename, _ = export_user_data(db, USER_ID, "zip")

        result = run_import(db, content, filename)

        assert result["imported"]["projects"] == 0
        assert result["imported"]["tasks"] == 0
        assert result["imported"]["sessions"] == 0
        assert result["imported"]["events"] == 0
        assert result["imported"]["settings"] == 0
        assert result["skipped"]["tasks"] == 0
        assert len(db.exec(select(Task).where(Task.user_id == USER_ID)).all()) == 1


class TestMerge:
    def test_imports_every_entity(self, db):
        project_id, task_id, session_id = new_id(), new_id(), new_id()
        tables = {
            "Projects": [{"id": project_id, "name": "Home", "created_at": T1, "updated_at": T1}],
            "Tasks": [
                {
                    "id": task_id,
                    "title": "Water",
                    "completed": "false",
                    "project_id": project_id,
                    "created_at": T1,
                    "updated_at": T1,
                    "pomodoro_work_minutes": "30",
                    "pomodoro_long_break_every": "99",
                }
            ],
            "Sessions": [
                {
                    "id": session_id,
                    "task_id": task_id,
                    "started_at": T1,
                    "ended_at": T2,
                    "duration_seconds": "1500",
                    "pomodoro_phase": "work",
                    "pomodoro_is_paused": "false",
                    "pomodoro_cycle_count": "1",
                }
            ],
            "PomodoroEvents": [
                {
                    "id": new_id(),
                    "session_id": session_id,
                    "task_id": task_id,
                    "event_type": "phase_completed",
                    "pomodoro_cycle_count": "1",
                    "occurred_at": T2,
                }
            ],
            "Queue": [{"task_id": task_id, "sort_order": "3", "created_at": T1}],
            "Settings": [
                {
                    "timezone": "Asia/Tokyo",
                    "default_task_id": task_id,
                    "created_at": T1,
                    "updated_at": T1,
                    "pomodoro_work_minutes": "50",
                    "pomodoro_v2_enabled": "true",
                }
            ],
        }

        result = run_import(db, make_archive(tables))

        assert all(count == 1 for count in result["imported"].values())
        task = db.get(Task, task_id)
        assert task.user_id == USER_ID
        assert task.pomodoro_work_minutes == 30
        assert task.pomodoro_long_break_every is None
        assert db.get(FocusSession, session_id).pomodoro_phase == PomodoroPhase.work
        queue = db.exec(select(TaskQueueItem).where(TaskQueueItem.user_id == USER_ID)).all()
        assert [item.sort_order for item in queue] == [0]
        settings = db.get(UserSettings, USER_ID)
        assert settings.timezone == "Asia/Tokyo"
        assert settings.default_task_id == task_id
        assert settings.pomodoro_work_minutes == 50
        assert settings.pomodoro_short_break_minutes == 5
        assert settings.pomodoro_v2_enabled is True

    def test_newer_rows_update_older_rows_stay(self, db):
        stale = Task(user_id=USER_ID, title="Stale", created_at=at(T1), updated_at=at(T1))
        fresh = Task(user_id=USER_ID, title="Fresh", created_at=at(T1), updated_at=at(T2))
        db.add(stale)
        db.add(fresh)
        db.commit()
        rows = [
            {"id": stale.id, "title": "Replaced", "created_at": T1, "updated_at": T2},
            {"id": fresh.id, "title": "Older copy", "created_at": T1, "updated_at": T1},
        ]

        result = run_import(db, make_archive({"Tasks": rows}))

        assert result["imported"]["tasks"] == 1
        assert result["skipped"]["tasks"] == 0
        assert db.get(Task, stale.id).title == "Replaced"
        assert db.get(Task, fresh.id).title == "Fresh"

    def test_ids_owned_by_another_account_are_skipped(self, db):
        foreign = Project(user_id=OTHER_USER_ID, name="Theirs")
        db.add(foreign)
        db.commit()
        task_id = new_id()
        tables = {
            "Projects": [{"id": foreign.id, "name": "Mine now", "created_at": T1, "updated_at": T2}],
            "Tasks": [{"id": task_id, "title": "T", "project_id": foreign.id, "created_at": T1, "updated_at": T1}],
        }

        result = run_import(db, make_archive(tables))

        assert result["skipped"]["projects"] == 1
        assert "Projects row 1 skipped (id belongs to another account)." in result["warnings"]
        assert "Tasks row 1 project_id not found; set to null." in result["warnings"]
        assert db.get(Project, foreign.id).name == "Theirs"
        assert db.get(Task, task_id).project_id is None

    def test_invalid_task_fields(self, db):
        rows = [
            {"id": "not-an-id", "title": "Bad", "created_at": T1, "updated_at": T1},
            {
                "id": new_id(),
                "title": "Odd",
                "completed": "maybe",
                "project_id": "xyz",
                "created_at": T1,
                "updated_at": T1,
            },
        ]

        result = run_import(db, make_archive({"Tasks": rows}))

        assert result["imported"]["tasks"] == 1
        assert result["skipped"]["tasks"] == 1
        assert result["warnings"] == [
            "Tasks row 1 skipped (invalid required fields).",
            "Tasks row 2 completed invalid; set to false.",
            "Tasks row 2 project_id invalid; set to null.",
        ]

    def test_session_end_time_rules(self, db):
        synthesized, unknown_task = new_id(), new_id()
        rows = [
            {"id": synthesized, "task_id": unknown_task, "started_at": T1, "duration_seconds": "600"},
            {"id": new_id(), "started_at": T1},
            {"id": "bad", "started_at": T1, "ended_at": T2},
        ]

        result = run_import(db, make_archive({"Sessions": rows}))

        assert result["imported"]["sessions"] == 1
        assert result["skipped"]["sessions"] == 2
        assert "Sessions row 1 ended_at synthesized." in result["warnings"]
        assert "Sessions row 2 skipped (missing ended_at)." in result["warnings"]
        assert "Sessions row 3 skipped (invalid required fields)." in result["warnings"]
        assert "Sessions row 1 task_id not found; set to null." in result["warnings"]
        session = db.get(FocusSession, synthesized)
        assert session.task_id is None
        assert session.duration_seconds == 600
        assert session.ended_at.replace(tzinfo=timezone.utc) == at(T1) + timedelta(seconds=600)

    def test_events_need_owned_session_and_task(self, db):
        task = Task(user_id=USER_ID, title="Owned")
        db.add(task)
        db.commit()
        row = {
            "id": new_id(),
            "session_id": new_id(),
            "task_id": task.id,
            "event_type": "phase_completed",
            "occurred_at": T1,
        }

        result = run_import(db, make_archive({"PomodoroEvents": [row]}))

        assert result["skipped"]["events"] == 1
        assert "PomodoroEvents row 1 skipped (missing session or task)." in result["warnings"]

    def test_queue_is_replaced_and_capped(self, db):
        tasks = [Task(user_id=USER_ID, title=f"T{index}") for index in range(9)]
        db.add_all(tasks)
        old = Task(user_id=USER_ID, title="Previously queued")
        db.add(old)
        db.commit()
        db.add(TaskQueueItem(user_id=USER_ID, task_id=old.id, sort_order=0))
        db.commit()
        rows = [{"task_id": task.id, "sort_order": str(index * 10), "created_at": T1} for index, task in enumerate(tasks)]
        rows.append({"task_id": tasks[0].id, "sort_order": "500", "created_at": T1})
        rows.append({"task_id": new_id(), "sort_order": "1", "created_at": T1})

        result = run_import(db, make_archive({"Queue": rows}))

        assert result["imported"]["queue"] == 7
        assert result["skipped"]["queue"] == 4
        assert "Queue truncated to 7 items." in result["warnings"]
        assert "Queue items with missing tasks were skipped." in result["warnings"]
        queue = db.exec(
            select(TaskQueueItem).where(TaskQueueItem.user_id == USER_ID).order_by(TaskQueueItem.sort_order)
        ).all()
        assert [item.task_id for item in queue] == [task.id for task in tasks[:7]]
        assert [item.sort_order for item in queue] == list(range(7))

    def test_reimporting_long_queue_truncates_each_time(self, db):
        tasks = [Task(user_id=USER_ID, title=f"T{index}") for index in range(8)]
        db.add_all(tasks)
        db.commit()
        rows = [{"task_id": task.id, "sort_order": str(index), "created_at": T1} for index, task in enumerate(tasks)]
        content = make_archive({"Queue": rows})

        for _ in range(2):
            result = run_import(db, content)

            assert result["imported"]["queue"] == 7
            assert result["skipped"]["queue"] == 1
            assert "Queue truncated to 7 items." in result["warnings"]
        queue = db.exec(
            select(TaskQueueItem).where(TaskQueueItem.user_id == USER_ID).order_by(TaskQueueItem.sort_order)
        ).all()
        assert [item.task_id for item in queue] == [task.id for task in tasks[:7]]

    def test_storage_failure_names_the_step(self, db, monkeypatch):
        project_id = new_id()
        tables = {
            "Projects": [{"id": project_id, "name": "Home", "created_at": T1, "updated_at": T1}],
            "Tasks": [{"id": new_id(), "title": "T", "project_id": project_id, "created_at": T1, "updated_at": T1}],
        }
        add_all = db.add_all

        def failing_add_all(instances):
            instances = list(instances)
            if any(isinstance(instance, Task) for instance in instances):
                raise OperationalError("INSERT INTO task", {}, Exception("disk I/O error"))
            add_all(instances)

        monkeypatch.setattr(db, "add_all", failing_add_all)

        with pytest.raises(RpcError) as exc_info:
            run_import(db, make_archive(tables))

        assert exc_info.value.details["scope"] == "import.tasks.insert"
        assert exc_info.value.message == "Failed to import tasks"
        # Projects were committed before the tasks step ran
        assert db.get(Project, project_id).name == "Home"
        assert db.exec(select(Task).where(Task.user_id == USER_ID)).all() == []

    def test_older_settings_are_skipped(self, db):
        db.add(UserSettings(user_id=USER_ID, timezone="UTC", created_at=at(T1), updated_at=at(T2)))
        db.commit()
        row = {"timezone": "Asia/Tokyo", "created_at": T1, "updated_at": T1}

        result = run_import(db, make_archive({"Settings": [row]}))

        assert result["skipped"]["settings"] == 1
        assert db.get(UserSettings, USER_ID).timezone == "UTC"


class TestStructuralErrors:
    def expect(self, db, code, content=b"", filename="backup.zip", mode="merge", config=None):
        with pytest.raises(ImportParseError) as exc_info:
            ImportService(db, USER_ID, config=config).run(mode, filename, content)
        assert exc_info.value.code == code
        return exc_info.value

    @pytest.mark.parametrize("mode", [None, "replace"])
    def test_unsupported_mode(self, db, mode):
        error = self.expect(db, "unsupported_mode", make_archive(), mode=mode)
        assert error.details == {"allowed": ["merge"]}

    def test_missing_file(self, db):
        error = self.expect(db, "invalid_file", filename=None)
        assert error.message == "Missing file"

    def test_too_large(self, db):
        self.expect(db, "file_too_large", make_archive(), config=ImportConfig(max_upload_mb=0))

    def test_unknown_extension(self, db):
        error = self.expect(db, "invalid_file", b"a,b", filename="backup.csv")
        assert error.message == "Unsupported file format"

    def test_corrupt_zip(self, db):
        self.expect(db, "invalid_zip", b"not a zip")

    def test_corrupt_workbook(self, db):
        self.expect(db, "invalid_xlsx", b"not a workbook", filename="backup.xlsx")

    def test_missing_manifest(self, db):
        self.expect(db, "missing_manifest", make_archive(manifest=None))

    def test_missing_csv(self, db):
        error = self.expect(db, "missing_csv_files", make_archive(omit=("Queue",)))
        assert error.details == {"missing": ["Queue.csv"]}

    def test_wrong_headers(self, db):
        headers = {"Tasks": ("id", "name")}
        error = self.expect(db, "invalid_headers", make_archive(headers=headers))
        assert error.details["target"] == "Tasks.csv"
        assert error.details["actual"] == ["id", "name"]

    def test_foreign_manifest(self, db):
        error = self.expect(db, "invalid_manifest", make_archive(manifest={"schema_version": "1", "app": "other"}))
        assert error.details["actual"] == {"schema_version": "1", "app": "other"}

    def test_workbook_missing_sheet(self, db):
        workbook = Workbook()
        workbook.active.title = "Manifest"
        workbook.active.append(["key", "value"])
        buffer = io.BytesIO()
        workbook.save(buffer)

        error = self.expect(db, "missing_sheet", buffer.getvalue(), filename="backup.xlsx")
        assert error.details == {"sheet": "Projects"}

    def test_nothing_written_on_structural_error(self, db):
        rows = [{"id": new_id(), "name": "P", "created_at": T1, "updated_at": T1}]
        self.expect(db, "missing_csv_files", make_archive({"Projects": rows}, omit=("Settings",)))
        assert db.exec(select(Project)).all() == []
