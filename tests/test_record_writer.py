"""エクスポート結果のファイル出力のテスト"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from openpyxl import load_workbook

from asana_exporter.business.record_writer import (
    ITEM_COLUMNS, RecordWriter, build_item_rows, calculate_display_width, format_comments
)
from asana_exporter.data.models import (
    ApiCallSummary, ExportRecord, ExportScope, Project, Story, Subtask, Task, User, Workspace
)
from asana_exporter.utils.error_handler import ValidationError

from conftest import story_payload, task_payload


@pytest.fixture
def record():
    return ExportRecord(
        user=User("1", "Demo User"),
        workspaces=(Workspace("100", "Workspace"),),
        projects=(Project("200", "Project A", "100"),),
        tasks=(Task.from_api(task_payload("300", assignee="1", completed=True), "200", "100"),),
        subtasks=(Subtask.from_api(task_payload("310", parent="300")),),
        stories=(Story.from_api(story_payload("400", "300", "最初のコメント")),
                 Story.from_api(story_payload("401", "300", "二番目"))),
        api_calls=ApiCallSummary(1, 1, 1, 1),
        scope=ExportScope.ASSIGNED_ONLY,
        export_timestamp=datetime(2024, 2, 1, 12, 0, 0, tzinfo=timezone.utc),
    )


class TestRecordWriter:
    """ファイル出力のテスト"""

    def test_basename(self, record):
        assert RecordWriter.get_suggested_basename(record) == "asana_export_assigned-only_20240201_120000"

    def test_writes_json(self, record, tmp_path):
        paths = RecordWriter(str(tmp_path / "out")).write(record, ["json"])

        assert len(paths) == 1
        data = json.loads(Path(paths[0]).read_text(encoding="utf-8"))
        assert data["export_scope"] == "assigned-only"
        assert data["total_items"] == 2
        assert [t["gid"] for t in data["tasks"]] == ["300"]
        assert data["stories"][0]["text"] == "最初のコメント"

    def test_writes_excel(self, record, tmp_path):
        paths = RecordWriter(str(tmp_path)).write(record, ["xlsx"])

        workbook = load_workbook(paths[0])
        assert workbook.sheetnames == ["Asana Tasks", "Summary"]
        sheet = workbook["Asana Tasks"]
        assert [cell.value for cell in sheet[1]] == [label for _, label in ITEM_COLUMNS]
        assert sheet.max_row == 3
        assert sheet.cell(row=2, column=1).value == "Task"
        assert sheet.cell(row=3, column=1).value == "Subtask"

    def test_control_characters_removed_from_excel(self, tmp_path):
        payload = dict(task_payload("300", name="貼り付け\x0bタスク"), notes="pasted\x0btext")
        record = ExportRecord(
            user=User("1", "Demo\x00User"),
            workspaces=(),
            projects=(),
            tasks=(Task.from_api(payload, "200", "100"),),
            subtasks=(),
            stories=(Story.from_api(story_payload("400", "300", "行1\x01行2")),),
            api_calls=ApiCallSummary(0, 0, 0, 1),
            scope=ExportScope.ALL,
            export_timestamp=datetime(2024, 2, 1, 12, 0, 0, tzinfo=timezone.utc),
        )

        paths = RecordWriter(str(tmp_path)).write(record, ["json", "xlsx"])

        data = json.loads(Path(paths[0]).read_text(encoding="utf-8"))
        assert data["tasks"][0]["notes"] == "pasted\x0btext"
        workbook = load_workbook(paths[1])
        row = {key: cell.value for (key, _), cell in zip(ITEM_COLUMNS, workbook["Asana Tasks"][2])}
        assert row["name"] == "貼り付けタスク"
        assert row["notes"] == "pastedtext"
        assert row["comments"].endswith("行1行2")
        assert workbook["Summary"].cell(row=2, column=2).value == "DemoUser"

    def test_duplicate_formats_written_once(self, record, tmp_path):
        paths = RecordWriter(str(tmp_path)).write(record, ["json", "xlsx", "json"])

        assert [Path(p).suffix for p in paths] == [".json", ".xlsx"]

    def test_unknown_format(self, record, tmp_path):
        with pytest.raises(ValidationError):
            RecordWriter(str(tmp_path)).write(record, ["csv"])

    def test_empty_directory_rejected(self):
        with pytest.raises(ValidationError):
            RecordWriter("")


class TestRows:
    """出力行の作成のテスト"""

    def test_task_row(self, record):
        rows = build_item_rows(record)

        assert rows[0]["project"] == "Project A"
        assert rows[0]["assignee"] == "User 1"
        assert rows[0]["comments"] == "[2024-01-16 - Demo User] 最初のコメント | [2024-01-16 - Demo User] 二番目"
        assert rows[1]["parent"] == "300"
        assert rows[1]["comments"] == ""

    def test_format_comments_without_author(self):
        story = Story(gid="1", resource_gid="300", text="hello")

        assert format_comments([story]) == "[ - Unknown] hello"

    def test_display_width(self):
        assert calculate_display_width("abc") == 3
        assert calculate_display_width("日本") == 4
