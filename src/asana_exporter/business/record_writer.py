"""
エクスポート結果のファイル出力

ExportRecord を JSON ファイルと Excel ファイルに書き出す。
Excel ではタスクとサブタスクを1シートにまとめ、各行にコメントを連結して付与する。
"""

import json
import logging
import unicodedata
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from ..data.models import ExportRecord, Story, TaskBase
from ..utils.error_handler import FileError, ValidationError

logger = logging.getLogger(__name__)


ITEM_COLUMNS = [
    ('type', '種別'),
    ('gid', 'ID'),
    ('name', '名前'),
    ('created_at', '作成日時'),
    ('completed_at', '完了日時'),
    ('due_on', '期限'),
    ('assignee', '担当者'),
    ('project', 'プロジェクト'),
    ('parent', '親タスク'),
    ('tags', 'タグ'),
    ('notes', 'メモ'),
    ('comments', 'コメント'),
]


class RecordWriter:
    """
    エクスポート結果の出力を管理するクラス
    """

    WRITERS = ('json', 'xlsx')

    def __init__(self, output_directory: str):
        """
        RecordWriter を初期化

        Args:
            output_directory: 出力先ディレクトリ
        """
        if not output_directory:
            raise ValidationError("出力先ディレクトリが指定されていません", field="output_directory")
        self.output_directory = Path(output_directory)

    def write(self, record: ExportRecord, formats: List[str]) -> List[str]:
        """
        指定された形式で出力

        Args:
            record: エクスポート結果
            formats: 出力形式（"json" / "xlsx"）

        Returns:
            作成したファイルのパス
        """
        unknown = [f for f in formats if f not in self.WRITERS]
        if unknown:
            raise ValidationError(f"未対応の出力形式です: {', '.join(unknown)}", field="formats", value=formats)

        writers: Dict[str, Callable[[ExportRecord, Path], None]] = {
            'json': self.write_json,
            'xlsx': self.write_excel,
        }
        self._prepare_directory()
        base_name = self.get_suggested_basename(record)

        paths = []
        for fmt in dict.fromkeys(formats):
            path = self.output_directory / f"{base_name}.{fmt}"
            writers[fmt](record, path)
            logger.info(f"{fmt} 出力完了: {path}")
            paths.append(str(path.absolute()))
        return paths

    def _prepare_directory(self) -> None:
        try:
            self.output_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileError(f"出力ディレクトリの作成に失敗しました: {e}",
                            file_path=str(self.output_directory), original_error=e)

    @staticmethod
    def get_suggested_basename(record: ExportRecord) -> str:
        """出力ファイル名（拡張子なし）を生成"""
        timestamp = record.export_timestamp.strftime("%Y%m%d_%H%M%S")
        return f"asana_export_{record.scope.value}_{timestamp}"

    def write_json(self, record: ExportRecord, path: Path) -> None:
        """JSON ファイルに出力"""
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(record.to_dict(), f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise FileError(f"JSON ファイルの保存に失敗しました: {e}", file_path=str(path), original_error=e)

    def write_excel(self, record: ExportRecord, path: Path) -> None:
        """Excel ファイルに出力"""
        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = "Asana Tasks"

        rows = build_item_rows(record)
        worksheet.append([label for _, label in ITEM_COLUMNS])
        for row in rows:
            worksheet.append([sheet_value(row.get(key)) for key, _ in ITEM_COLUMNS])
        self._apply_formatting(worksheet, len(rows), len(ITEM_COLUMNS))

        summary = workbook.create_sheet("Summary")
        summary.append(["項目", "値"])
        summary.append(["ユーザー", sheet_value(record.user.name)])
        summary.append(["エクスポート範囲", record.scope.value])
        summary.append(["エクスポート日時", record.export_timestamp.replace(tzinfo=None)])
        summary.append(["件数", record.total_items])
        for key, value in record.api_calls.to_dict().items():
            summary.append([f"API 呼び出し ({key})", value])
        self._apply_formatting(summary, summary.max_row - 1, 2)

        try:
            workbook.save(path)
        except PermissionError as e:
            raise FileError(f"ファイルが他のプログラムで使用中です: {path}", file_path=str(path), original_error=e)
        except OSError as e:
            raise FileError(f"ファイル保存エラー: {e}", file_path=str(path), original_error=e)

    def _apply_formatting(self, worksheet: Worksheet, data_rows: int, data_cols: int) -> None:
        """ヘッダー・罫線・日付書式・列幅を適用"""
        header_font = Font(bold=True, color="FFFFFF", size=12)
        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        border = Border(left=Side(style="thin"), right=Side(style="thin"),
                        top=Side(style="thin"), bottom=Side(style="thin"))

        for col in range(1, data_cols + 1):
            cell = worksheet.cell(row=1, column=col)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center", vertical="center")
            cell.border = border

        for row in range(2, data_rows + 2):
            for col in range(1, data_cols + 1):
                cell = worksheet.cell(row=row, column=col)
                cell.border = border
                if isinstance(cell.value, datetime):
                    cell.number_format = 'YYYY/MM/DD HH:MM:SS'
                elif isinstance(cell.value, str) and len(cell.value) > 50:
                    cell.alignment = Alignment(wrap_text=True, vertical="top")

        for col in range(1, data_cols + 1):
            max_length = 0
            for row in range(1, min(worksheet.max_row + 1, 101)):  # 最初の100行をサンプル
                value = worksheet.cell(row=row, column=col).value
                if value is not None:
                    max_length = max(max_length, calculate_display_width(str(value)))
            worksheet.column_dimensions[get_column_letter(col)].width = min(max(max_length + 2, 10), 50)

        worksheet.freeze_panes = "A2"


def sheet_value(value: Any) -> Any:
    """ワークシートに書き込めない制御文字を取り除く"""
    if isinstance(value, str):
        return ILLEGAL_CHARACTERS_RE.sub("", value)
    return value


def calculate_display_width(text: str) -> int:
    """テキストの表示幅を計算（全角文字は2として数える）"""
    return sum(2 if unicodedata.east_asian_width(ch) in ('F', 'W') else 1 for ch in text)


def format_comments(stories: List[Story]) -> str:
    """ストーリーを「[日付 - 作成者] 本文」の形式で連結"""
    parts = []
    for story in stories:
        timestamp = story.created_at.strftime('%Y-%m-%d') if story.created_at else ''
        author = story.created_by.name if story.created_by and story.created_by.name else 'Unknown'
        parts.append(f"[{timestamp} - {author}] {story.text}")
    return ' | '.join(parts)


def build_item_rows(record: ExportRecord) -> List[Dict[str, Any]]:
    """タスクとサブタスクを出力用の行に変換"""
    stories_by_resource: Dict[str, List[Story]] = {}
    for story in record.stories:
        stories_by_resource.setdefault(story.resource_gid, []).append(story)
    project_names = {project.gid: project.name for project in record.projects}

    def row(item: TaskBase, item_type: str, project: Optional[str]) -> Dict[str, Any]:
        return {
            'type': item_type,
            'gid': item.gid,
            'name': item.name,
            'created_at': item.created_at.replace(tzinfo=None) if item.created_at else None,
            'completed_at': item.completed_at.replace(tzinfo=None) if item.completed_at else None,
            'due_on': item.due_on.isoformat() if item.due_on else None,
            'assignee': item.assignee.name if item.assignee else None,
            'project': project,
            'parent': item.parent.gid if item.parent else None,
            'tags': ', '.join(item.tags),
            'notes': item.notes,
            'comments': format_comments(stories_by_resource.get(item.gid, [])),
        }

    rows = [row(task, 'Task', project_names.get(task.project_gid)) for task in record.tasks]
    rows.extend(row(subtask, 'Subtask', None) for subtask in record.subtasks)
    return rows
