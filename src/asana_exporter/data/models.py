"""
データモデル定義

Asana API から取得するデータの構造を定義するデータクラス。
API レスポンスからの変換は各クラスの from_api() に集約し、
形式が想定と異なる場合は ResponseFormatError を送出する。
"""

from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from ..utils.error_handler import ResponseFormatError


def _require_gid(data: Any, resource: str) -> str:
    """レスポンス要素から gid を取り出す"""
    if not isinstance(data, dict):
        raise ResponseFormatError(f"{resource} のデータがオブジェクトではありません", payload=data)
    gid = data.get('gid')
    if not gid or not isinstance(gid, (str, int)):
        raise ResponseFormatError(f"{resource} に gid がありません", payload=data)
    return str(gid)


def _parse_datetime(value: Optional[str], field_name: str) -> Optional[datetime]:
    """ISO 8601 形式の日時文字列をパース（None はそのまま）"""
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (AttributeError, ValueError) as e:
        raise ResponseFormatError(f"{field_name} の日時形式が無効です: {value!r}", original_error=e)


def _parse_date(value: Optional[str], field_name: str) -> Optional[date]:
    """YYYY-MM-DD 形式の日付文字列をパース（None はそのまま）"""
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ResponseFormatError(f"{field_name} の日付形式が無効です: {value!r}", original_error=e)


def _isoformat(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat().replace('+00:00', 'Z')
    return value.isoformat()


@dataclass(frozen=True)
class ResourceRef:
    """他リソースへの参照（gid と表示名）"""
    gid: str
    name: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any, resource: str = "参照") -> Optional['ResourceRef']:
        if data is None:
            return None
        gid = _require_gid(data, resource)
        return cls(gid=gid, name=data.get('name'))

    def to_dict(self) -> Dict[str, Any]:
        return {'gid': self.gid, 'name': self.name}


def _ref_list(values: Any, resource: str) -> List[ResourceRef]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ResponseFormatError(f"{resource} がリストではありません", payload=values)
    return [ResourceRef.from_api(value, resource) for value in values]


@dataclass
class User:
    """Asana ユーザーを表すデータクラス"""
    gid: str
    name: str = ""
    email: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> 'User':
        gid = _require_gid(data, "ユーザー")
        return cls(gid=gid, name=data.get('name') or "", email=data.get('email'))

    def to_dict(self) -> Dict[str, Any]:
        return {'gid': self.gid, 'name': self.name, 'email': self.email}


@dataclass
class Workspace:
    """Asana ワークスペースを表すデータクラス"""
    gid: str
    name: str = ""

    @classmethod
    def from_api(cls, data: Any) -> 'Workspace':
        gid = _require_gid(data, "ワークスペース")
        return cls(gid=gid, name=data.get('name') or "")

    def to_dict(self) -> Dict[str, Any]:
        return {'gid': self.gid, 'name': self.name}


@dataclass
class Project:
    """Asana プロジェクトを表すデータクラス"""
    gid: str
    name: str
    workspace_gid: str
    archived: bool = False
    notes: str = ""
    created_at: Optional[datetime] = None

    def __post_init__(self):
        """初期化後の検証処理"""
        self.validate()

    def validate(self):
        """プロジェクトデータの検証"""
        if not self.gid or not isinstance(self.gid, str):
            raise ValueError("Project gid は空でない文字列である必要があります")

        # 所属ワークスペースのないプロジェクトはエクスポートに含めない
        if not self.workspace_gid or not isinstance(self.workspace_gid, str):
            raise ValueError("Project の workspace_gid は空でない文字列である必要があります")

    @classmethod
    def from_api(cls, data: Any, workspace_gid: str) -> 'Project':
        """
        API レスポンスからプロジェクトを作成

        Args:
            data: API から取得したプロジェクトデータ
            workspace_gid: 取得元のワークスペース ID（API は返さないため呼び出し側で付与）
        """
        gid = _require_gid(data, "プロジェクト")
        return cls(
            gid=gid,
            name=data.get('name') or "",
            workspace_gid=workspace_gid,
            archived=bool(data.get('archived', False)),
            notes=data.get('notes') or "",
            created_at=_parse_datetime(data.get('created_at'), 'created_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'gid': self.gid,
            'name': self.name,
            'workspace': self.workspace_gid,
            'archived': self.archived,
            'notes': self.notes,
            'created_at': _isoformat(self.created_at),
        }


@dataclass
class TaskBase:
    """タスクとサブタスクに共通するフィールド"""
    gid: str
    name: str = ""
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    due_on: Optional[date] = None
    assignee: Optional[ResourceRef] = None
    created_by: Optional[ResourceRef] = None
    parent: Optional[ResourceRef] = None
    projects: List[ResourceRef] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    notes: str = ""
    num_subtasks: int = 0
    has_stories: bool = False
    permalink_url: Optional[str] = None

    @property
    def assignee_gid(self) -> Optional[str]:
        return self.assignee.gid if self.assignee else None

    @property
    def creator_gid(self) -> Optional[str]:
        return self.created_by.gid if self.created_by else None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @staticmethod
    def _common_fields(data: Any, resource: str) -> Dict[str, Any]:
        gid = _require_gid(data, resource)
        try:
            num_subtasks = int(data.get('num_subtasks') or 0)
        except (TypeError, ValueError) as e:
            raise ResponseFormatError(f"{resource} {gid} の num_subtasks が無効です", payload=data, original_error=e)

        stories = data.get('stories')
        return {
            'gid': gid,
            'name': data.get('name') or "",
            'created_at': _parse_datetime(data.get('created_at'), 'created_at'),
            'completed_at': _parse_datetime(data.get('completed_at'), 'completed_at'),
            'due_on': _parse_date(data.get('due_on'), 'due_on'),
            'assignee': ResourceRef.from_api(data.get('assignee'), "担当者"),
            'created_by': ResourceRef.from_api(data.get('created_by'), "作成者"),
            'parent': ResourceRef.from_api(data.get('parent'), "親タスク"),
            'projects': _ref_list(data.get('projects'), "プロジェクト"),
            'tags': [tag.name or tag.gid for tag in _ref_list(data.get('tags'), "タグ")],
            'notes': data.get('notes') or "",
            'num_subtasks': num_subtasks,
            'has_stories': bool(stories),
            'permalink_url': data.get('permalink_url'),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'gid': self.gid,
            'name': self.name,
            'created_at': _isoformat(self.created_at),
            'completed_at': _isoformat(self.completed_at),
            'due_on': _isoformat(self.due_on),
            'assignee': self.assignee.to_dict() if self.assignee else None,
            'created_by': self.created_by.to_dict() if self.created_by else None,
            'parent': self.parent.to_dict() if self.parent else None,
            'projects': [ref.to_dict() for ref in self.projects],
            'tags': list(self.tags),
            'notes': self.notes,
            'num_subtasks': self.num_subtasks,
            'permalink_url': self.permalink_url,
        }


@dataclass
class Task(TaskBase):
    """Asana タスク（取得元プロジェクトとワークスペースの注記付き）"""
    project_gid: Optional[str] = None
    workspace_gid: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any, project_gid: Optional[str] = None,
                 workspace_gid: Optional[str] = None) -> 'Task':
        return cls(project_gid=project_gid, workspace_gid=workspace_gid,
                   **cls._common_fields(data, "タスク"))

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['project'] = self.project_gid
        result['workspace'] = self.workspace_gid
        return result


@dataclass
class Subtask(TaskBase):
    """Asana サブタスク（親タスクへの参照は必須）"""

    def __post_init__(self):
        if self.parent is None:
            raise ResponseFormatError(f"サブタスク {self.gid} に親タスクの参照がありません")

    @classmethod
    def from_api(cls, data: Any, parent_gid: Optional[str] = None) -> 'Subtask':
        """
        API レスポンスからサブタスクを作成

        Args:
            data: API から取得したサブタスクデータ
            parent_gid: レスポンスに parent が含まれない場合に使う親タスク ID
        """
        fields = cls._common_fields(data, "サブタスク")
        if fields['parent'] is None and parent_gid:
            fields['parent'] = ResourceRef(gid=parent_gid)
        return cls(**fields)


@dataclass
class Story:
    """Asana ストーリー（コメント・アクティビティ）"""
    gid: str
    resource_gid: str
    text: str = ""
    created_at: Optional[datetime] = None
    created_by: Optional[ResourceRef] = None
    type: Optional[str] = None
    resource_subtype: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any, task_gid: Optional[str] = None) -> 'Story':
        """
        API レスポンスからストーリーを作成

        Args:
            data: API から取得したストーリーデータ
            task_gid: レスポンスに resource が含まれない場合に使う取得元タスク ID
        """
        gid = _require_gid(data, "ストーリー")
        resource = ResourceRef.from_api(data.get('target') or data.get('resource'), "ストーリー対象")
        resource_gid = resource.gid if resource else task_gid
        if not resource_gid:
            raise ResponseFormatError(f"ストーリー {gid} の対象リソースが不明です", payload=data)
        return cls(
            gid=gid,
            resource_gid=resource_gid,
            text=data.get('text') or "",
            created_at=_parse_datetime(data.get('created_at'), 'created_at'),
            created_by=ResourceRef.from_api(data.get('created_by'), "作成者"),
            type=data.get('type'),
            resource_subtype=data.get('resource_subtype'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'gid': self.gid,
            'resource': {'gid': self.resource_gid},
            'text': self.text,
            'created_at': _isoformat(self.created_at),
            'created_by': self.created_by.to_dict() if self.created_by else None,
            'type': self.type,
            'resource_subtype': self.resource_subtype,
        }


class ExportScope(Enum):
    """エクスポート対象範囲"""
    ALL = "all"
    USER_ONLY = "user-only"
    ASSIGNED_ONLY = "assigned-only"
    COMPLETED_ASSIGNED = "completed-assigned"

    @classmethod
    def parse(cls, value) -> 'ExportScope':
        """文字列から範囲を取得（未知の値は ALL として扱う）"""
        if isinstance(value, cls):
            return value
        for scope in cls:
            if scope.value == value:
                return scope
        return cls.ALL


@dataclass(frozen=True)
class ApiCallSummary:
    """API 呼び出し回数の集計"""
    workspaces_count: int
    projects_count: int
    subtasks_batches: int
    stories_batches: int

    user_info: int = 1
    workspaces: int = 1

    @property
    def projects(self) -> int:
        return self.workspaces_count

    @property
    def tasks(self) -> int:
        return self.projects_count

    @property
    def total(self) -> int:
        # 3 = ユーザー情報 + ワークスペース一覧 + ベース呼び出し
        return 3 + self.workspaces_count + self.projects_count + self.subtasks_batches + self.stories_batches

    def to_dict(self) -> Dict[str, int]:
        return {
            'user_info': self.user_info,
            'workspaces': self.workspaces,
            'projects': self.projects,
            'tasks': self.tasks,
            'subtasks_batches': self.subtasks_batches,
            'stories_batches': self.stories_batches,
            'total': self.total,
        }


@dataclass(frozen=True)
class ExportRecord:
    """エクスポート結果（1回の実行で作成され、以後変更されない）"""
    user: User
    workspaces: Tuple[Workspace, ...]
    projects: Tuple[Project, ...]
    tasks: Tuple[Task, ...]
    subtasks: Tuple[Subtask, ...]
    stories: Tuple[Story, ...]
    api_calls: ApiCallSummary
    scope: ExportScope = ExportScope.ALL
    export_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_items(self) -> int:
        return len(self.tasks) + len(self.subtasks)

    def to_dict(self) -> Dict[str, Any]:
        """JSON 出力用の辞書に変換"""
        return {
            'user': self.user.to_dict(),
            'workspaces': [w.to_dict() for w in self.workspaces],
            'projects': [p.to_dict() for p in self.projects],
            'tasks': [t.to_dict() for t in self.tasks],
            'subtasks': [s.to_dict() for s in self.subtasks],
            'stories': [s.to_dict() for s in self.stories],
            'export_scope': self.scope.value,
            'export_timestamp': _isoformat(self.export_timestamp),
            'total_items': self.total_items,
            'api_calls_made': self.api_calls.to_dict(),
        }
