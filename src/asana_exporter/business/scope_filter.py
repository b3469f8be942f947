"""
エクスポート範囲によるタスクの絞り込み

タスク・サブタスクのどちらにも同じ判定を使う。サブタスクは親タスクの判定結果を
引き継がず、個別に判定される。
"""

from typing import Callable, Dict, List, Sequence, TypeVar, Union

from ..data.models import ExportScope, TaskBase, User

T = TypeVar('T', bound=TaskBase)


def _is_assignee(item: TaskBase, user: User) -> bool:
    return item.assignee_gid is not None and item.assignee_gid == user.gid


def _is_creator(item: TaskBase, user: User) -> bool:
    return item.creator_gid is not None and item.creator_gid == user.gid


_PREDICATES: Dict[ExportScope, Callable[[TaskBase, User], bool]] = {
    ExportScope.ALL: lambda item, user: True,
    ExportScope.USER_ONLY: lambda item, user: _is_assignee(item, user) or _is_creator(item, user),
    ExportScope.ASSIGNED_ONLY: _is_assignee,
    ExportScope.COMPLETED_ASSIGNED: lambda item, user: _is_assignee(item, user) and item.is_completed,
}


def matches_scope(item: TaskBase, user: User, scope: Union[ExportScope, str]) -> bool:
    """タスク1件がエクスポート範囲に含まれるか判定"""
    return _PREDICATES[ExportScope.parse(scope)](item, user)


def filter_by_scope(items: Sequence[T], user: User, scope: Union[ExportScope, str]) -> List[T]:
    """
    エクスポート範囲に含まれるタスクだけを返す

    Args:
        items: タスクまたはサブタスク
        user: エクスポートを実行するユーザー
        scope: エクスポート範囲（未知の値は "all" と同じ扱い）

    Returns:
        元の順序を保った絞り込み結果
    """
    predicate = _PREDICATES[ExportScope.parse(scope)]
    return [item for item in items if predicate(item, user)]


def describe_scope_result(scope: Union[ExportScope, str], kept: int, total: int) -> str:
    """絞り込み結果の進捗メッセージを作成"""
    scope = ExportScope.parse(scope)
    if scope is ExportScope.USER_ONLY:
        return f"全{total}件のタスクのうち、担当または作成したタスクが{kept}件見つかりました"
    if scope is ExportScope.ASSIGNED_ONLY:
        return f"全{total}件のタスクのうち、担当しているタスクが{kept}件見つかりました"
    if scope is ExportScope.COMPLETED_ASSIGNED:
        return f"全{total}件のタスクのうち、担当している完了済みタスクが{kept}件見つかりました"
    return f"アクセス可能な全プロジェクトの{total}件のタスクをエクスポートします"
