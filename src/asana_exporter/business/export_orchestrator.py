"""
エクスポート処理の全体制御

ユーザー → ワークスペース → プロジェクト → タスク → サブタスク/ストーリー → 集計
の6段階を順に実行し、各段階の進捗を通知して ExportRecord を作成する。
途中で回復できないエラーが発生した場合は処理全体を中断し、部分的な結果は返さない。
"""

import asyncio
import inspect
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, List, Optional, Union

from .batch_fetcher import chunk_ids, fetch_for_many, fetch_for_many_chunked, flatten
from .config_schema import RateLimitConfig, DEFAULT_EXPORT_SCOPE
from .scope_filter import filter_by_scope, describe_scope_result
from ..data.asana_client import AsanaClient
from ..data.models import ApiCallSummary, ExportRecord, ExportScope, Task
from ..utils.error_handler import ErrorContext
from ..utils.logger import PerformanceLogger

ProgressCallback = Callable[[int, int, str], Any]

logger = logging.getLogger(__name__)


class ExportOrchestrator:
    """
    エクスポート処理クラス

    1つの AsanaClient（1つのアクセストークン）に対して1回のエクスポートを実行する
    """

    TOTAL_STAGES = 6

    def __init__(self, client: AsanaClient, rate_limit: Optional[RateLimitConfig] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        ExportOrchestrator を初期化

        Args:
            client: Asana API クライアント
            rate_limit: チャンクサイズ・チャンク間待機時間の設定
            sleep: チャンク間待機に使うコルーチン関数
        """
        rate_limit = rate_limit or RateLimitConfig()
        self.client = client
        self.chunk_size = rate_limit.chunk_size
        self.inter_chunk_delay = rate_limit.inter_chunk_delay
        self.sleep = sleep
        self._on_progress: Optional[ProgressCallback] = None
        self._pending_callbacks = set()
        self._progress_deliveries = set()
        self._progress_executor: Optional[ThreadPoolExecutor] = None

    def _report(self, stage: int, message: str) -> None:
        """
        進捗を通知

        通知先の遅延や失敗でエクスポート処理を止めないため、イベントループ上では実行しない。
        コルーチン関数は待たずにタスクとして実行し、通常の関数は進捗通知専用の
        スレッド（1本）で呼び出し順に実行する。例外はログに記録するだけにする。
        """
        logger.info(f"[{stage}/{self.TOTAL_STAGES}] {message}")
        if self._on_progress is None:
            return

        if inspect.iscoroutinefunction(self._on_progress):
            self._schedule_callback(self._on_progress(stage, self.TOTAL_STAGES, message))
            return

        if self._progress_executor is None:
            self._progress_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="export-progress")
        delivery = asyncio.get_running_loop().run_in_executor(
            self._progress_executor, self._on_progress, stage, self.TOTAL_STAGES, message
        )
        self._progress_deliveries.add(delivery)
        delivery.add_done_callback(self._on_delivery_done)

    def _schedule_callback(self, awaitable) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending_callbacks.add(task)
        task.add_done_callback(self._on_callback_done)

    def _on_delivery_done(self, delivery: asyncio.Future) -> None:
        self._progress_deliveries.discard(delivery)
        if delivery.cancelled():
            return
        if delivery.exception() is not None:
            logger.warning(f"進捗通知でエラーが発生しました: {delivery.exception()}")
        elif inspect.isawaitable(delivery.result()):
            self._schedule_callback(delivery.result())

    def _on_callback_done(self, task: asyncio.Future) -> None:
        self._pending_callbacks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"進捗通知でエラーが発生しました: {task.exception()}")

    async def _finish_progress(self, completed: bool) -> None:
        """
        進捗通知スレッドを終了

        正常終了時は、結果を返す前に通知済みの進捗がすべて表示されるよう配送を待つ。
        """
        if completed and self._progress_deliveries:
            await asyncio.wait(set(self._progress_deliveries))
        if self._progress_executor is not None:
            self._progress_executor.shutdown(wait=False)
            self._progress_executor = None

    async def run(self, export_scope: Union[ExportScope, str] = DEFAULT_EXPORT_SCOPE,
                  on_progress: Optional[ProgressCallback] = None) -> ExportRecord:
        """
        エクスポートを実行

        Args:
            export_scope: エクスポート範囲（未知の値は "all" として扱う）
            on_progress: (現在の段階, 段階数, メッセージ) で呼ばれる進捗通知関数

        Returns:
            エクスポート結果
        """
        scope = ExportScope.parse(export_scope)
        if not isinstance(export_scope, ExportScope) and scope.value != export_scope:
            logger.warning(f"未知のエクスポート範囲です。全件をエクスポートします: {export_scope!r}")

        self._on_progress = on_progress

        completed = False
        try:
            with PerformanceLogger(f"エクスポート (範囲: {scope.value})") as perf:
                record = await self._collect(scope, perf)
            completed = True
        finally:
            await self._finish_progress(completed)

        logger.info(
            f"エクスポート完了: タスク {len(record.tasks)}件, サブタスク {len(record.subtasks)}件, "
            f"ストーリー {len(record.stories)}件, HTTP リクエスト {self.client.request_count}回, "
            f"レート制限 {self.client.retry_policy.rate_limited_count}回"
        )
        return record

    async def _collect(self, scope: ExportScope, perf: PerformanceLogger) -> ExportRecord:
        # 1. ユーザー情報
        self._report(1, "ユーザー情報を取得しています...")
        user = await self.client.get_me()

        # 2. ワークスペース
        self._report(2, "ワークスペースを取得しています...")
        workspaces = await self.client.get_workspaces()
        workspace_ids = [workspace.gid for workspace in workspaces]

        # 3. プロジェクト（ワークスペースごとに並行取得）
        self._report(3, "全ワークスペースのプロジェクトを取得しています...")
        projects = flatten(await fetch_for_many(workspace_ids, self.client.get_projects), workspace_ids)
        perf.log_checkpoint(f"プロジェクト {len(projects)}件")

        # 4. タスク（プロジェクトごとに並行取得してから範囲で絞り込み）
        self._report(4, "全プロジェクトのタスクを取得しています...")
        workspace_of = {project.gid: project.workspace_gid for project in projects}
        project_ids = list(workspace_of)

        def fetch_project_tasks(project_gid: str):
            return self.client.get_tasks(project_gid, workspace_of[project_gid])

        all_tasks: List[Task] = flatten(await fetch_for_many(project_ids, fetch_project_tasks), project_ids)
        tasks = filter_by_scope(all_tasks, user, scope)
        self._report(4, describe_scope_result(scope, len(tasks), len(all_tasks)))
        perf.log_checkpoint(f"タスク {len(tasks)}/{len(all_tasks)}件")

        # 5. サブタスクとストーリー（チャンク単位で取得）
        self._report(5, "サブタスクとコメントを処理しています...")
        subtask_parent_ids = list(dict.fromkeys(t.gid for t in tasks if t.num_subtasks > 0))
        story_source_ids = list(dict.fromkeys(
            t.gid for t in tasks if t.num_subtasks > 0 or t.has_stories
        ))
        subtask_batches = len(chunk_ids(subtask_parent_ids, self.chunk_size))
        story_batches = len(chunk_ids(story_source_ids, self.chunk_size))

        subtask_results = await fetch_for_many_chunked(
            subtask_parent_ids, self.client.get_subtasks,
            chunk_size=self.chunk_size,
            inter_chunk_delay=self.inter_chunk_delay,
            on_chunk=lambda i, n: self._report(5, f"サブタスクのバッチ {i}/{n} を処理しています..."),
            sleep=self.sleep,
        )
        all_subtasks = flatten(subtask_results, subtask_parent_ids)

        # サブタスクは completed-assigned の場合のみ絞り込む
        subtasks = all_subtasks
        if scope is ExportScope.COMPLETED_ASSIGNED:
            subtasks = filter_by_scope(all_subtasks, user, scope)
            self._report(5, f"全{len(all_subtasks)}件のサブタスクのうち、"
                            f"担当している完了済みサブタスクが{len(subtasks)}件見つかりました")

        # ストーリーは絞り込まない
        story_results = await fetch_for_many_chunked(
            story_source_ids, self.client.get_stories,
            chunk_size=self.chunk_size,
            inter_chunk_delay=self.inter_chunk_delay,
            on_chunk=lambda i, n: self._report(5, f"ストーリーのバッチ {i}/{n} を処理しています..."),
            sleep=self.sleep,
        )
        stories = flatten(story_results, story_source_ids)

        # 6. 集計
        self._report(6, "エクスポートデータをまとめています...")
        record = ExportRecord(
            user=user,
            workspaces=tuple(workspaces),
            projects=tuple(projects),
            tasks=tuple(tasks),
            subtasks=tuple(subtasks),
            stories=tuple(stories),
            api_calls=ApiCallSummary(
                workspaces_count=len(workspaces),
                projects_count=len(projects),
                subtasks_batches=subtask_batches,
                stories_batches=story_batches,
            ),
            scope=scope,
        )
        return record


async def export_asana_data(access_token: str,
                            on_progress: Optional[ProgressCallback] = None,
                            export_scope: Union[ExportScope, str] = DEFAULT_EXPORT_SCOPE,
                            rate_limit: Optional[RateLimitConfig] = None,
                            sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> ExportRecord:
    """
    アクセストークンを使って Asana データをエクスポート

    Args:
        access_token: Asana パーソナルアクセストークン
        on_progress: 進捗通知関数
        export_scope: エクスポート範囲
        rate_limit: 流量制御の設定
        sleep: バックオフ・チャンク間待機に使うコルーチン関数

    Returns:
        エクスポート結果

    Raises:
        ValidationError: アクセストークンが空の場合
        AsanaExporterError: 取得に失敗した場合（ログに記録してから送出する）
    """
    rate_limit = rate_limit or RateLimitConfig()
    with ErrorContext("Asana データのエクスポート", reraise=True), AsanaClient(
        access_token,
        timeout=rate_limit.timeout,
        max_concurrent=rate_limit.max_concurrent,
        max_retries=rate_limit.max_retries,
        base_delay=rate_limit.base_delay,
        page_limit=rate_limit.page_limit,
        sleep=sleep,
    ) as client:
        return await ExportOrchestrator(client, rate_limit, sleep=sleep).run(export_scope, on_progress)
