"""
Asana API クライアント

Asana API との通信を担当するクライアントクラス。
アクセストークン・同時リクエスト制御・再試行ポリシーはインスタンスごとに保持するため、
異なるトークンのエクスポートを同じプロセスで並行して実行できる。
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import requests

from .models import User, Workspace, Project, Task, Subtask, Story
from .retry import RateLimitState, RetryPolicy
from .throttle import ThrottleGate
from ..utils.error_handler import (
    APIError, NetworkError, AuthenticationError, RateLimitError,
    ResponseFormatError, ResourceFetchError, ValidationError
)
from ..utils.logger import log_api_request, mask_token, register_secret


class AsanaClient:
    """
    Asana API クライアント

    API 認証、HTTP リクエスト処理、ページネーション、レート制限の再試行を提供
    """

    BASE_URL = "https://app.asana.com/api/1.0/"
    DEFAULT_TIMEOUT = 30
    PAGE_LIMIT = 100

    USER_FIELDS = 'name,email'
    PROJECT_FIELDS = 'name,archived,notes,created_at'
    TASK_FIELDS = ('name,created_at,completed_at,due_on,assignee.name,created_by.name,'
                   'parent.name,projects.name,tags.name,notes,num_subtasks,stories,permalink_url')
    SUBTASK_FIELDS = ('name,created_at,completed_at,due_on,assignee.name,created_by.name,'
                      'parent.name,projects.name,tags.name,notes,num_subtasks,permalink_url')
    STORY_FIELDS = 'text,created_at,created_by.name,type,resource_subtype,target'

    def __init__(self, access_token: str, timeout: int = DEFAULT_TIMEOUT,
                 max_concurrent: int = ThrottleGate.MAX_CONCURRENT,
                 max_retries: int = RetryPolicy.MAX_RETRIES,
                 base_delay: float = RetryPolicy.BASE_DELAY,
                 page_limit: int = PAGE_LIMIT,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        AsanaClient を初期化

        Args:
            access_token: Asana API アクセストークン
            timeout: リクエストタイムアウト（秒）
            max_concurrent: 同時リクエスト数の上限
            max_retries: 429 に対する最大再試行回数
            base_delay: 指数バックオフの基準待機時間（秒）
            page_limit: 1ページあたりの取得件数
            sleep: バックオフ待機に使うコルーチン関数
        """
        if not access_token or not isinstance(access_token, str) or not access_token.strip():
            raise ValidationError("access_token は空でない文字列である必要があります", field="access_token")

        self.access_token = access_token.strip()
        self.timeout = timeout
        self.page_limit = page_limit
        self.session = requests.Session()
        self.logger = logging.getLogger(__name__)

        self.gate = ThrottleGate(max_concurrent)
        self.retry_policy = RetryPolicy(self.gate, max_retries=max_retries,
                                        base_delay=base_delay, sleep=sleep)
        self.request_count = 0
        self.last_rate_limit: Optional[RateLimitState] = None

        register_secret(self.access_token)
        self.logger.debug(f"AsanaClient初期化 - トークン: {mask_token(self.access_token)}")

        self.session.headers.update({
            'Authorization': f'Bearer {self.access_token}',
            'Accept': 'application/json',
            'User-Agent': 'AsanaExporter/1.0 (Python/requests)'
        })

    def close(self):
        """セッションを閉じてリソースを解放"""
        if self.session:
            self.session.close()
            self.logger.debug("Asana API セッションをクローズしました")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _send(self, method: str, endpoint: str,
              params: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], RateLimitState]:
        """
        HTTP リクエストを1回だけ実行（ワーカースレッドで呼ばれる）

        Args:
            method: HTTP メソッド
            endpoint: API エンドポイント
            params: クエリパラメータ

        Returns:
            (レスポンス JSON, レート制限情報)

        Raises:
            RateLimitError: 429 応答の場合
            NetworkError: 通信に失敗した場合
        """
        url = urljoin(self.BASE_URL, endpoint)
        start_time = time.time()

        try:
            self.logger.debug(f"API リクエスト: {method} {url} params={params}")
            response = self.session.request(method=method, url=url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            log_api_request(method, endpoint, 0, time.time() - start_time)
            raise NetworkError("リクエストがタイムアウトしました", original_error=e)
        except requests.exceptions.ConnectionError as e:
            log_api_request(method, endpoint, 0, time.time() - start_time)
            raise NetworkError("Asana API への接続に失敗しました", original_error=e)
        except requests.exceptions.RequestException as e:
            log_api_request(method, endpoint, 0, time.time() - start_time)
            raise NetworkError(f"リクエストエラーが発生しました: {e}", original_error=e)

        response_size = len(response.content) if response.content else 0
        log_api_request(method, endpoint, response.status_code, time.time() - start_time,
                        response_size=response_size)

        rate_limit = RateLimitState.from_headers(response.headers)

        if response.status_code == 429:
            raise RateLimitError(
                f"API 利用制限に達しました: {method} {endpoint}",
                rate_limit=rate_limit,
                response_data=self._safe_json(response)
            )

        if not response.ok:
            self._handle_error_response(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise ResponseFormatError(f"API レスポンスの JSON 解析に失敗しました: {e}", original_error=e)

        if not isinstance(payload, dict):
            raise ResponseFormatError("API レスポンスがオブジェクトではありません", payload=payload)

        return payload, rate_limit

    @staticmethod
    def _safe_json(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _handle_error_response(self, response: requests.Response):
        """
        エラーレスポンスの処理

        Args:
            response: HTTP レスポンス

        Raises:
            AuthenticationError: 401/403 の場合
            APIError: その他のエラーの場合
        """
        error_data = self._safe_json(response)
        errors = error_data.get('errors') or [{}]
        first = errors[0] if isinstance(errors[0], dict) else {}
        error_message = first.get('message') or f"HTTP {response.status_code}: {response.reason}"
        error_phrase = first.get('phrase', '')

        full_error_message = error_message
        if error_phrase:
            full_error_message += f" ({error_phrase})"

        if response.status_code == 401:
            raise AuthenticationError(f"認証エラー: {full_error_message}", status_code=401)
        elif response.status_code == 403:
            raise AuthenticationError(f"アクセス権限エラー: {full_error_message}", status_code=403)
        elif response.status_code == 404:
            raise APIError(f"リソースが見つかりません: {full_error_message}",
                           status_code=response.status_code, response_data=error_data)
        elif 500 <= response.status_code < 600:
            raise APIError(f"サーバーエラー: {full_error_message}",
                           status_code=response.status_code, response_data=error_data)
        else:
            raise APIError(f"API エラー: {full_error_message}",
                           status_code=response.status_code, response_data=error_data)

    async def request(self, method: str, endpoint: str,
                      params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        ゲートと再試行ポリシーを通して API を呼び出す

        Returns:
            API レスポンス JSON
        """
        async def attempt() -> Dict[str, Any]:
            self.request_count += 1
            call = asyncio.ensure_future(asyncio.to_thread(self._send, method, endpoint, params))
            try:
                payload, rate_limit = await asyncio.shield(call)
            except asyncio.CancelledError:
                # スレッドは中断できないため、送信が終わるまでゲートの枠を保持する
                await asyncio.wait({call})
                if not call.cancelled() and call.exception() is not None:
                    self.logger.debug(f"キャンセル後に完了したリクエストのエラー: {call.exception()}")
                raise
            self.last_rate_limit = rate_limit
            if rate_limit.limit and rate_limit.remaining < rate_limit.limit * 0.1:
                self.logger.debug(f"残りリクエスト数が少なくなっています: {rate_limit.remaining}/{rate_limit.limit}")
            return payload

        return await self.retry_policy.execute(attempt, f"{method} {endpoint}")

    async def get_single(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """単一リソースを取得して data 部分を返す"""
        payload = await self.request('GET', endpoint, params)
        data = payload.get('data')
        if not isinstance(data, dict):
            raise ResponseFormatError(f"{endpoint} のレスポンスに data オブジェクトがありません", payload=payload)
        return data

    async def fetch_all(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        ページネーションを辿って全件を取得

        サーバーが next_page を返さなくなるまでリクエストを繰り返す。

        Args:
            endpoint: API エンドポイント
            params: 固定のクエリパラメータ

        Returns:
            全ページの要素（サーバーの返却順）
        """
        base_params = dict(params or {})
        base_params['limit'] = self.page_limit
        page_params = base_params
        items: List[Dict[str, Any]] = []
        page_count = 0

        while True:
            payload = await self.request('GET', endpoint, page_params)
            page_count += 1

            data = payload.get('data')
            if not isinstance(data, list):
                raise ResponseFormatError(f"{endpoint} のレスポンスに data リストがありません", payload=payload)
            items.extend(data)

            next_page = payload.get('next_page')
            if next_page is None:
                break
            if not isinstance(next_page, dict):
                raise ResponseFormatError(f"{endpoint} の next_page の形式が無効です", payload=next_page)
            offset = next_page.get('offset')
            if not offset:
                break
            page_params = dict(base_params, offset=offset)

        self.logger.debug(f"{endpoint}: {page_count}ページ、{len(items)}件を取得しました")
        return items

    async def get_me(self) -> User:
        """トークンの所有ユーザーを取得"""
        try:
            data = await self.get_single('users/me', {'opt_fields': self.USER_FIELDS})
            return User.from_api(data)
        except Exception as e:
            raise ResourceFetchError("ユーザー情報の取得", "users/me", e) from e

    async def get_workspaces(self) -> List[Workspace]:
        """アクセス可能なワークスペース一覧を取得"""
        try:
            return [Workspace.from_api(item) for item in await self.fetch_all('workspaces')]
        except Exception as e:
            raise ResourceFetchError("ワークスペース一覧の取得", "workspaces", e) from e

    async def get_projects(self, workspace_gid: str) -> List[Project]:
        """
        ワークスペース内のプロジェクト一覧を取得

        Args:
            workspace_gid: ワークスペース ID

        Returns:
            ワークスペース ID を付与したプロジェクトのリスト
        """
        try:
            items = await self.fetch_all(f'workspaces/{workspace_gid}/projects',
                                         {'opt_fields': self.PROJECT_FIELDS})
            return [Project.from_api(item, workspace_gid) for item in items]
        except Exception as e:
            raise ResourceFetchError("プロジェクト一覧の取得", f"workspace {workspace_gid}", e) from e

    async def get_tasks(self, project_gid: str, workspace_gid: Optional[str] = None) -> List[Task]:
        """
        プロジェクト内のタスクを全件取得

        Args:
            project_gid: プロジェクト ID
            workspace_gid: プロジェクトの所属ワークスペース ID

        Returns:
            プロジェクト ID とワークスペース ID を付与したタスクのリスト
        """
        try:
            items = await self.fetch_all(f'projects/{project_gid}/tasks',
                                         {'opt_fields': self.TASK_FIELDS})
            return [Task.from_api(item, project_gid, workspace_gid) for item in items]
        except Exception as e:
            raise ResourceFetchError("タスク一覧の取得", f"project {project_gid}", e) from e

    async def get_subtasks(self, task_gid: str) -> List[Subtask]:
        """タスクのサブタスクを全件取得"""
        try:
            items = await self.fetch_all(f'tasks/{task_gid}/subtasks',
                                         {'opt_fields': self.SUBTASK_FIELDS})
            return [Subtask.from_api(item, parent_gid=task_gid) for item in items]
        except Exception as e:
            raise ResourceFetchError("サブタスクの取得", f"task {task_gid}", e) from e

    async def get_stories(self, task_gid: str) -> List[Story]:
        """タスクのストーリー（コメント・アクティビティ）を全件取得"""
        try:
            items = await self.fetch_all(f'tasks/{task_gid}/stories',
                                         {'opt_fields': self.STORY_FIELDS})
            return [Story.from_api(item, task_gid=task_gid) for item in items]
        except Exception as e:
            raise ResourceFetchError("ストーリーの取得", f"task {task_gid}", e) from e

    async def get_task(self, task_gid: str) -> Task:
        """タスクを1件取得（プロジェクト注記なし）"""
        try:
            data = await self.get_single(f'tasks/{task_gid}', {'opt_fields': self.TASK_FIELDS})
            return Task.from_api(data)
        except Exception as e:
            raise ResourceFetchError("タスクの取得", f"task {task_gid}", e) from e
