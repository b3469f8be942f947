"""
テスト共通のフィクスチャ

Asana API の代わりに FakeAsanaAPI を使い、エンドポイントごとに応答を登録する。
待機処理は RecordingSleep に差し替えて、実際には待たずに待機時間だけを記録する。
"""

import json
import threading
from collections import deque
from typing import Any, Dict, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from asana_exporter.data.asana_client import AsanaClient


def make_response(status: int = 200, payload: Any = None,
                  headers: Optional[Dict[str, str]] = None) -> requests.Response:
    """requests.Response を組み立てる"""
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload if payload is not None else {}).encode('utf-8')
    response.headers = CaseInsensitiveDict(headers or {})
    response.reason = 'OK' if status < 400 else 'Error'
    response.encoding = 'utf-8'
    return response


class FakeAsanaAPI:
    """
    Session.request の代わりに呼ばれる偽 API

    (エンドポイント, offset) ごとに応答のキューを持つ。
    キューに1件だけ残っている応答は繰り返し返す。
    """

    def __init__(self):
        self._routes: Dict[tuple, deque] = {}
        self._lock = threading.Lock()
        self.calls: List[Dict[str, Any]] = []

    def add(self, endpoint: str, *responses: requests.Response, offset: Optional[str] = None):
        self._routes.setdefault((endpoint, offset), deque()).extend(responses)
        return self

    def replace(self, endpoint: str, *responses: requests.Response, offset: Optional[str] = None):
        self._routes[(endpoint, offset)] = deque(responses)
        return self

    def add_single(self, endpoint: str, data: Dict[str, Any]):
        return self.add(endpoint, make_response(200, {'data': data}))

    def add_pages(self, endpoint: str, pages: List[List[Dict[str, Any]]]):
        """ページネーション付きの一覧を登録（offset は page-1, page-2, ...）"""
        for index, page in enumerate(pages):
            offset = None if index == 0 else f"page-{index}"
            next_page = {'offset': f"page-{index + 1}"} if index < len(pages) - 1 else None
            self.add(endpoint, make_response(200, {'data': page, 'next_page': next_page}), offset=offset)
        return self

    def add_list(self, endpoint: str, items: List[Dict[str, Any]]):
        return self.add_pages(endpoint, [items])

    def calls_to(self, endpoint: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call['endpoint'] == endpoint]

    def __call__(self, method: str = 'GET', url: str = '', params=None, timeout=None, **kwargs):
        endpoint = url[len(AsanaClient.BASE_URL):] if url.startswith(AsanaClient.BASE_URL) else url
        params = dict(params or {})
        with self._lock:
            self.calls.append({'method': method, 'endpoint': endpoint, 'params': params})
            queue = self._routes.get((endpoint, params.get('offset')))
            if not queue:
                return make_response(404, {'errors': [{'message': f'{endpoint} not found'}]})
            return queue.popleft() if len(queue) > 1 else queue[0]


class RecordingSleep:
    """待機せずに待機時間を記録する sleep の代替"""

    def __init__(self, on_sleep=None):
        self.delays: List[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float):
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(delay)


@pytest.fixture
def fake_api() -> FakeAsanaAPI:
    return FakeAsanaAPI()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def client(fake_api, recording_sleep):
    """FakeAsanaAPI に接続した AsanaClient"""
    asana_client = AsanaClient('test-token', sleep=recording_sleep)
    asana_client.session.request = fake_api
    yield asana_client
    asana_client.close()


def task_payload(gid: str, name: str = "", assignee: Optional[str] = None,
                 created_by: Optional[str] = None, completed: bool = False,
                 num_subtasks: int = 0, has_stories: bool = False,
                 parent: Optional[str] = None) -> Dict[str, Any]:
    """タスク（サブタスク）の API レスポンス要素を作成"""
    return {
        'gid': gid,
        'name': name or f"Task {gid}",
        'created_at': '2024-01-01T00:00:00.000Z',
        'completed_at': '2024-01-15T09:30:00.000Z' if completed else None,
        'due_on': '2024-01-20',
        'assignee': {'gid': assignee, 'name': f"User {assignee}"} if assignee else None,
        'created_by': {'gid': created_by, 'name': f"User {created_by}"} if created_by else None,
        'parent': {'gid': parent} if parent else None,
        'projects': [],
        'tags': [{'gid': '900', 'name': 'design'}],
        'notes': 'メモ',
        'num_subtasks': num_subtasks,
        'stories': [{'gid': f"{gid}-s"}] if has_stories else [],
        'permalink_url': f"https://app.asana.com/0/0/{gid}",
    }


def story_payload(gid: str, target: str, text: str = "コメント") -> Dict[str, Any]:
    return {
        'gid': gid,
        'text': text,
        'created_at': '2024-01-16T00:00:00.000Z',
        'created_by': {'gid': '1', 'name': 'Demo User'},
        'type': 'comment',
        'resource_subtype': 'comment_added',
        'target': {'gid': target},
    }
