"""
複数 ID に対する並行取得

ID ごとの取得処理を並行に実行する。同時実行数はクライアントの ThrottleGate で制限され、
ここでは追加の上限を設けない。チャンク版は ID を一定数ずつに分け、
チャンク間に待機を挟んでバースト的なリクエストを抑える。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar('T')

DEFAULT_CHUNK_SIZE = 10
DEFAULT_INTER_CHUNK_DELAY = 0.2  # 秒

logger = logging.getLogger(__name__)


def chunk_ids(ids: Sequence[str], chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[List[str]]:
    """
    ID リストを固定サイズのチャンクに分割

    Args:
        ids: ID のリスト
        chunk_size: チャンクサイズ（最後のチャンクはこれより小さくなる場合がある）

    Returns:
        チャンクのリスト
    """
    if chunk_size < 1:
        raise ValueError("chunk_size は 1 以上である必要があります")
    ids = list(ids)
    return [ids[i:i + chunk_size] for i in range(0, len(ids), chunk_size)]


async def fetch_for_many(ids: Iterable[str],
                         fetcher: Callable[[str], Awaitable[T]]) -> Dict[str, T]:
    """
    ID ごとの取得を並行に実行

    最初に失敗した取得のエラーを送出し、残りの取得はキャンセルする（部分的な結果は返さない）。

    Args:
        ids: 対象 ID（重複は1回だけ取得）
        fetcher: 1件分を取得するコルーチン関数

    Returns:
        ID をキーとした取得結果（入力順）
    """
    unique_ids = list(dict.fromkeys(ids))
    if not unique_ids:
        return {}

    futures = [asyncio.ensure_future(fetcher(item_id)) for item_id in unique_ids]
    try:
        results = await asyncio.gather(*futures)
    except BaseException:
        for future in futures:
            if not future.done():
                future.cancel()
        await asyncio.gather(*futures, return_exceptions=True)
        raise

    return dict(zip(unique_ids, results))


async def fetch_for_many_chunked(ids: Iterable[str],
                                 fetcher: Callable[[str], Awaitable[T]],
                                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                                 inter_chunk_delay: float = DEFAULT_INTER_CHUNK_DELAY,
                                 on_chunk: Optional[Callable[[int, int], Any]] = None,
                                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> Dict[str, T]:
    """
    ID をチャンクに分けて順番に並行取得

    1チャンクの取得がすべて終わってから次のチャンクを開始し、
    チャンク間（最後のチャンクの後を除く）で inter_chunk_delay 秒待機する。

    Args:
        ids: 対象 ID
        fetcher: 1件分を取得するコルーチン関数
        chunk_size: チャンクサイズ
        inter_chunk_delay: チャンク間の待機時間（秒）
        on_chunk: 各チャンク開始前に (チャンク番号, チャンク総数) で呼ばれる関数
        sleep: 待機に使うコルーチン関数

    Returns:
        ID をキーとした取得結果
    """
    chunks = chunk_ids(list(dict.fromkeys(ids)), chunk_size)
    results: Dict[str, T] = {}

    for index, chunk in enumerate(chunks, start=1):
        if on_chunk is not None:
            on_chunk(index, len(chunks))
        logger.debug(f"チャンク {index}/{len(chunks)} を取得しています ({len(chunk)}件)")

        results.update(await fetch_for_many(chunk, fetcher))

        if index < len(chunks):
            await sleep(inter_chunk_delay)

    return results


def flatten(results: Dict[str, List[T]], ids: Optional[Iterable[str]] = None) -> List[T]:
    """
    ID ごとのリスト結果を1つのリストに連結

    Args:
        results: fetch_for_many の戻り値
        ids: 連結順（省略時は results の順）
    """
    order = list(dict.fromkeys(ids)) if ids is not None else list(results)
    flattened: List[T] = []
    for item_id in order:
        flattened.extend(results.get(item_id, []))
    return flattened


async def fetch_tasks_by_id(client, task_gids: Iterable[str]) -> List[Any]:
    """
    タスクを ID 指定でまとめて取得

    Args:
        client: AsanaClient
        task_gids: タスク ID

    Returns:
        入力順のタスクのリスト
    """
    task_gids = list(dict.fromkeys(task_gids))
    results = await fetch_for_many(task_gids, client.get_task)
    return [results[gid] for gid in task_gids]
