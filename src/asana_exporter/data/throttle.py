"""
同時リクエスト数の制御

実行中リクエスト数のカウンタと FIFO の待ち行列で、
Asana API への同時リクエスト数を上限以下に保つ
"""

import asyncio
import itertools
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class Permit:
    """1件の実行中リクエストに対する許可"""
    number: int


class ThrottleGate:
    """
    同時リクエスト数の上限を管理するゲート

    空きがあれば acquire() は即座に許可を返し、なければ到着順に待機させる。
    release() は待機中の先頭へ枠をそのまま引き渡す（カウンタは変化しない）。
    状態はイベントループのスレッド上でのみ変更される。
    """

    MAX_CONCURRENT = 3

    def __init__(self, max_concurrent: int = MAX_CONCURRENT):
        if max_concurrent < 1:
            raise ValueError("max_concurrent は 1 以上である必要があります")

        self.max_concurrent = max_concurrent
        self._in_flight = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._outstanding = set()
        self._counter = itertools.count(1)
        self.logger = logging.getLogger(__name__)

    @property
    def in_flight(self) -> int:
        """現在許可済みの件数"""
        return self._in_flight

    @property
    def waiting(self) -> int:
        """待機中の件数"""
        return sum(1 for waiter in self._waiters if not waiter.done())

    def _grant(self) -> Permit:
        permit = Permit(next(self._counter))
        self._outstanding.add(permit.number)
        return permit

    async def acquire(self) -> Permit:
        """
        リクエスト枠を取得

        Returns:
            取得した許可（release() に渡す）
        """
        if self._in_flight < self.max_concurrent:
            self._in_flight += 1
            return self._grant()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self.logger.debug(f"リクエスト枠の空き待ち: 実行中={self._in_flight}, 待機={len(self._waiters)}")

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # 枠を受け取った直後にキャンセルされた場合は次へ引き渡す
                self._hand_over()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

        return self._grant()

    def release(self, permit: Permit) -> None:
        """
        リクエスト枠を解放

        Args:
            permit: acquire() で取得した許可
        """
        if permit.number not in self._outstanding:
            raise RuntimeError(f"解放済みまたは不明な許可です: {permit.number}")
        self._outstanding.discard(permit.number)
        self._hand_over()

    def _hand_over(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_flight -= 1

    @asynccontextmanager
    async def slot(self):
        """acquire/release をまとめたコンテキストマネージャ"""
        permit = await self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)
