"""
レート制限時の再試行

429 応答に対して指数バックオフで再試行する。429 以外のエラーは再試行しない。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from .throttle import ThrottleGate
from ..utils.error_handler import RateLimitError, RateLimitExceededError


logger = logging.getLogger(__name__)


def _header_number(headers: Mapping[str, str], name: str, default: float) -> float:
    value = headers.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        # HTTP 日付形式などは解析せずデフォルトにフォールバック
        logger.warning(f"{name} ヘッダーの解析に失敗: {value}")
        return default


@dataclass(frozen=True)
class RateLimitState:
    """レスポンスヘッダーから読み取ったレート制限情報"""
    remaining: int = 100
    limit: int = 100
    reset: int = 0
    retry_after: float = 0.0

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, str]]) -> 'RateLimitState':
        """
        レスポンスヘッダーからレート制限情報を作成

        Args:
            headers: レスポンスヘッダー（requests の大文字小文字を区別しない辞書を想定）
        """
        if headers is None:
            return cls()
        return cls(
            remaining=int(_header_number(headers, 'x-ratelimit-remaining', 100)),
            limit=int(_header_number(headers, 'x-ratelimit-limit', 100)),
            reset=int(_header_number(headers, 'x-ratelimit-reset', 0)),
            retry_after=max(_header_number(headers, 'retry-after', 0.0), 0.0),
        )


class RetryPolicy:
    """
    レート制限の再試行ポリシー

    1回の試行ごとに ThrottleGate の枠を取得し、試行が終わると解放する。
    待機中は枠を保持しない。
    """

    MAX_RETRIES = 5
    BASE_DELAY = 2.0  # 秒

    def __init__(self, gate: ThrottleGate, max_retries: int = MAX_RETRIES,
                 base_delay: float = BASE_DELAY,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        RetryPolicy を初期化

        Args:
            gate: 同時リクエスト数を制御するゲート
            max_retries: 429 に対する最大再試行回数
            base_delay: 指数バックオフの基準待機時間（秒）
            sleep: 待機に使うコルーチン関数
        """
        if max_retries < 0:
            raise ValueError("max_retries は 0 以上である必要があります")

        self.gate = gate
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.rate_limited_count = 0

    def backoff_delay(self, retry_count: int, rate_limit: Optional[RateLimitState]) -> float:
        """
        待機時間を計算

        Args:
            retry_count: これまでの再試行回数（0 始まり）
            rate_limit: 429 応答のレート制限情報

        Returns:
            待機時間（秒）
        """
        delay = self.base_delay * (2 ** retry_count)
        if rate_limit is not None and rate_limit.retry_after > 0:
            delay = max(delay, rate_limit.retry_after)
        return delay

    async def execute(self, attempt_fn: Callable[[], Awaitable[Any]], description: str = "") -> Any:
        """
        試行関数をレート制限の再試行付きで実行

        Args:
            attempt_fn: 1回のネットワーク呼び出しを行うコルーチン関数
            description: ログ用の説明

        Returns:
            attempt_fn の戻り値

        Raises:
            RateLimitExceededError: 再試行回数を使い切った場合
        """
        retry_count = 0
        while True:
            try:
                async with self.gate.slot():
                    return await attempt_fn()
            except RateLimitError as e:
                self.rate_limited_count += 1
                if retry_count >= self.max_retries:
                    attempts = retry_count + 1
                    logger.error(f"レート制限の再試行回数を超えました: {description} ({attempts}回試行)")
                    raise RateLimitExceededError(
                        f"レート制限により処理を継続できません ({attempts}回試行)",
                        attempts=attempts, last_error=e
                    ) from e

                delay = self.backoff_delay(retry_count, e.rate_limit)
                logger.warning(
                    f"レート制限に達しました。{delay:.1f}秒待機します: {description} "
                    f"(再試行 {retry_count + 1}/{self.max_retries})"
                )
                await self.sleep(delay)
                retry_count += 1
