"""エラー処理とログ設定のテスト"""

import logging
from pathlib import Path

import pytest

from asana_exporter.data.retry import RateLimitState
from asana_exporter.utils.error_handler import (
    APIError, ErrorContext, ErrorHandler, ErrorType, NetworkError, RateLimitError,
    RateLimitExceededError, ResourceFetchError
)
from asana_exporter.utils.logger import (
    PerformanceLogger, TokenMaskFilter, get_log_files, initialize_logging, mask_token
)


class TestResourceFetchError:
    """リソース取得失敗のテスト"""

    def test_inherits_type_and_details(self):
        original = APIError("サーバーエラー", status_code=503)

        error = ResourceFetchError("タスク一覧の取得", "project 200", original)

        assert error.error_type == ErrorType.API_ERROR
        assert error.details['status_code'] == 503
        assert error.details['resource'] == "project 200"
        assert error.original_error is original
        assert "project 200" in str(error)

    def test_plain_exception_is_unknown(self):
        error = ResourceFetchError("ユーザー情報の取得", None, KeyError("gid"))

        assert error.error_type == ErrorType.UNKNOWN_ERROR

    def test_rate_limit_exceeded_keeps_last_state(self):
        last = RateLimitError("429", rate_limit=RateLimitState(retry_after=30))

        error = RateLimitExceededError("諦めました", attempts=6, last_error=last)

        assert error.rate_limit.retry_after == 30
        assert error.details['attempts'] == 6


class TestErrorHandler:
    """ErrorHandler のテスト"""

    def test_user_message_for_rate_limit(self):
        handler = ErrorHandler()
        error = RateLimitExceededError("諦めました", attempts=6)

        info = handler.format_error_for_user(error, "エクスポート")

        assert info['title'] == "利用制限エラー"
        assert "6回" in info['message']
        assert info['suggestions']

    def test_stats(self):
        handler = ErrorHandler()
        handler.record_error_stats(NetworkError("切断"))
        handler.record_error_stats(ValueError("x"))

        stats = handler.get_error_stats()

        assert stats['total_errors'] == 2
        assert stats['errors_by_type'] == {'network_error': 1, 'ValueError': 1}

    def test_unknown_error_title(self):
        assert ErrorHandler().format_error_for_user(RuntimeError("x"))['title'] == "システムエラー"


class TestErrorContext:
    """ErrorContext のテスト"""

    def test_reraises_by_default(self):
        with pytest.raises(NetworkError):
            with ErrorContext("テスト"):
                raise NetworkError("切断")

    def test_suppresses_and_calls_back(self):
        seen = []

        with ErrorContext("テスト", reraise=False, on_error=seen.append) as context:
            raise NetworkError("切断")

        assert isinstance(context.error, NetworkError)
        assert len(seen) == 1


class TestLogging:
    """ログ設定のテスト"""

    def test_initialize_creates_files(self, tmp_path):
        logger = initialize_logging(log_dir=str(tmp_path), level="DEBUG", debug_mode=True)
        logger.info("テストメッセージ")

        files = get_log_files()

        assert logger.name == 'asana_exporter'
        assert 'main' in files
        assert Path(files["main"]).exists()

    def test_performance_logger_measures_duration(self):
        with PerformanceLogger("計測") as perf:
            perf.log_checkpoint("途中")

        assert perf.duration >= 0
        assert [name for name, _ in perf.checkpoints] == ["途中"]


class TestTokenMasking:
    """トークンの伏せ字のテスト"""

    def test_mask_token_keeps_last_four(self):
        assert mask_token("1/1234567890abcdef") == "********cdef"
        assert mask_token("short") == "*****"
        assert mask_token("") == ""

    def test_filter_masks_bearer_and_registered_tokens(self):
        token_filter = TokenMaskFilter()
        token_filter.register("1/secret-token-value")
        record = logging.LogRecord("asana_exporter", logging.INFO, __file__, 1,
                                   "ヘッダー: Bearer %s / 設定: %s",
                                   ("abcdefghijklmnop", "1/secret-token-value"), None)

        assert token_filter.filter(record)

        message = record.getMessage()
        assert "abcdefghijklmnop" not in message
        assert "1/secret-token-value" not in message
        assert "mnop" in message
