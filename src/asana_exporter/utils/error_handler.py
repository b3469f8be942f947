"""
エラーハンドリング基盤

エクスポート中に発生するエラーを種類ごとに分類し、
ログ記録と利用者向けメッセージへの変換を行う
"""
import logging
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class ErrorType(Enum):
    """エラータイプ分類"""
    API_ERROR = "api_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "auth_error"
    RESPONSE_FORMAT_ERROR = "response_format_error"
    VALIDATION_ERROR = "validation_error"
    FILE_ERROR = "file_error"
    CONFIGURATION_ERROR = "config_error"
    UNKNOWN_ERROR = "unknown_error"


class AsanaExporterError(Exception):
    """アプリケーション基底例外クラス"""

    def __init__(self, message: str, error_type: ErrorType = ErrorType.UNKNOWN_ERROR,
                 details: Optional[Dict[str, Any]] = None, original_error: Optional[Exception] = None):
        """
        Args:
            message: エラーメッセージ
            error_type: エラータイプ
            details: エラー詳細情報
            original_error: 元の例外
        """
        super().__init__(message)
        self.error_type = error_type
        self.details = details or {}
        self.original_error = original_error


class APIError(AsanaExporterError):
    """Asana API がエラー応答を返した"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_data: Optional[Dict] = None, original_error: Optional[Exception] = None,
                 error_type: ErrorType = ErrorType.API_ERROR):
        super().__init__(message, error_type,
                         {'status_code': status_code, 'response_data': response_data},
                         original_error)

    @property
    def status_code(self) -> Optional[int]:
        return self.details.get('status_code')


class RateLimitError(APIError):
    """1回のリクエストが 429 で拒否された"""

    def __init__(self, message: str, rate_limit=None, response_data: Optional[Dict] = None):
        super().__init__(message, status_code=429, response_data=response_data,
                         error_type=ErrorType.RATE_LIMIT_ERROR)
        # data.retry.RateLimitState
        self.rate_limit = rate_limit


class RateLimitExceededError(APIError):
    """429 の再試行回数を使い切った"""

    def __init__(self, message: str, attempts: int, last_error: Optional[RateLimitError] = None):
        super().__init__(message, status_code=429, original_error=last_error,
                         error_type=ErrorType.RATE_LIMIT_ERROR)
        self.details['attempts'] = attempts
        self.attempts = attempts
        self.rate_limit = last_error.rate_limit if last_error is not None else None


class NetworkError(AsanaExporterError):
    """応答を受け取れなかった（タイムアウト・接続失敗）"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, ErrorType.NETWORK_ERROR, original_error=original_error)


class AuthenticationError(AsanaExporterError):
    """401 / 403"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 original_error: Optional[Exception] = None):
        super().__init__(message, ErrorType.AUTHENTICATION_ERROR,
                         {'status_code': status_code}, original_error)


class ResponseFormatError(AsanaExporterError):
    """レスポンスの形式が想定と異なる"""

    def __init__(self, message: str, payload: Optional[Any] = None,
                 original_error: Optional[Exception] = None):
        super().__init__(message, ErrorType.RESPONSE_FORMAT_ERROR,
                         {'payload': payload}, original_error)


class ValidationError(AsanaExporterError):
    """入力値の検証エラー"""

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None):
        super().__init__(message, ErrorType.VALIDATION_ERROR, {'field': field, 'value': value})


class FileError(AsanaExporterError):
    """ファイル操作エラー"""

    def __init__(self, message: str, file_path: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, ErrorType.FILE_ERROR, {'file_path': file_path}, original_error)


class ConfigurationError(AsanaExporterError):
    """設定ファイルの読み書き・検証エラー"""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message, ErrorType.CONFIGURATION_ERROR, {'config_key': config_key})


class ResourceFetchError(AsanaExporterError):
    """
    リソース取得失敗

    元のエラーに「どの操作で」「どのリソースを」取得していたかを1段だけ付加する。
    エラータイプと詳細情報は元のエラーのものを引き継ぐ。
    """

    def __init__(self, operation: str, resource: Optional[str], original_error: Exception):
        target = f" ({resource})" if resource else ""
        if isinstance(original_error, AsanaExporterError):
            error_type = original_error.error_type
            details = dict(original_error.details)
        else:
            error_type = ErrorType.UNKNOWN_ERROR
            details = {}
        details.update({'operation': operation, 'resource': resource})
        super().__init__(f"{operation}に失敗しました{target}: {original_error}",
                         error_type, details, original_error)
        self.operation = operation
        self.resource = resource


@dataclass(frozen=True)
class ErrorProfile:
    """エラータイプごとの表示内容"""
    title: str
    message: str
    suggestions: List[str] = field(default_factory=list)


_PROFILES: Dict[ErrorType, ErrorProfile] = {
    ErrorType.API_ERROR: ErrorProfile(
        "API エラー", "Asana API との通信でエラーが発生しました。",
        ["Asana のステータスページで障害が発生していないか確認してください",
         "対象のワークスペース・プロジェクトへのアクセス権限を確認してください"]),
    ErrorType.RATE_LIMIT_ERROR: ErrorProfile(
        "利用制限エラー", "Asana API の利用制限により処理を継続できませんでした。",
        ["しばらく時間をおいてから再試行してください",
         "エクスポート範囲を絞り込むと API 呼び出し回数を減らせます"]),
    ErrorType.NETWORK_ERROR: ErrorProfile(
        "ネットワークエラー", "ネットワーク接続でエラーが発生しました。インターネット接続を確認してください。",
        ["インターネット接続を確認してください",
         "しばらく時間をおいてから再試行してください"]),
    ErrorType.AUTHENTICATION_ERROR: ErrorProfile(
        "認証エラー", "認証に失敗しました。API トークンを確認してください。",
        ["API トークンが正しく設定されているか確認してください",
         "Asana の開発者コンソールで新しいトークンを生成してください"]),
    ErrorType.RESPONSE_FORMAT_ERROR: ErrorProfile(
        "レスポンス形式エラー", "Asana API から想定外の形式のレスポンスを受信しました。"),
    ErrorType.VALIDATION_ERROR: ErrorProfile("入力エラー", "入力データに問題があります。"),
    ErrorType.FILE_ERROR: ErrorProfile(
        "ファイルエラー", "ファイル操作でエラーが発生しました。",
        ["ファイルの保存先に書き込み権限があるか確認してください",
         "--output で別の保存先を指定してください"]),
    ErrorType.CONFIGURATION_ERROR: ErrorProfile(
        "設定エラー", "設定に問題があります。",
        ["設定ファイル (~/.asana_exporter/config.json) の内容を確認してください"]),
    ErrorType.UNKNOWN_ERROR: ErrorProfile("システムエラー", "予期しないエラーが発生しました。"),
}


def root_cause(error: BaseException) -> BaseException:
    """original_error を辿って最も内側の例外を返す"""
    seen = set()
    while isinstance(error, AsanaExporterError) and error.original_error is not None and id(error) not in seen:
        seen.add(id(error))
        error = error.original_error
    return error


class ErrorHandler:
    """エラーの記録と利用者向けメッセージへの変換"""

    def __init__(self):
        self.logger = logging.getLogger('asana_exporter.error_handler')
        self.error_stats: Dict[str, Any] = {'total_errors': 0, 'errors_by_type': {}}

    @staticmethod
    def profile(error: Exception) -> ErrorProfile:
        if isinstance(error, AsanaExporterError):
            return _PROFILES.get(error.error_type, _PROFILES[ErrorType.UNKNOWN_ERROR])
        return _PROFILES[ErrorType.UNKNOWN_ERROR]

    def describe(self, error: Exception) -> str:
        """エラー1件を利用者向けの1文にする"""
        base = self.profile(error).message
        if not isinstance(error, AsanaExporterError):
            return f"{base} 詳細: {error}"

        details = error.details
        if error.error_type == ErrorType.RATE_LIMIT_ERROR:
            attempts = details.get('attempts')
            tried = f" {attempts}回試行しました。" if attempts else " "
            return f"{base}{tried}しばらく待ってから再実行してください。"
        if error.error_type == ErrorType.API_ERROR and details.get('status_code') == 404:
            return f"{base} リソースが見つかりません。 {error}"
        if error.error_type == ErrorType.API_ERROR and details.get('status_code'):
            return f"{base} (エラーコード: {details['status_code']}) {error}"
        if error.error_type == ErrorType.VALIDATION_ERROR and details.get('field'):
            return f"{base} フィールド '{details['field']}' を確認してください。"
        if error.error_type == ErrorType.FILE_ERROR and details.get('file_path'):
            return f"{base} ファイル: {details['file_path']}"
        return f"{base} {error}"

    def handle_error(self, error: Exception, context: str = "") -> str:
        """ログに記録して利用者向けメッセージを返す"""
        self.log_error(error, context)
        return self.describe(error)

    def log_error(self, error: Exception, context: str = ""):
        """
        エラーをログに記録

        レスポンス本文は記録しない。スタックトレースは DEBUG レベルで出力する。
        """
        summary = f"[{context}] " if context else ""
        if isinstance(error, AsanaExporterError):
            details = {k: v for k, v in error.details.items() if k not in ('response_data', 'payload')}
            self.logger.error(f"{summary}{type(error).__name__} ({error.error_type.value}): {error} {details}")
            cause = root_cause(error)
            if cause is not error:
                self.logger.error(f"{summary}原因: {type(cause).__name__}: {cause}")
        else:
            self.logger.error(f"{summary}{type(error).__name__}: {error}")
        self.logger.debug("".join(traceback.format_exception(type(error), error, error.__traceback__)))

    def record_error_stats(self, error: Exception):
        key = error.error_type.value if isinstance(error, AsanaExporterError) else type(error).__name__
        self.error_stats['total_errors'] += 1
        by_type = self.error_stats['errors_by_type']
        by_type[key] = by_type.get(key, 0) + 1

    def get_error_stats(self) -> Dict[str, Any]:
        return {
            'total_errors': self.error_stats['total_errors'],
            'errors_by_type': dict(self.error_stats['errors_by_type'])
        }

    def format_error_for_user(self, error: Exception, context: str = "", log: bool = True) -> Dict[str, Any]:
        """
        ユーザー向けのエラー情報を整形

        Args:
            error: 発生したエラー
            context: エラー発生時の処理内容
            log: False の場合はログに記録しない（呼び出し元で記録済みの場合）

        Returns:
            title / message / context と、あれば suggestions を持つ辞書
        """
        profile = self.profile(error)
        info: Dict[str, Any] = {
            'title': profile.title,
            'message': self.handle_error(error, context) if log else self.describe(error),
            'context': context,
        }
        if profile.suggestions:
            info['suggestions'] = list(profile.suggestions)
        return info


_error_handler = ErrorHandler()


def handle_error(error: Exception, context: str = "") -> str:
    return _error_handler.handle_error(error, context)


def format_error_for_user(error: Exception, context: str = "", log: bool = True) -> Dict[str, Any]:
    return _error_handler.format_error_for_user(error, context, log)


def get_error_stats() -> Dict[str, Any]:
    return _error_handler.get_error_stats()


class ErrorContext:
    """
    ブロック内の例外を記録するコンテキストマネージャ

    reraise=False の場合は例外を抑制し、error 属性に保持する
    """

    def __init__(self, context: str, reraise: bool = True,
                 on_error: Optional[Callable[[Exception], None]] = None):
        self.context = context
        self.reraise = reraise
        self.on_error = on_error
        self.error: Optional[Exception] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not isinstance(exc_val, Exception):
            return False

        self.error = exc_val
        _error_handler.record_error_stats(exc_val)
        _error_handler.log_error(exc_val, self.context)
        if self.on_error is not None:
            try:
                self.on_error(exc_val)
            except Exception as callback_error:
                _error_handler.log_error(callback_error, f"{self.context} - on_error")
        return not self.reraise
