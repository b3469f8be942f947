"""
ログ設定

エクスポート1回分の実行ログを日次ファイル・エラーファイル・コンソールに出力する。
アクセストークンはどのハンドラーにも平文で出力しない。
"""
import logging
import logging.handlers
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

APP_LOGGER = 'asana_exporter'
PERF_LOGGER = 'asana_exporter.performance'
API_LOGGER = 'asana_exporter.api'

DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def mask_token(token: Optional[str]) -> str:
    """トークンを末尾4文字以外伏せ字にする"""
    if not token:
        return ""
    if len(token) <= 8:
        return "*" * len(token)
    return "*" * 8 + token[-4:]


class TokenMaskFilter(logging.Filter):
    """
    ログメッセージ中のアクセストークンを伏せ字に置き換えるフィルター

    Authorization ヘッダー形式（Bearer ...）と、register() で登録したトークンの両方を対象にする。
    """

    _BEARER = re.compile(r'(Bearer\s+)([^\s\'",]+)')

    def __init__(self):
        super().__init__()
        self._secrets: Set[str] = set()

    def register(self, secret: str) -> None:
        if secret:
            self._secrets.add(secret)

    def mask(self, text: str) -> str:
        text = self._BEARER.sub(lambda m: m.group(1) + mask_token(m.group(2)), text)
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, mask_token(secret))
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self.mask(message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


_token_filter = TokenMaskFilter()


def register_secret(secret: str) -> None:
    """ログから伏せるトークンを登録"""
    _token_filter.register(secret)


@dataclass
class LogSettings:
    """ハンドラーごとのレベルとローテーション設定"""
    level: str = "INFO"
    console_level: str = "WARNING"
    debug_mode: bool = False
    max_file_size_mb: int = 10
    backup_count: int = 5
    main_backup_days: int = 30
    performance: bool = True

    @property
    def file_level(self) -> int:
        return getattr(logging, self.level.upper(), logging.INFO)

    @property
    def stream_level(self) -> int:
        if self.debug_mode:
            return logging.DEBUG
        return max(getattr(logging, self.console_level.upper(), logging.WARNING), self.file_level)


class ExportLogging:
    """ログファイルの配置とハンドラーの組み立て"""

    def __init__(self, log_dir: Optional[str] = None, settings: Optional[LogSettings] = None):
        """
        Args:
            log_dir: ログファイル保存ディレクトリ（None の場合は APPDATA またはホーム配下）
            settings: ログ設定
        """
        if log_dir is None:
            base = os.getenv('APPDATA', os.path.expanduser('~'))
            log_dir = Path(base) / '.asana_exporter' / 'logs'
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.settings = settings or LogSettings()

        stamp = datetime.now().strftime('%Y%m%d')
        self.files: Dict[str, Path] = {
            'main': self.log_dir / f"asana_exporter_{stamp}.log",
            'debug': self.log_dir / f"asana_exporter_debug_{stamp}.log",
            'error': self.log_dir / f"asana_exporter_error_{stamp}.log",
            'performance': self.log_dir / f"performance_{stamp}.log",
        }

    def _rotating(self, kind: str, level: int, formatter: logging.Formatter) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            filename=self.files[kind],
            maxBytes=self.settings.max_file_size_mb * 1024 * 1024,
            backupCount=self.settings.backup_count,
            encoding='utf-8'
        )
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(_token_filter)
        return handler

    def _daily(self, kind: str, level: int, formatter: logging.Formatter, backup_days: int) -> logging.Handler:
        handler = logging.handlers.TimedRotatingFileHandler(
            filename=self.files[kind],
            when='midnight',
            interval=1,
            backupCount=backup_days,
            encoding='utf-8'
        )
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(_token_filter)
        return handler

    def build_handlers(self) -> List[logging.Handler]:
        """アプリケーションロガー用のハンドラーを作成"""
        detailed = logging.Formatter(DETAILED_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        settings = self.settings

        handlers = [self._daily('main', settings.file_level, detailed, settings.main_backup_days)]
        if settings.debug_mode or settings.file_level <= logging.DEBUG:
            handlers.append(self._rotating('debug', logging.DEBUG, detailed))
        handlers.append(self._rotating('error', logging.ERROR, detailed))

        console = logging.StreamHandler()
        console.setLevel(settings.stream_level)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        console.addFilter(_token_filter)
        handlers.append(console)
        return handlers

    def install(self) -> logging.Logger:
        """
        ハンドラーを差し替えてアプリケーションロガーを返す

        Returns:
            asana_exporter ロガー
        """
        logger = _reset_logger(APP_LOGGER)
        for handler in self.build_handlers():
            logger.addHandler(handler)

        if self.settings.performance:
            perf_logger = _reset_logger(PERF_LOGGER)
            perf_logger.setLevel(logging.INFO)
            perf_logger.addHandler(self._daily(
                'performance', logging.INFO,
                logging.Formatter('%(asctime)s - PERF - %(message)s', datefmt='%Y-%m-%d %H:%M:%S'),
                backup_days=7
            ))

        logger.info(f"ログ出力を開始しました (レベル: {self.settings.level}, 出力先: {self.log_dir})")
        if self.settings.debug_mode:
            logger.debug(f"デバッグログ: {self.files['debug']}")
        return logger

    def remove_expired(self, days: int) -> List[Path]:
        """
        保持期間を過ぎたログファイルを削除

        Returns:
            削除したファイル
        """
        logger = logging.getLogger(APP_LOGGER)
        cutoff = (datetime.now() - timedelta(days=days)).timestamp()
        removed = []
        for path in self.log_dir.glob("*.log*"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed.append(path)
            except OSError as e:
                logger.warning(f"ログファイルを削除できませんでした: {path} - {e}")
        if removed:
            logger.info(f"古いログファイルを{len(removed)}件削除しました")
        return removed


def _reset_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    return logger


_active: Optional[ExportLogging] = None


def initialize_logging(log_dir: Optional[str] = None, level: str = "INFO",
                       debug_mode: bool = False) -> logging.Logger:
    """
    アプリケーション全体のログ設定を初期化

    Args:
        log_dir: ログディレクトリ
        level: ファイルに出力する最低レベル
        debug_mode: デバッグログファイルとコンソールの DEBUG 出力を有効にする

    Returns:
        asana_exporter ロガー
    """
    global _active
    _active = ExportLogging(log_dir, LogSettings(level=level, debug_mode=debug_mode))
    return _active.install()


def get_log_files() -> Dict[str, str]:
    """初期化済みのログファイルのパス一覧"""
    if _active is None:
        return {}
    return {kind: str(path) for kind, path in _active.files.items()}


def cleanup_old_logs(days: int = 30) -> None:
    """古いログファイルを削除（未初期化なら何もしない）"""
    if _active is not None:
        _active.remove_expired(days)


class PerformanceLogger:
    """処理時間の計測"""

    def __init__(self, operation_name: str, logger_name: str = PERF_LOGGER):
        self.operation_name = operation_name
        self.logger = logging.getLogger(logger_name)
        self.checkpoints: List[Tuple[str, float]] = []
        self._started: Optional[float] = None
        self._finished: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.info(f"開始: {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._finished = time.perf_counter()
        if exc_type is None:
            self.logger.info(f"完了: {self.operation_name} ({self.duration:.3f}秒)")
        else:
            self.logger.error(f"失敗: {self.operation_name} ({self.duration:.3f}秒) - {exc_val}")
        return False

    @property
    def duration(self) -> float:
        """経過時間（秒）"""
        if self._started is None:
            return 0.0
        return (self._finished or time.perf_counter()) - self._started

    def log_checkpoint(self, checkpoint_name: str):
        """途中経過を記録"""
        if self._started is None:
            return
        elapsed = self.duration
        self.checkpoints.append((checkpoint_name, elapsed))
        self.logger.info(f"{self.operation_name} - {checkpoint_name} ({elapsed:.3f}秒経過)")


def log_api_request(method: str, endpoint: str, status_code: int, duration: float,
                    response_size: int = 0, retry_count: int = 0):
    """
    HTTP リクエスト1回分を asana_exporter.api に記録

    status_code 0 は応答を受け取れなかったことを表す。
    """
    logger = logging.getLogger(API_LOGGER)
    message = (f"{method} {endpoint} -> {status_code or '接続失敗'} "
               f"({duration * 1000:.0f}ms, {response_size}B, 再試行 {retry_count})")
    if status_code == 0 or status_code >= 500:
        logger.warning(message)
    elif status_code == 429:
        logger.info(message)
    else:
        logger.debug(message)
