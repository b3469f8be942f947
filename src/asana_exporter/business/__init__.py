# ビジネスロジックレイヤー - エクスポート制御、範囲絞り込み、ファイル出力、設定管理

from .config_manager import ConfigManager
from .config_schema import (
    AppConfig, AsanaConfig, RateLimitConfig, ExportConfig,
    EXPORT_SCOPES, OUTPUT_FORMATS, DEFAULT_EXPORT_SCOPE
)
from .batch_fetcher import chunk_ids, fetch_for_many, fetch_for_many_chunked, flatten, fetch_tasks_by_id
from .scope_filter import filter_by_scope, matches_scope
from .export_orchestrator import ExportOrchestrator, export_asana_data
from .record_writer import RecordWriter

__all__ = [
    'ConfigManager',
    'AppConfig', 'AsanaConfig', 'RateLimitConfig', 'ExportConfig',
    'EXPORT_SCOPES', 'OUTPUT_FORMATS', 'DEFAULT_EXPORT_SCOPE',
    'chunk_ids', 'fetch_for_many', 'fetch_for_many_chunked', 'flatten', 'fetch_tasks_by_id',
    'filter_by_scope', 'matches_scope',
    'ExportOrchestrator', 'export_asana_data',
    'RecordWriter'
]
