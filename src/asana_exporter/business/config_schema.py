"""
設定ファイル構造定義

Asana エクスポーターの設定ファイルの構造とスキーマを定義します。
"""

from typing import Dict, Any, List
from dataclasses import dataclass, asdict, field
from pathlib import Path


# 選択可能なエクスポート範囲
EXPORT_SCOPES = ["all", "user-only", "assigned-only", "completed-assigned"]

# 出力形式
OUTPUT_FORMATS = ["json", "xlsx"]

DEFAULT_EXPORT_SCOPE = "user-only"


@dataclass
class AsanaConfig:
    """Asana API 関連の設定"""
    access_token: str = ""
    export_scope: str = DEFAULT_EXPORT_SCOPE


@dataclass
class RateLimitConfig:
    """API 呼び出しの流量制御に関する設定"""
    max_concurrent: int = 3
    max_retries: int = 5
    base_delay: float = 2.0        # 秒
    page_limit: int = 100
    chunk_size: int = 10
    inter_chunk_delay: float = 0.2  # 秒
    timeout: int = 30               # 秒


@dataclass
class ExportConfig:
    """エクスポート出力関連の設定"""
    output_directory: str = ""
    formats: List[str] = field(default_factory=lambda: ["json"])

    def __post_init__(self):
        if not self.output_directory:
            self.output_directory = str(Path.home() / "Documents")


@dataclass
class AppConfig:
    """アプリケーション全体の設定"""
    asana: AsanaConfig = None
    rate_limit: RateLimitConfig = None
    export: ExportConfig = None

    def __post_init__(self):
        if self.asana is None:
            self.asana = AsanaConfig()
        if self.rate_limit is None:
            self.rate_limit = RateLimitConfig()
        if self.export is None:
            self.export = ExportConfig()

    def to_dict(self) -> Dict[str, Any]:
        """設定を辞書形式に変換"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppConfig':
        """辞書から設定オブジェクトを作成（未知のキーは無視）"""
        def known(section_cls, values):
            names = section_cls.__dataclass_fields__.keys()
            return {k: v for k, v in (values or {}).items() if k in names}

        return cls(
            asana=AsanaConfig(**known(AsanaConfig, data.get('asana'))),
            rate_limit=RateLimitConfig(**known(RateLimitConfig, data.get('rate_limit'))),
            export=ExportConfig(**known(ExportConfig, data.get('export')))
        )


def validate_app_config(config: Dict[str, Any]) -> None:
    """
    設定辞書の妥当性を検証

    Args:
        config: 検証する設定辞書

    Raises:
        ValueError: 設定が無効な場合
    """
    for section in ("asana", "rate_limit", "export"):
        if section not in config or not isinstance(config[section], dict):
            raise ValueError(f"必須セクション '{section}' が見つかりません")

    asana_config = config["asana"]
    if not isinstance(asana_config.get("access_token", ""), str):
        raise ValueError("access_token は文字列である必要があります")
    if asana_config.get("export_scope", DEFAULT_EXPORT_SCOPE) not in EXPORT_SCOPES:
        raise ValueError(f"export_scope は {', '.join(EXPORT_SCOPES)} のいずれかである必要があります")

    rate_limit = config["rate_limit"]
    for key in ("max_concurrent", "page_limit", "chunk_size", "timeout"):
        value = rate_limit.get(key, 1)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ValueError(f"{key} は正の整数である必要があります")
    max_retries = rate_limit.get("max_retries", 0)
    if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
        raise ValueError("max_retries は 0 以上の整数である必要があります")
    for key in ("base_delay", "inter_chunk_delay"):
        value = rate_limit.get(key, 0)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ValueError(f"{key} は 0 以上の数値である必要があります")
    if rate_limit.get("page_limit", 100) > 100:
        raise ValueError("page_limit は 100 以下である必要があります")

    export_config = config["export"]
    if not isinstance(export_config.get("output_directory", ""), str):
        raise ValueError("output_directory は文字列である必要があります")
    formats = export_config.get("formats", [])
    if not isinstance(formats, list) or not formats:
        raise ValueError("formats は空でないリストである必要があります")
    unknown = [f for f in formats if f not in OUTPUT_FORMATS]
    if unknown:
        raise ValueError(f"未対応の出力形式です: {', '.join(map(str, unknown))}")
