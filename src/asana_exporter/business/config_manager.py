"""
設定管理 - ConfigManager クラス

~/.asana_exporter/config.json に AppConfig を保存・読み込みする。
アクセストークンは同じディレクトリの key.key で Fernet 暗号化して保存する。
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from .config_schema import AppConfig, validate_app_config
from ..utils.error_handler import ConfigurationError, FileError

logger = logging.getLogger(__name__)

TOKEN_KEY = "access_token"


class TokenCipher:
    """鍵ファイルを使ったアクセストークンの暗号化・復号化"""

    def __init__(self, key_file: Path):
        self.key_file = key_file
        self._fernet = Fernet(self._load_or_create_key())

    def _load_or_create_key(self) -> bytes:
        if self.key_file.exists():
            return self.key_file.read_bytes()

        key = Fernet.generate_key()
        self.key_file.write_bytes(key)
        try:
            os.chmod(self.key_file, 0o600)
        except OSError:
            logger.warning(f"鍵ファイルの権限を制限できませんでした: {self.key_file}")
        logger.info("暗号化キーを新規作成しました")
        return key

    def encrypt(self, plain: str) -> str:
        if not plain:
            return ""
        return self._fernet.encrypt(plain.encode('utf-8')).decode('ascii')

    def decrypt(self, token: str) -> str:
        """
        Raises:
            ConfigurationError: 鍵が異なる・内容が壊れているなどで復号化できない場合
        """
        if not token:
            return ""
        try:
            return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')
        except (InvalidToken, ValueError) as e:
            logger.error(f"アクセストークンの復号化に失敗しました: {type(e).__name__}")
            raise ConfigurationError("保存されたアクセストークンを復号化できません。--save-token で保存し直してください",
                                     config_key="asana.access_token")


class ConfigManager:
    """
    設定ファイルの読み書き

    読み込み時は欠けている項目をデフォルト値で補い、値を検証してから AppConfig を返す。
    """

    def __init__(self, config_dir: Optional[str] = None):
        """
        Args:
            config_dir: 設定ディレクトリ（None の場合は ~/.asana_exporter）
        """
        self.config_dir = Path(config_dir) if config_dir else Path.home() / ".asana_exporter"
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.key_file = self.config_dir / "key.key"
        self.cipher = TokenCipher(self.key_file)
        logger.debug(f"設定ディレクトリ: {self.config_dir}")

    def load_config(self) -> AppConfig:
        """
        設定を読み込む

        Returns:
            設定（ファイルがなければデフォルト）

        Raises:
            ConfigurationError: JSON が壊れている・値が無効・トークンを復号化できない場合
        """
        if not self.config_file.exists():
            logger.info("設定ファイルがないため既定の設定を使用します")
            return AppConfig()

        try:
            raw = json.loads(self.config_file.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"設定ファイルの形式が無効です: {e}")
        except OSError as e:
            raise ConfigurationError(f"設定ファイルを読み込めません: {e}")
        if not isinstance(raw, dict):
            raise ConfigurationError("設定ファイルの最上位はオブジェクトである必要があります")

        merged = self._merge_with_defaults(raw)
        merged["asana"][TOKEN_KEY] = self.cipher.decrypt(merged["asana"].get(TOKEN_KEY) or "")

        try:
            validate_app_config(merged)
        except ValueError as e:
            raise ConfigurationError(f"設定値が無効です: {e}")

        logger.info(f"設定を読み込みました: {self.config_file}")
        return AppConfig.from_dict(merged)

    @staticmethod
    def _merge_with_defaults(raw: Dict[str, Any]) -> Dict[str, Any]:
        merged = AppConfig().to_dict()
        for section, defaults in merged.items():
            values = raw.get(section)
            if isinstance(values, dict):
                defaults.update(values)
        unknown = sorted(set(raw) - set(merged))
        if unknown:
            logger.warning(f"設定ファイルの未知のセクションを無視します: {', '.join(unknown)}")
        return merged

    def save_config(self, config: AppConfig) -> None:
        """
        設定を保存（トークンは暗号化）

        Raises:
            ConfigurationError: 設定値が無効な場合
            FileError: 書き込みに失敗した場合
        """
        data = config.to_dict()
        try:
            validate_app_config(data)
        except ValueError as e:
            raise ConfigurationError(f"設定値が無効です: {e}")

        data["asana"][TOKEN_KEY] = self.cipher.encrypt(data["asana"].get(TOKEN_KEY) or "")
        self._write_atomic(data)
        logger.info(f"設定を保存しました: {self.config_file}")

    def save_access_token(self, access_token: str, export_scope: Optional[str] = None) -> AppConfig:
        """
        既存の設定を保ったままアクセストークン（と範囲）だけを更新して保存

        Returns:
            保存した設定
        """
        config = self.load_config() if self.config_exists() else AppConfig()
        config.asana.access_token = access_token
        if export_scope:
            config.asana.export_scope = export_scope
        self.save_config(config)
        return config

    def _write_atomic(self, data: Dict[str, Any]) -> None:
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            temp_file.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding='utf-8')
            temp_file.replace(self.config_file)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise FileError(f"設定ファイルの保存に失敗しました: {e}",
                            file_path=str(self.config_file), original_error=e)

    def reset_config(self) -> None:
        """設定ファイルと暗号化キーを削除し、新しい鍵を作成する"""
        for path in (self.config_file, self.key_file):
            if path.exists():
                path.unlink()
        self.cipher = TokenCipher(self.key_file)
        logger.info("設定を初期化しました")

    def get_config_path(self) -> str:
        return str(self.config_file.absolute())

    def config_exists(self) -> bool:
        return self.config_file.exists()
