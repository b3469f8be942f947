"""
Asana エクスポーター メインエントリーポイント

設定とログを初期化し、エクスポートを1回実行して結果をファイルに出力する
"""
import argparse
import asyncio
import os
import sys
from typing import List, Optional

from .business.config_manager import ConfigManager
from .business.config_schema import EXPORT_SCOPES, OUTPUT_FORMATS
from .business.export_orchestrator import export_asana_data
from .business.record_writer import RecordWriter
from .utils.error_handler import format_error_for_user
from .utils.logger import initialize_logging, cleanup_old_logs, PerformanceLogger


def build_parser() -> argparse.ArgumentParser:
    """コマンドライン引数の定義"""
    parser = argparse.ArgumentParser(
        prog="asana-exporter",
        description="Asana のタスク・サブタスク・コメントを JSON / Excel にエクスポートします",
    )
    parser.add_argument("--token", help="Asana パーソナルアクセストークン（省略時は ASANA_ACCESS_TOKEN または保存済みの設定）")
    parser.add_argument("--scope", choices=EXPORT_SCOPES, help="エクスポート範囲")
    parser.add_argument("--output", help="出力先ディレクトリ")
    parser.add_argument("--format", dest="formats", nargs="+", choices=OUTPUT_FORMATS, help="出力形式")
    parser.add_argument("--config-dir", help="設定ディレクトリ")
    parser.add_argument("--log-dir", help="ログディレクトリ")
    parser.add_argument("--save-token", action="store_true", help="使用するトークン（--token または ASANA_ACCESS_TOKEN）を暗号化して設定に保存する")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--debug", action="store_true", help="デバッグモード")
    verbosity.add_argument("--verbose", action="store_true", help="DEBUG レベルでログを出力")
    verbosity.add_argument("--quiet", action="store_true", help="WARNING 以上のみログを出力")
    return parser


def print_progress(current: int, total: int, message: str) -> None:
    """進捗をコンソールに表示"""
    print(f"[{current}/{total}] {message}", flush=True)


def report_error(error: Exception, context: str, log: bool = True) -> None:
    """エラーを利用者向けメッセージに変換して標準エラー出力に表示"""
    info = format_error_for_user(error, context, log=log)
    print(f"{info['title']}: {info['message']}", file=sys.stderr)
    for suggestion in info.get('suggestions', []):
        print(f"  - {suggestion}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """メインアプリケーション実行関数"""
    args = build_parser().parse_args(argv)

    debug_mode = args.debug or os.getenv('ASANA_EXPORTER_DEBUG', '').lower() in ('1', 'true', 'yes')
    log_level = "INFO"
    if debug_mode or args.verbose:
        log_level = "DEBUG"
    elif args.quiet:
        log_level = "WARNING"

    logger = initialize_logging(log_dir=args.log_dir, level=log_level, debug_mode=debug_mode)
    logger.info("Asana エクスポーターを開始しています...")
    logger.info(f"Python バージョン: {sys.version}")
    logger.info(f"デバッグモード: {'有効' if debug_mode else '無効'}")

    try:
        try:
            config_manager = ConfigManager(args.config_dir)
            config = config_manager.load_config()

            access_token = args.token or os.getenv('ASANA_ACCESS_TOKEN') or config.asana.access_token
            export_scope = args.scope or config.asana.export_scope
            output_directory = args.output or config.export.output_directory
            formats = args.formats or config.export.formats

            if not access_token:
                print("アクセストークンが指定されていません。--token または ASANA_ACCESS_TOKEN を設定してください。",
                      file=sys.stderr)
                return 2

            if args.save_token:
                config_manager.save_access_token(access_token, args.scope)
                logger.info("アクセストークンを設定に保存しました")
        except Exception as error:
            report_error(error, "設定の読み込み")
            return 1

        try:
            with PerformanceLogger("エクスポート実行"):
                record = asyncio.run(export_asana_data(
                    access_token,
                    on_progress=print_progress,
                    export_scope=export_scope,
                    rate_limit=config.rate_limit,
                ))
        except Exception as error:
            # export_asana_data 内でログ記録済み
            report_error(error, "エクスポート実行", log=False)
            return 1

        try:
            paths = RecordWriter(output_directory).write(record, formats)
        except Exception as error:
            report_error(error, "ファイル出力")
            return 1

        print(f"{record.total_items}件（タスク {len(record.tasks)}件, サブタスク {len(record.subtasks)}件）"
              f"をエクスポートしました。API 呼び出し: {record.api_calls.total}回")
        for path in paths:
            print(f"  {path}")
        logger.info("エクスポートが正常終了しました")
        return 0

    except KeyboardInterrupt:
        logger.info("ユーザーによりエクスポートが中断されました")
        return 130

    finally:
        cleanup_old_logs(days=30)


if __name__ == "__main__":
    sys.exit(main())
