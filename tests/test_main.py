"""コマンドラインのテスト"""

from unittest.mock import AsyncMock, patch

import pytest
import requests

from asana_exporter import main as cli
from asana_exporter.data.models import ApiCallSummary, ExportRecord, ExportScope, User
from asana_exporter.utils.error_handler import AuthenticationError, ErrorHandler, ResourceFetchError


def empty_record(scope=ExportScope.USER_ONLY):
    return ExportRecord(user=User("1", "Demo User"), workspaces=(), projects=(), tasks=(),
                        subtasks=(), stories=(), api_calls=ApiCallSummary(0, 0, 0, 0), scope=scope)


@pytest.fixture
def base_args(tmp_path, monkeypatch):
    monkeypatch.delenv("ASANA_ACCESS_TOKEN", raising=False)
    monkeypatch.delenv("ASANA_EXPORTER_DEBUG", raising=False)
    return ["--config-dir", str(tmp_path / "config"), "--log-dir", str(tmp_path / "logs"),
            "--output", str(tmp_path / "out"), "--quiet"]


class TestMain:
    """main() のテスト"""

    def test_missing_token(self, base_args, capsys):
        assert cli.main(base_args) == 2
        assert "アクセストークン" in capsys.readouterr().err

    def test_successful_export(self, base_args, tmp_path, capsys):
        export = AsyncMock(return_value=empty_record(ExportScope.ASSIGNED_ONLY))

        with patch.object(cli, "export_asana_data", export):
            code = cli.main(base_args + ["--token", "t-123", "--scope", "assigned-only"])

        assert code == 0
        args, kwargs = export.call_args
        assert args == ("t-123",)
        assert kwargs["export_scope"] == "assigned-only"
        assert list((tmp_path / "out").glob("asana_export_assigned-only_*.json"))
        assert "API 呼び出し: 3回" in capsys.readouterr().out

    def test_token_from_environment(self, base_args, monkeypatch):
        monkeypatch.setenv("ASANA_ACCESS_TOKEN", "env-token")
        export = AsyncMock(return_value=empty_record())

        with patch.object(cli, "export_asana_data", export):
            assert cli.main(base_args) == 0

        assert export.call_args[0] == ("env-token",)

    def test_save_token_then_reuse(self, base_args):
        export = AsyncMock(return_value=empty_record())

        with patch.object(cli, "export_asana_data", export):
            assert cli.main(base_args + ["--token", "saved-token", "--save-token"]) == 0
            assert cli.main(base_args) == 0

        assert export.call_args[0] == ("saved-token",)

    def test_export_failure(self, base_args, capsys):
        error = ResourceFetchError("ユーザー情報の取得", "users/me",
                                   AuthenticationError("認証エラー", status_code=401))
        export = AsyncMock(side_effect=error)

        with patch.object(cli, "export_asana_data", export):
            code = cli.main(base_args + ["--token", "bad"])

        assert code == 1
        assert "認証" in capsys.readouterr().err

    def test_excel_format(self, base_args, tmp_path):
        export = AsyncMock(return_value=empty_record())

        with patch.object(cli, "export_asana_data", export):
            assert cli.main(base_args + ["--token", "t", "--format", "json", "xlsx"]) == 0

        assert len(list((tmp_path / "out").glob("*.xlsx"))) == 1

    def test_save_token_from_environment(self, base_args, monkeypatch):
        monkeypatch.setenv("ASANA_ACCESS_TOKEN", "env-token")
        export = AsyncMock(return_value=empty_record())

        with patch.object(cli, "export_asana_data", export):
            assert cli.main(base_args + ["--save-token"]) == 0
            monkeypatch.delenv("ASANA_ACCESS_TOKEN")
            assert cli.main(base_args) == 0

        assert export.call_args[0] == ("env-token",)

    def test_failed_export_logged_once(self, base_args, fake_api, capsys):
        with patch.object(requests.Session, "request", fake_api), \
                patch.object(ErrorHandler, "log_error", autospec=True) as log_error:
            code = cli.main(base_args + ["--token", "t-123"])

        assert code == 1
        assert log_error.call_count == 1
        assert isinstance(log_error.call_args[0][1], ResourceFetchError)
        assert "users/me" in capsys.readouterr().err
