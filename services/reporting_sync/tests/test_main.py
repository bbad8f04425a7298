"""
Tests for the command line entry point.
"""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from services.reporting_sync.main import create_parser, main, reset_watermarks, show_status
from services.reporting_sync.models import RunSummary
from services.reporting_sync.settings import ReportingSyncSettings
from services.reporting_sync.state import LAST_RESULT_KEY, FileStateStore, MemoryStateStore

MAIN = "services.reporting_sync.main"


class TestParser:

    def test_defaults(self):
        args = create_parser().parse_args([])
        assert args.status is False
        assert args.reset_watermark is None
        assert args.output is None

    def test_repeatable_reset(self):
        args = create_parser().parse_args(["--reset-watermark", "usage", "--reset-watermark", "bundles"])
        assert args.reset_watermark == ["usage", "bundles"]

    def test_unknown_pipeline_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--reset-watermark", "widgets"])


class TestResetWatermarks:

    def test_reset_named(self):
        store = MemoryStateStore({"sync:watermark:usage": "a", "sync:watermark:bundles": "b"})

        assert reset_watermarks(store, ["usage"]) == ["usage"]
        assert store.get_watermark("usage") is None
        assert store.get_watermark("bundles") == "b"

    def test_reset_all_deduplicates(self):
        store = MemoryStateStore({"sync:watermark:usage": "a"})

        cleared = reset_watermarks(store, ["usage", "all"])

        assert cleared == ["usage", "endpoints", "bundle_instances", "bundles"]
        assert store.get_watermark("usage") is None

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown pipeline"):
            reset_watermarks(MemoryStateStore(), ["widgets"])


class TestShowStatus:

    def test_status_contents(self):
        store = MemoryStateStore({
            "sync:last_run": "2025-01-01T00:00:00+00:00",
            LAST_RESULT_KEY: {"status": "success"},
            "sync:watermark:usage": "2025-01-01T00:00:00+00:00",
        })

        status = show_status(store)

        assert status["last_run"] == "2025-01-01T00:00:00+00:00"
        assert status["last_result"] == {"status": "success"}
        assert status["watermarks"]["usage"] == "2025-01-01T00:00:00+00:00"
        assert status["watermarks"]["endpoints"] is None


class TestMain:
    """Test main() wiring with the orchestrator replaced."""

    @pytest.fixture
    def config(self, make_settings, tmp_path):
        return make_settings(state_path=str(tmp_path / "state.json"))

    def run_main(self, config, argv, status="success"):
        summary = RunSummary(started_at=datetime(2025, 1, 1, tzinfo=timezone.utc), status=status)
        with patch(f"{MAIN}.settings", return_value=config), \
                patch(f"{MAIN}.configure_logging"), \
                patch(f"{MAIN}.SyncOrchestrator") as orchestrator_cls:
            orchestrator_cls.return_value.run.return_value = summary
            code = main(argv)
        return code, orchestrator_cls

    def test_success_exit_code(self, config, tmp_path):
        output = tmp_path / "result.json"
        code, orchestrator_cls = self.run_main(config, ["--output", str(output)])

        assert code == 0
        orchestrator_cls.return_value.run.assert_called_once()
        assert json.loads(output.read_text())["status"] == "success"

    @pytest.mark.parametrize("status", ["partial", "failed"])
    def test_unsuccessful_exit_code(self, config, status):
        code, _ = self.run_main(config, [], status=status)
        assert code == 1

    def test_output_file(self, config, tmp_path):
        output = tmp_path / "result.json"

        self.run_main(config, ["--output", str(output)])

        assert json.loads(output.read_text())["timestamp"] == "2025-01-01T00:00:00+00:00"

    def test_status_does_not_run(self, config, tmp_path):
        output = tmp_path / "status.json"
        code, orchestrator_cls = self.run_main(config, ["--status", "--output", str(output)])

        assert code == 0
        orchestrator_cls.assert_not_called()
        assert "watermarks" in json.loads(output.read_text())

    def test_reset_before_run(self, config):
        FileStateStore(config.state_path).put_watermark("usage", "2025-01-01T00:00:00Z")

        self.run_main(config, ["--reset-watermark", "usage"])

        assert FileStateStore(config.state_path).get_watermark("usage") is None

    def test_invalid_configuration(self, capsys):
        with pytest.raises(ValidationError) as exc_info:
            ReportingSyncSettings(_env_file=None, source_service_key=" ")

        with patch(f"{MAIN}.settings", side_effect=exc_info.value):
            assert main([]) == 1
        assert "Invalid configuration" in capsys.readouterr().err
