"""
Unit tests for the CLI entry point and configuration loading.

Tests apps/services/extractor/main.py and apps/services/extractor/config.py
"""

import argparse
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from apps.services.extractor import main as cli
from apps.services.extractor.config import ExtractorConfig, get_config, load_vendor_registry


class TestParseArgs:
    def test_defaults(self):
        args = cli.parse_args([])
        assert args.batch == 20
        assert args.batches == 1
        assert args.limit == 100
        assert args.vendor == []
        assert args.update is False
        assert args.update_fields is None
        assert args.update_key is None
        assert args.stale_days is None

    def test_short_flags_and_lists(self):
        args = cli.parse_args([
            "-b", "10", "-c", "3", "-l", "500",
            "--vendor", "superdrug, harrods",
            "--update", "--update-fields", "price,stock_status", "--update-key", "ean", "--stale-days", "0",
        ])
        assert (args.batch, args.batches, args.limit) == (10, 3, 500)
        assert args.vendor == ["superdrug", "harrods"]
        assert args.update is True
        assert args.update_fields == ["price", "stock_status"]
        assert args.update_key == "ean"
        assert args.stale_days == 0

    @pytest.mark.parametrize("argv", [["--batch", "0"], ["--limit", "-5"], ["--stale-days", "-1"], ["-c", "x"]])
    def test_rejects_invalid_numbers(self, argv):
        with pytest.raises(SystemExit):
            cli.parse_args(argv)

    def test_positive_int(self):
        assert cli.positive_int("3") == 3
        with pytest.raises(argparse.ArgumentTypeError):
            cli.positive_int("0")


class TestCredentials:
    def test_key_present(self, data_dir):
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, LLM_API_KEY="k", SOLVER_URL="https://api.example.com/v1")
        assert cli.check_llm_credentials(config) is None

    def test_remote_endpoint_requires_key(self, data_dir):
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, LLM_API_KEY="", SOLVER_URL="https://api.example.com/v1")
        assert "LLM_API_KEY" in cli.check_llm_credentials(config)

    @pytest.mark.parametrize("url", ["http://localhost:8000/v1/chat/completions", "http://127.0.0.1:8000/v1"])
    def test_local_endpoint_exempt(self, data_dir, url):
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, LLM_API_KEY="", SOLVER_URL=url)
        assert cli.check_llm_credentials(config) is None

    def test_main_exits_without_key(self, data_dir, monkeypatch):
        monkeypatch.setenv("EXTRACTOR_DATA_DIR", str(data_dir))
        monkeypatch.setenv("LLM_API_KEY", "")
        monkeypatch.setenv("SOLVER_URL", "https://api.example.com/v1")
        build = MagicMock()
        monkeypatch.setattr(cli, "build_services", build)
        get_config.cache_clear()
        try:
            assert cli.main([]) == 1
        finally:
            get_config.cache_clear()
        build.assert_not_called()


class TestRun:
    """Test how CLI arguments and environment overrides become run options."""

    def services(self):
        coordinator = MagicMock()
        coordinator.run = AsyncMock(return_value={"status": "completed", "processed": 0})
        learning = MagicMock()
        learning.wait_for_completion = AsyncMock()
        backend = MagicMock()
        backend.shutdown = AsyncMock()
        return {"coordinator": coordinator, "learning": learning, "backend": backend, "sessions": MagicMock()}

    @pytest.mark.asyncio
    async def test_options_from_args(self, data_dir):
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, MAX_BATCH=4)
        services = self.services()
        args = cli.parse_args(["-b", "5", "-c", "10", "-l", "50", "--vendor", "harrods"])

        await cli.run(args, config, services)

        options = services["coordinator"].run.await_args.args[0]
        assert options.batch_size == 5
        assert options.concurrency == 4
        assert options.limit == 50
        assert options.vendors == ["harrods"]
        services["backend"].shutdown.assert_awaited_once()
        services["learning"].wait_for_completion.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_environment_overrides(self, data_dir):
        config = ExtractorConfig(
            EXTRACTOR_DATA_DIR=data_dir, MAX_BATCH=5, MAX_CONCURRENT_BATCHES=2, TOTAL_LIMIT=7,
        )
        services = self.services()

        await cli.run(cli.parse_args(["-c", "4", "-l", "500"]), config, services)

        options = services["coordinator"].run.await_args.args[0]
        assert options.concurrency == 2
        assert options.limit == 7

    @pytest.mark.asyncio
    async def test_backend_shut_down_on_failure(self, data_dir):
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir)
        services = self.services()
        services["coordinator"].run = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await cli.run(cli.parse_args([]), config, services)

        services["backend"].shutdown.assert_awaited_once()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_task_held_until_done(self):
        sessions = MagicMock()
        sessions.graceful_shutdown = AsyncMock(return_value={"pool_size": 0})

        task = cli.start_shutdown(sessions, "SIGTERM")

        assert task in cli._shutdown_tasks
        await task
        await asyncio.sleep(0)
        assert task not in cli._shutdown_tasks
        sessions.graceful_shutdown.assert_awaited_once_with("SIGTERM")

    @pytest.mark.asyncio
    async def test_shutdown_failure_is_logged(self, event_log):
        sessions = MagicMock()
        sessions.graceful_shutdown = AsyncMock(side_effect=RuntimeError("close failed"))

        task = cli.start_shutdown(sessions, "SIGINT")
        with pytest.raises(RuntimeError):
            await task
        await asyncio.sleep(0)

        assert task not in cli._shutdown_tasks
        assert "graceful_shutdown_failed" in [entry["event"] for entry in event_log.get_recent_entries()]


class TestHelpers:
    def test_format_duration(self):
        assert cli.format_duration(5.5) == "5.50s"
        assert cli.format_duration(125) == "2m 5.00s"

    def test_split_list(self):
        assert cli.split_list(" a, ,b ") == ["a", "b"]


class TestConfig:
    def test_paths_follow_data_dir(self, data_dir):
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir)
        assert config.input_dir == data_dir / "input"
        assert config.processing_dir == data_dir / "processing"
        assert config.output_dir == data_dir / "output"

    def test_proxy_settings(self, data_dir):
        assert ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, PS_USER=None, OXY_USER=None).proxy_settings() == []
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, PS_USER="u", PS_PASS="p", OXY_USER="o", OXY_PASS="q")
        proxies = config.proxy_settings()
        assert [proxy["username"] for proxy in proxies] == ["u", "o"]

    def test_vendor_registry_defaults(self, data_dir):
        registry = load_vendor_registry(data_dir)
        assert registry["domain_exclusions"]["superdrug.com"] == ["fashion", "health"]
        assert registry["update_defaults"]["update_fields"] == ["price", "stock_status"]

    def test_vendor_registry_file_merges(self, data_dir):
        (data_dir / "vendors.yaml").write_text(
            "domain_exclusions:\n"
            "  boots.com: [clearance]\n"
            "update_defaults:\n"
            "  stale_days: 3\n"
        )
        registry = load_vendor_registry(data_dir)
        assert registry["domain_exclusions"]["boots.com"] == ["clearance"]
        assert registry["domain_exclusions"]["harrods.com"] == []
        assert registry["update_defaults"]["stale_days"] == 3
        assert registry["update_defaults"]["update_fields"] == ["price", "stock_status"]
