"""Tests for the CLI module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from pytest_httpserver import HTTPServer

from geoipdns.cli import main
from geoipdns.config import Config
from geoipdns.errors import LockError


@pytest.fixture(autouse=True)
def no_default_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        "geoipdns.config.get_default_config_file",
        lambda: tmp_path / "absent.conf",
    )


class TestCLI:
    """Tests for the CLI."""

    def test_version(self) -> None:
        runner = CliRunner()
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert "geoipdns" in result.output
        assert "1.0.0" in result.output

    def test_help(self) -> None:
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "Answer DNS TXT queries with GeoIP data" in result.output
        for option in (
            "--addr",
            "--domain",
            "--db",
            "--update",
            "--retry",
            "--silent",
            "--lang",
            "--output-mode",
            "--config-file",
        ):
            assert option in result.output

    def test_invalid_config_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "geoipdns.conf"
        config_file.write_text("InvalidOption value\n")

        runner = CliRunner()
        result = runner.invoke(main, ["-f", str(config_file)])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_invalid_address(self) -> None:
        runner = CliRunner()
        result = runner.invoke(main, ["--addr", "nowhere"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_invalid_duration(self) -> None:
        runner = CliRunner()
        result = runner.invoke(main, ["--update", "soon"])

        assert result.exit_code == 2
        assert "is not a valid duration" in result.output

    def test_invalid_output_mode(self) -> None:
        runner = CliRunner()
        result = runner.invoke(main, ["--output-mode", "columns"])

        assert result.exit_code == 2

    def test_missing_database(self, tmp_path: Path) -> None:
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["--addr", "127.0.0.1:0", "--db", str(tmp_path / "missing.mmdb")],
        )

        assert result.exit_code == 1
        assert "Database error" in result.output

    def test_download_error(self, httpserver: HTTPServer, tmp_path: Path) -> None:
        httpserver.expect_request("/GeoLite2-City.mmdb.gz").respond_with_data(
            "Forbidden", status=403
        )

        runner = CliRunner()
        result = runner.invoke(
            main,
            [
                "--addr",
                "127.0.0.1:0",
                "--db",
                httpserver.url_for("/GeoLite2-City.mmdb.gz"),
                "--cache-dir",
                str(tmp_path / "cache"),
                "--silent",
            ],
        )

        assert result.exit_code == 1
        assert "Download error" in result.output
        assert "403" in result.output

    def test_lock_error(self) -> None:
        async def locked(config: Config) -> None:
            msg = "Could not acquire lock"
            raise LockError(msg)

        with patch("geoipdns.cli.run", locked):
            runner = CliRunner()
            result = runner.invoke(main, ["--silent"])

        assert result.exit_code == 1
        assert "Lock error: Could not acquire lock" in result.output

    def test_bind_error(self) -> None:
        async def unbindable(config: Config) -> None:
            msg = "Address already in use"
            raise OSError(98, msg)

        with patch("geoipdns.cli.run", unbindable):
            runner = CliRunner()
            result = runner.invoke(main, ["--silent"])

        assert result.exit_code == 1
        assert "Network error" in result.output

    def test_options_reach_config(self) -> None:
        seen: list[Config] = []

        async def capture(config: Config) -> None:
            seen.append(config)

        with patch("geoipdns.cli.run", capture):
            runner = CliRunner()
            result = runner.invoke(
                main,
                [
                    "--addr",
                    "[::1]:8053",
                    "--domain",
                    "geo.example.com",
                    "--db",
                    "/data/GeoLite2-City.mmdb",
                    "--update",
                    "12h",
                    "--retry",
                    "10m",
                    "--lang",
                    "de",
                    "--output-mode",
                    "SEGMENTED",
                    "--silent",
                ],
            )

        assert result.exit_code == 0, result.output
        (config,) = seen
        assert config.host == "::1"
        assert config.port == 8053
        assert config.domain == "geo.example.com"
        assert config.database == "/data/GeoLite2-City.mmdb"
        assert config.update_interval.total_seconds() == 12 * 3600
        assert config.max_retry_interval.total_seconds() == 600
        assert config.language == "de"
        assert config.output_mode.value == "segmented"
        assert config.silent is True
