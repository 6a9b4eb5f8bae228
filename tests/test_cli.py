"""
Tests for CLI commands — run, units, history, profiles, downloads.
"""

import json
import logging
import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from conftest import FakeTransfer

from aiprovision.main import cli

CONFIG = textwrap.dedent("""\
    name: cli-test
    description: "CLI test machine"
    retry:
      max_auto_attempts: 1
      delay: 0
    credentials:
      - host: huggingface.co
        secret_env_var: HF_TOKEN
    token_probes:
      huggingface:
        url: https://huggingface.co/api/whoami-v2
        secret_env_var: HF_TOKEN
    units:
      - name: marker
        kind: command
        description: Touch a marker file
        run:
          - "mkdir -p {workspace} && touch {workspace}/marker"
        check:
          path: "{workspace}/marker"
""")


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "provision.yml"
    path.write_text(CONFIG)
    return path


def _invoke(config_file: Path, *args: str):
    workspace = config_file.parent / "ws"
    return CliRunner().invoke(
        cli, ["-q", "-c", str(config_file), "-w", str(workspace), *args],
    )


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "idempotent provisioning" in result.output
        for command in ("run", "units", "history", "profiles", "downloads"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_profiles(self):
        result = CliRunner().invoke(cli, ["profiles"])
        assert result.exit_code == 0
        for name in ("aidock", "comfy", "root", "user", "vastai"):
            assert name in result.output

    @pytest.mark.parametrize("flags,expected", [
        ([], logging.ERROR),
        (["-v"], logging.INFO),
        (["--debug"], logging.DEBUG),
    ])
    def test_log_level_flags_beat_environment(self, monkeypatch, flags, expected):
        monkeypatch.setenv("PROV_LOG_LEVEL", "ERROR")
        result = CliRunner().invoke(cli, [*flags, "profiles"])
        assert result.exit_code == 0
        assert logging.getLogger().level == expected


# ── run ─────────────────────────────────────────────────────────────


class TestRunCommand:
    def test_installs_then_skips(self, config_file: Path):
        result = _invoke(config_file, "run", "--no-interactive")
        assert result.exit_code == 0, result.output
        assert "cli-test" in result.output
        assert "✓ marker" in result.output
        assert (config_file.parent / "ws" / "marker").exists()

        result = _invoke(config_file, "run", "--no-interactive")
        assert result.exit_code == 0
        assert "⊘ marker" in result.output
        assert "already present" in result.output

    def test_dry_run(self, config_file: Path):
        result = _invoke(config_file, "run", "--dry-run")
        assert result.exit_code == 0
        assert "[dry-run]" in result.output
        assert "would install" in result.output
        assert not (config_file.parent / "ws").exists()

    def test_failure_exits_one(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text(CONFIG.replace('"mkdir -p {workspace} && touch {workspace}/marker"', '"exit 3"'))
        result = _invoke(path, "run", "--no-interactive")
        assert result.exit_code == 1
        assert "✗ marker" in result.output
        assert "1 failed" in result.output

    def test_json_output(self, config_file: Path):
        result = _invoke(config_file, "run", "--no-interactive", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["profile"] == "cli-test"
        assert data["report"]["status"] == "ok"
        assert data["report"]["outcomes"][0]["name"] == "marker"

    def test_missing_config_exits_two(self, tmp_path: Path):
        result = _invoke(tmp_path / "nope.yml", "run")
        assert result.exit_code == 2
        assert "not found" in result.output

    def test_unknown_unit_exits_two(self, config_file: Path):
        result = _invoke(config_file, "run", "-u", "nope")
        assert result.exit_code == 2
        assert "nope" in result.output

    def test_no_audit(self, config_file: Path):
        _invoke(config_file, "run", "--no-interactive", "--no-audit")
        assert not (config_file.parent / "ws" / ".state").exists()


# ── units / history ─────────────────────────────────────────────────


class TestUnitsCommand:
    def test_lists_presence(self, config_file: Path):
        result = _invoke(config_file, "units")
        assert result.exit_code == 0
        assert "marker" in result.output
        assert "not installed" in result.output

        (config_file.parent / "ws").mkdir()
        (config_file.parent / "ws" / "marker").touch()
        result = _invoke(config_file, "units")
        assert "✓ marker" in result.output

    def test_json(self, config_file: Path):
        result = _invoke(config_file, "units", "--json")
        data = json.loads(result.stdout)
        assert data == [{
            "name": "marker",
            "kind": "command",
            "description": "Touch a marker file",
            "present": False,
            "files": 0,
            "requires": [],
        }]


class TestHistoryCommand:
    def test_empty(self, config_file: Path):
        result = _invoke(config_file, "history")
        assert result.exit_code == 0
        assert "No provisioning runs recorded yet." in result.output

    def test_after_runs(self, config_file: Path):
        _invoke(config_file, "run", "--no-interactive")
        _invoke(config_file, "run", "--no-interactive")

        result = _invoke(config_file, "history")
        assert result.output.count("cli-test") == 2

        result = _invoke(config_file, "history", "-n", "1", "--json")
        entries = json.loads(result.stdout)
        assert len(entries) == 1
        assert entries[0]["units_skipped"] == 1


# ── downloads ───────────────────────────────────────────────────────


class TestDownloadsProbe:
    def test_valid_token(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("HF_TOKEN", "tok")
        with patch("aiprovision.core.services.credentials.has_valid_token", return_value=True):
            result = _invoke(config_file, "downloads", "probe", "huggingface")
        assert result.exit_code == 0
        assert "token accepted" in result.output

    def test_missing_token(self, config_file: Path, monkeypatch):
        monkeypatch.delenv("HF_TOKEN", raising=False)
        result = _invoke(config_file, "downloads", "probe", "huggingface")
        assert result.exit_code == 1
        assert "HF_TOKEN" in result.output

    def test_unknown_probe(self, config_file: Path):
        result = _invoke(config_file, "downloads", "probe", "civitai")
        assert result.exit_code == 2
        assert "huggingface" in result.output


class TestDownloadsFetch:
    URL = "https://huggingface.co/org/m/resolve/main/model.gguf"

    def test_fetches_into_dest(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HF_TOKEN", "tok")
        transfer = FakeTransfer()
        with patch("aiprovision.core.use_cases.provision.select_transfer", return_value=transfer):
            result = CliRunner().invoke(
                cli, ["-q", "downloads", "fetch", self.URL, "-d", "models", "--no-interactive"],
            )

        assert result.exit_code == 0, result.output
        assert (tmp_path / "models" / "model.gguf").read_bytes() == b"payload"
        assert transfer.calls[0][2] == {"Authorization": "Bearer tok"}

    def test_existing_file_is_skipped(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        extra = tmp_path / "PresetModels" / "extra_models"
        extra.mkdir(parents=True)
        (extra / "model.gguf").write_bytes(b"old")
        transfer = FakeTransfer()
        with patch("aiprovision.core.use_cases.provision.select_transfer", return_value=transfer):
            result = CliRunner().invoke(cli, ["-q", "downloads", "fetch", self.URL])

        assert result.exit_code == 0
        assert "already present" in result.output
        assert transfer.calls == []

    def test_failure_exits_one(self, config_file: Path):
        transfer = FakeTransfer(always_fail=[self.URL])
        dest = config_file.parent / "out"
        with patch("aiprovision.core.use_cases.provision.select_transfer", return_value=transfer):
            result = _invoke(config_file, "downloads", "fetch", self.URL, "-d", str(dest), "--no-interactive")

        assert result.exit_code == 1
        assert "✗ fetch/model.gguf" in result.output
        assert len(transfer.calls) == 1

    def test_invalid_url_exits_two(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = CliRunner().invoke(cli, ["-q", "downloads", "fetch", "not-a-url"])
        assert result.exit_code == 2

    def test_no_urls_without_terminal(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with patch("aiprovision.core.reliability.retry.stdin_is_interactive", return_value=False):
            result = CliRunner().invoke(cli, ["downloads", "fetch"])
        assert result.exit_code == 2
        assert "No URLs given" in result.output

    def test_prompts_for_urls(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        transfer = FakeTransfer()
        with patch("aiprovision.core.reliability.retry.stdin_is_interactive", return_value=True), \
             patch("aiprovision.core.use_cases.provision.select_transfer", return_value=transfer):
            result = CliRunner().invoke(
                cli, ["-q", "downloads", "fetch", "--no-interactive"], input=f"{self.URL}\n\n",
            )

        assert result.exit_code == 0, result.output
        assert transfer.urls() == [self.URL]
        assert (tmp_path / "PresetModels" / "extra_models" / "model.gguf").exists()

    def test_default_dest_is_under_workspace(self, config_file: Path):
        transfer = FakeTransfer()
        with patch("aiprovision.core.use_cases.provision.select_transfer", return_value=transfer):
            result = _invoke(config_file, "downloads", "fetch", self.URL, "--no-interactive")

        assert result.exit_code == 0, result.output
        extra = config_file.parent / "ws" / "PresetModels" / "extra_models"
        assert (extra / "model.gguf").read_bytes() == b"payload"
