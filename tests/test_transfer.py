"""
Tests for transfer backends — resume, segments, atomic rename.
"""

import hashlib
from unittest.mock import patch

import pytest

from aiprovision.adapters.shell.command import CommandResult
from aiprovision.core.errors import TransferFailure
from aiprovision.core.execution.transfer import (
    Aria2Transfer,
    HttpTransfer,
    part_path,
    select_transfer,
    verify_checksum,
)

DATA = bytes(range(256)) * 4  # 1024 bytes


def _ranges(file_server, path):
    return [h.get("Range") for _, _, h in file_server.gets(path)]


# ── Single stream ───────────────────────────────────────────────────


class TestHttpStream:
    def test_full_download(self, tmp_path, file_server):
        file_server.files["/m.bin"] = DATA
        dest = tmp_path / "m.bin"
        result = HttpTransfer(segments=1).fetch(file_server.url("/m.bin"), dest)

        assert dest.read_bytes() == DATA
        assert result.size_bytes == len(DATA)
        assert not result.resumed
        assert not part_path(dest).exists()

    def test_creates_parent_directory(self, tmp_path, file_server):
        file_server.files["/m.bin"] = DATA
        dest = tmp_path / "a" / "b" / "m.bin"
        HttpTransfer(segments=1).fetch(file_server.url("/m.bin"), dest)
        assert dest.exists()

    def test_resumes_partial_file(self, tmp_path, file_server):
        file_server.files["/m.bin"] = DATA
        dest = tmp_path / "m.bin"
        part_path(dest).write_bytes(DATA[:400])

        result = HttpTransfer(segments=1).fetch(file_server.url("/m.bin"), dest)

        assert result.resumed
        assert dest.read_bytes() == DATA
        assert _ranges(file_server, "/m.bin") == ["bytes=400-"]

    def test_restarts_when_server_ignores_range(self, tmp_path, file_server):
        file_server.files["/m.bin"] = DATA
        file_server.ranges = False
        dest = tmp_path / "m.bin"
        part_path(dest).write_bytes(b"X" * 10)

        result = HttpTransfer(segments=1).fetch(file_server.url("/m.bin"), dest)

        assert not result.resumed
        assert dest.read_bytes() == DATA

    def test_complete_partial_needs_no_request(self, tmp_path, file_server):
        file_server.files["/m.bin"] = DATA
        dest = tmp_path / "m.bin"
        part_path(dest).write_bytes(DATA)

        HttpTransfer(segments=1).fetch(file_server.url("/m.bin"), dest)

        assert dest.read_bytes() == DATA
        assert file_server.gets("/m.bin") == []

    def test_oversized_partial_is_discarded(self, tmp_path, file_server):
        file_server.files["/m.bin"] = DATA
        dest = tmp_path / "m.bin"
        part_path(dest).write_bytes(b"Z" * (len(DATA) + 50))

        HttpTransfer(segments=1).fetch(file_server.url("/m.bin"), dest)

        assert dest.read_bytes() == DATA
        assert _ranges(file_server, "/m.bin") == [None]

    def test_http_error_raises_and_leaves_nothing(self, tmp_path, file_server):
        dest = tmp_path / "missing.bin"
        with pytest.raises(TransferFailure, match="HTTP 404"):
            HttpTransfer(segments=1).fetch(file_server.url("/missing.bin"), dest)
        assert not dest.exists()

    def test_unreachable_host(self, tmp_path):
        with pytest.raises(TransferFailure):
            HttpTransfer(segments=1, timeout=2).fetch("http://127.0.0.1:9/x", tmp_path / "x")

    def test_headers_are_sent(self, tmp_path, file_server):
        file_server.files["/m.bin"] = DATA
        HttpTransfer(segments=1).fetch(
            file_server.url("/m.bin"), tmp_path / "m.bin", {"Authorization": "Bearer t"},
        )
        _, _, headers = file_server.gets("/m.bin")[0]
        assert headers["Authorization"] == "Bearer t"
        assert headers["User-Agent"].startswith("aiprovision/")

    def test_token_is_not_forwarded_on_redirect(self, tmp_path, file_server):
        file_server.files["/cdn/m.bin"] = DATA
        file_server.redirects["/resolve/m.bin"] = "/cdn/m.bin"
        dest = tmp_path / "m.bin"
        HttpTransfer(segments=1).fetch(
            file_server.url("/resolve/m.bin"), dest, {"Authorization": "Bearer t"},
        )

        assert dest.read_bytes() == DATA
        _, _, first = file_server.gets("/resolve/m.bin")[0]
        _, _, redirected = file_server.gets("/cdn/m.bin")[0]
        assert first["Authorization"] == "Bearer t"
        assert "Authorization" not in redirected
        assert redirected["User-Agent"].startswith("aiprovision/")


# ── Segmented ───────────────────────────────────────────────────────


class TestHttpSegmented:
    def test_parallel_segments(self, tmp_path, file_server):
        file_server.files["/big.bin"] = DATA
        dest = tmp_path / "big.bin"
        result = HttpTransfer(segments=4, segment_min_size=1).fetch(
            file_server.url("/big.bin"), dest,
        )

        assert result.segments == 4
        assert dest.read_bytes() == DATA
        assert sorted(_ranges(file_server, "/big.bin")) == sorted([
            "bytes=0-255", "bytes=256-511", "bytes=512-767", "bytes=768-1023",
        ])
        assert list(tmp_path.iterdir()) == [dest]

    def test_small_file_uses_single_stream(self, tmp_path, file_server):
        file_server.files["/small.bin"] = DATA
        result = HttpTransfer(segments=4, segment_min_size=10_000).fetch(
            file_server.url("/small.bin"), tmp_path / "small.bin",
        )
        assert result.segments == 1
        assert len(file_server.gets("/small.bin")) == 1

    def test_no_range_support_uses_single_stream(self, tmp_path, file_server):
        file_server.files["/big.bin"] = DATA
        file_server.ranges = False
        result = HttpTransfer(segments=4, segment_min_size=1).fetch(
            file_server.url("/big.bin"), tmp_path / "big.bin",
        )
        assert result.segments == 1
        assert (tmp_path / "big.bin").read_bytes() == DATA

    def test_segment_resumes(self, tmp_path, file_server):
        file_server.files["/big.bin"] = DATA
        dest = tmp_path / "big.bin"
        seg0 = part_path(dest).with_name(part_path(dest).name + ".0")
        seg0.write_bytes(DATA[:100])

        HttpTransfer(segments=4, segment_min_size=1).fetch(file_server.url("/big.bin"), dest)

        assert dest.read_bytes() == DATA
        assert "bytes=100-255" in _ranges(file_server, "/big.bin")

    def test_failed_segment_keeps_partial_data(self, tmp_path, file_server):
        file_server.files["/big.bin"] = DATA
        file_server.failures["/big.bin"] = 1
        dest = tmp_path / "big.bin"

        with pytest.raises(TransferFailure, match="segment"):
            HttpTransfer(segments=4, segment_min_size=1).fetch(file_server.url("/big.bin"), dest)
        assert not dest.exists()

        # the next attempt only fetches what is missing
        HttpTransfer(segments=4, segment_min_size=1).fetch(file_server.url("/big.bin"), dest)
        assert dest.read_bytes() == DATA
        assert len(file_server.gets("/big.bin")) == 5


# ── aria2c ──────────────────────────────────────────────────────────


class TestAria2:
    def test_builds_command_and_renames(self, tmp_path):
        dest = tmp_path / "m.gguf"

        def fake_run(cmd, timeout):
            part_path(dest).write_bytes(b"abc")
            return CommandResult(command=" ".join(cmd), ok=True, exit_code=0)

        with patch("aiprovision.core.execution.transfer.run_command", side_effect=fake_run) as m:
            result = Aria2Transfer(connections=16).fetch(
                "https://huggingface.co/m.gguf", dest, {"Authorization": "Bearer t"},
            )

        cmd = m.call_args.args[0]
        assert cmd[0] == "aria2c"
        assert "-c" in cmd
        assert cmd[cmd.index("-x") + 1] == "16"
        assert cmd[cmd.index("-s") + 1] == "16"
        assert cmd[cmd.index("-d") + 1] == str(tmp_path)
        assert cmd[cmd.index("-o") + 1] == "m.gguf.part"
        assert "--header=Authorization: Bearer t" in cmd
        assert cmd[-1] == "https://huggingface.co/m.gguf"
        assert dest.read_bytes() == b"abc"
        assert result.size_bytes == 3

    def test_failure_raises(self, tmp_path):
        failed = CommandResult(
            command="aria2c", ok=False, exit_code=3, stderr="errorCode=3 Resource not found",
        )
        with patch("aiprovision.core.execution.transfer.run_command", return_value=failed):
            with pytest.raises(TransferFailure, match="Resource not found"):
                Aria2Transfer().fetch("https://x.org/a", tmp_path / "a")
        assert not (tmp_path / "a").exists()


class TestSelectTransfer:
    def test_explicit_http(self):
        assert isinstance(select_transfer("http"), HttpTransfer)

    def test_explicit_aria2(self):
        assert isinstance(select_transfer("aria2"), Aria2Transfer)

    def test_auto_prefers_aria2(self):
        with patch("aiprovision.core.execution.transfer.shutil.which", return_value="/usr/bin/aria2c"):
            assert select_transfer("auto").name == "aria2"

    def test_auto_falls_back_to_http(self):
        with patch("aiprovision.core.execution.transfer.shutil.which", return_value=None):
            transfer = select_transfer("auto", segments=3)
        assert transfer.name == "http"
        assert transfer.segments == 3


class TestChecksum:
    def test_bare_hex_is_sha256(self, tmp_path):
        f = tmp_path / "f"
        f.write_bytes(b"hello")
        assert verify_checksum(f, hashlib.sha256(b"hello").hexdigest())

    def test_algo_prefix(self, tmp_path):
        f = tmp_path / "f"
        f.write_bytes(b"hello")
        assert verify_checksum(f, "md5:" + hashlib.md5(b"hello").hexdigest())
        assert not verify_checksum(f, "sha256:" + "0" * 64)

    def test_uppercase_digest(self, tmp_path):
        f = tmp_path / "f"
        f.write_bytes(b"hello")
        assert verify_checksum(f, hashlib.sha256(b"hello").hexdigest().upper())
