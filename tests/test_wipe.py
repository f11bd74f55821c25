"""
Tests for secure_delete — overwrite passes with plain-delete fallback.
"""

import os
from unittest.mock import patch

import pytest

from conftest import write_file
from filkollen.quarantine import DeleteFailed, secure_delete


class TestSecureDelete:
    def test_overwrites_then_removes(self, tmp_path):
        path = write_file(tmp_path, "secret.bin", b"s" * 200_000)
        assert secure_delete(str(path), passes=3) is True
        assert not path.exists()

    def test_overwrite_changes_content_before_unlink(self, tmp_path):
        path = write_file(tmp_path, "secret.bin", b"\x00" * 1024)
        seen = {}

        def capture_remove(target):
            with open(target, "rb") as fh:
                seen["content"] = fh.read()
            os.unlink(target)

        with patch("filkollen.quarantine.wipe.os.remove", side_effect=capture_remove):
            assert secure_delete(str(path), passes=1)

        assert len(seen["content"]) == 1024
        assert seen["content"] != b"\x00" * 1024

    def test_zero_byte_file(self, tmp_path):
        path = write_file(tmp_path, "empty", b"")
        assert secure_delete(str(path)) is True
        assert not path.exists()

    def test_missing_file_is_success(self, tmp_path):
        assert secure_delete(str(tmp_path / "gone")) is True

    def test_overwrite_failure_falls_back_to_plain_delete(self, tmp_path):
        path = write_file(tmp_path, "locked.bin")
        with patch("filkollen.quarantine.wipe._overwrite", side_effect=PermissionError("locked")):
            assert secure_delete(str(path)) is False
        assert not path.exists()

    def test_undeletable_file_raises(self, tmp_path):
        path = write_file(tmp_path, "stuck.bin")
        with patch("filkollen.quarantine.wipe.os.remove", side_effect=PermissionError("denied")):
            with pytest.raises(DeleteFailed):
                secure_delete(str(path))
