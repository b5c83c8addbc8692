"""Tests for node credential persistence."""

from __future__ import annotations

import json
import re
import stat
from pathlib import Path

import pytest

from fedwatch.privacy.credentials import (
    CREDENTIALS_FILE,
    SALT_BYTES,
    NodeCredential,
    generate_node_id,
)

NODE_ID_RE = re.compile(r"^node-[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")


class TestGenerate:
    def test_node_id_format(self) -> None:
        assert NODE_ID_RE.match(generate_node_id())

    def test_fresh_identity(self) -> None:
        a = NodeCredential.generate()
        b = NodeCredential.generate()
        assert a.node_id != b.node_id
        assert a.salt != b.salt
        assert len(a.salt) == SALT_BYTES
        assert a.created_at

    def test_salt_not_in_repr(self) -> None:
        cred = NodeCredential.generate()
        assert cred.salt.hex() not in repr(cred)
        assert "salt" not in repr(cred)


class TestPersistence:
    def test_save_and_load(self, tmp_data_dir: Path) -> None:
        cred = NodeCredential.generate()
        path = cred.save(tmp_data_dir)
        assert path == tmp_data_dir / CREDENTIALS_FILE

        loaded = NodeCredential.load(tmp_data_dir)
        assert loaded == cred

    def test_file_permissions(self, tmp_data_dir: Path) -> None:
        path = NodeCredential.generate().save(tmp_data_dir)
        mode = stat.S_IMODE(path.stat().st_mode)
        assert mode == 0o600

    def test_file_format(self, tmp_data_dir: Path) -> None:
        cred = NodeCredential.generate()
        cred.save(tmp_data_dir)
        payload = json.loads((tmp_data_dir / CREDENTIALS_FILE).read_text())
        assert payload["nodeId"] == cred.node_id
        assert bytes.fromhex(payload["salt"]) == cred.salt
        assert payload["createdAt"] == cred.created_at

    def test_load_missing(self, tmp_data_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            NodeCredential.load(tmp_data_dir)

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            "[]",
            '{"nodeId": "node-x"}',
            '{"nodeId": "node-x", "salt": "zz"}',
            '{"nodeId": "node-x", "salt": "abcd"}',
        ],
    )
    def test_load_corrupt(self, tmp_data_dir: Path, content: str) -> None:
        (tmp_data_dir / CREDENTIALS_FILE).write_text(content)
        with pytest.raises(ValueError):
            NodeCredential.load(tmp_data_dir)


class TestLoadOrCreate:
    def test_first_run_creates(self, tmp_data_dir: Path) -> None:
        cred = NodeCredential.load_or_create(tmp_data_dir)
        assert (tmp_data_dir / CREDENTIALS_FILE).exists()
        assert NodeCredential.load_or_create(tmp_data_dir) == cred

    def test_corrupt_file_regenerated(self, tmp_data_dir: Path) -> None:
        (tmp_data_dir / CREDENTIALS_FILE).write_text("garbage")
        cred = NodeCredential.load_or_create(tmp_data_dir)
        assert NODE_ID_RE.match(cred.node_id)
        assert NodeCredential.load(tmp_data_dir) == cred

    def test_creates_missing_data_dir(self, tmp_path: Path) -> None:
        data_dir = tmp_path / "nested" / "dir"
        NodeCredential.load_or_create(data_dir)
        assert (data_dir / CREDENTIALS_FILE).exists()
