"""Node credential generation, storage, and loading.

A node's federation identity is a random ``nodeId`` (never a wallet
address) plus a 32-byte secret salt used for all identifier hashing.  The
pair is created on first run, stored at
``<data_dir>/federation_credentials.json`` with restrictive permissions
(0600), and loaded on every later start.  The salt is never logged and
never transmitted.
"""

from __future__ import annotations

import json
import os
import secrets
import stat
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import structlog

logger = structlog.get_logger()

CREDENTIALS_FILE = "federation_credentials.json"
SALT_BYTES = 32


def generate_node_id() -> str:
    """Random node identifier of the form ``node-<uuid4>``."""
    return f"node-{uuid.uuid4()}"


@dataclass(frozen=True)
class NodeCredential:
    """Federation identity of one node installation.

    Usage::

        cred = NodeCredential.load_or_create(data_dir)
        cred.node_id   # safe to publish
        cred.salt      # secret, read-only after init
    """

    node_id: str
    salt: bytes = field(repr=False)
    created_at: str = ""

    @classmethod
    def generate(cls) -> NodeCredential:
        """Create a fresh identity with a random node id and salt."""
        cred = cls(
            node_id=generate_node_id(),
            salt=secrets.token_bytes(SALT_BYTES),
            created_at=datetime.now(UTC).isoformat(),
        )
        logger.info("node_credential_generated", node_id=cred.node_id[:17])
        return cred

    @classmethod
    def from_json(cls, text: str) -> NodeCredential:
        """Parse a serialized credential.

        Raises:
            ValueError: If the document is not a valid credential.
        """
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("credential document is not an object")
        node_id = data.get("nodeId")
        salt_hex = data.get("salt")
        if not isinstance(node_id, str) or not node_id:
            raise ValueError("credential has no nodeId")
        if not isinstance(salt_hex, str):
            raise ValueError("credential has no salt")
        salt = bytes.fromhex(salt_hex)
        if len(salt) < 16:
            raise ValueError("credential salt too short")
        return cls(node_id=node_id, salt=salt, created_at=data.get("createdAt", ""))

    def to_json(self) -> str:
        return json.dumps(
            {
                "nodeId": self.node_id,
                "salt": self.salt.hex(),
                "createdAt": self.created_at,
            },
            indent=2,
        )

    def save(self, data_dir: Path) -> Path:
        """Persist to ``data_dir`` with owner-only permissions."""
        data_dir.mkdir(parents=True, exist_ok=True)
        path = data_dir / CREDENTIALS_FILE
        path.write_text(self.to_json(), encoding="utf-8")
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
        logger.info("node_credential_saved", path=str(path))
        return path

    @classmethod
    def load(cls, data_dir: Path) -> NodeCredential:
        """Load a previously saved credential.

        Raises:
            FileNotFoundError: If no credential file exists.
            ValueError: If the file is corrupt.
        """
        path = data_dir / CREDENTIALS_FILE
        if not path.exists():
            msg = f"Node credential not found: {path}"
            raise FileNotFoundError(msg)
        try:
            cred = cls.from_json(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"corrupt credential file: {exc.msg}") from exc
        logger.info("node_credential_loaded", node_id=cred.node_id[:17])
        return cred

    @classmethod
    def load_or_create(cls, data_dir: Path) -> NodeCredential:
        """Load the node credential, generating and saving one if needed.

        A missing file is the normal first-run case; an unreadable or
        corrupt file is replaced by a new identity.
        """
        try:
            return cls.load(data_dir)
        except FileNotFoundError:
            pass
        except ValueError as exc:
            logger.warning("node_credential_corrupt", error=str(exc))
        cred = cls.generate()
        cred.save(data_dir)
        return cred
