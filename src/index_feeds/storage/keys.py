# src/index_feeds/storage/keys.py

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import secrets
from pathlib import Path

from ..core.models import FeedKeys

logger = logging.getLogger(__name__)

CURVE = "hmac-sha256"


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def generate_keys() -> FeedKeys:
    """Fresh feed keypair. The public half is derived from the private one."""
    private = secrets.token_bytes(32)
    public = _b64(hashlib.sha256(private).digest())
    return FeedKeys(curve=CURVE, public=public, private=_b64(private), id=f"@{public}.{CURVE}")


def private_bytes(keys: FeedKeys) -> bytes:
    return base64.b64decode(keys.private)


def _atomic_write_json(path: Path, data: dict[str, str]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), "utf-8")
    os.replace(tmp, path)
    try:
        os.chmod(path, 0o600)
    except OSError:
        # Not critical on Windows or restricted FS.
        logger.debug("chmod 600 failed for %s", path, exc_info=True)


def load_or_create_keys(path: str | Path) -> FeedKeys:
    """
    Load the local identity from `path`, creating it on first run.

    The file holds the private key and must never be committed
    (keep it under the gitignored data dir).
    """
    path = Path(path)
    if path.exists():
        data = json.loads(path.read_text("utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"identity file {path} is not a JSON object")
        keys = FeedKeys.from_dict(data)
        logger.info("Loaded identity %s from %s", keys.id, path)
        return keys

    path.parent.mkdir(parents=True, exist_ok=True)
    keys = generate_keys()
    _atomic_write_json(path, keys.to_dict())
    logger.info("Created identity %s at %s", keys.id, path)
    return keys
