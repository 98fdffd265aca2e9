"""Attachment blobs kept on local disk, addressed by a generated key."""

import os
import re
import time
import uuid

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    base = os.path.basename(name or "")
    cleaned = _UNSAFE.sub("_", base).strip("._")
    return cleaned or "attachment"


class LocalBlobStore:
    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def path(self, key: str) -> str:
        full = os.path.abspath(os.path.join(self.root, key))
        if os.path.dirname(full) != self.root:
            raise ValueError(f"Invalid blob key: {key!r}")
        return full

    def put(self, filename: str, data: bytes) -> str:
        key = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{safe_filename(filename)}"
        with open(self.path(key), "wb") as fh:
            fh.write(data)
        return key

    def delete(self, key: str) -> None:
        os.remove(self.path(key))

    def exists(self, key: str) -> bool:
        return os.path.isfile(self.path(key))
