# metadata_store.py
from __future__ import annotations

import hashlib
import logging
import threading
from typing import Optional

from errors import UploadFailed
from models import AssetMetadata, MetadataReference

logger = logging.getLogger(__name__)


def content_address(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


class MetadataStore:
    """
    AssetMetadata を content-addressed なストアに置き、参照 (scheme://address) を返す。
    同じメタデータなら何度 upload しても同じ参照になる。
    """

    def upload(self, metadata: AssetMetadata) -> MetadataReference:
        data = metadata.to_bytes()
        ref = MetadataReference(self._put(data))
        logger.info("metadata uploaded: %s (%d bytes)", ref, len(data))
        return ref

    def _put(self, data: bytes) -> str:
        raise NotImplementedError


class InMemoryMetadataStore(MetadataStore):
    scheme = "mem"

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.upload_count = 0

    def _put(self, data: bytes) -> str:
        digest = content_address(data)
        with self._lock:
            self.upload_count += 1
            self._blobs.setdefault(digest, data)
        return f"{self.scheme}://{digest}"

    def get(self, reference: MetadataReference) -> Optional[bytes]:
        scheme, _, digest = str(reference).partition("://")
        if scheme != self.scheme:
            raise UploadFailed(f"not a {self.scheme}:// reference: {reference}")
        return self._blobs.get(digest)
