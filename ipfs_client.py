# ipfs_client.py
from __future__ import annotations

import requests

from errors import UploadFailed
from metadata_store import MetadataStore


class IpfsMetadataStore(MetadataStore):
    """
    IPFS ノードの HTTP API (/api/v0/add) にメタデータJSONを置く。
    CID は内容から決まるので、同じ内容を何度送っても同じ ipfs://<CID> が返る。
    """

    def __init__(self, api_url: str = "http://127.0.0.1:5001", timeout: float = 30.0, session=None):
        """
        :param api_url: IPFS HTTP API のベースURL（kubo の既定は :5001）
        :param timeout: 1リクエストのタイムアウト秒
        """
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def _put(self, data: bytes) -> str:
        try:
            resp = self._session.post(
                f"{self._api_url}/api/v0/add",
                params={"pin": "true", "cid-version": "1"},
                files={"file": ("metadata.json", data, "application/json")},
                timeout=self._timeout,
            )
        except requests.RequestException as ex:
            raise UploadFailed(f"IPFS add failed: {ex}") from ex

        if not resp.ok:
            raise UploadFailed(f"IPFS add failed ({resp.status_code}): {resp.text[:200]}")
        try:
            cid = resp.json()["Hash"]
        except (ValueError, KeyError) as ex:
            raise UploadFailed("IPFS add returned no Hash") from ex
        return f"ipfs://{cid}"
