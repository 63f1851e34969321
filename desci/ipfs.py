import logging
import time
from typing import Any, Optional

import requests

from .errors import ContentStoreError

logger = logging.getLogger(__name__)

PIN_TIMEOUT = 30


class ContentStoreClient:
    """通过 Pinata 固定内容到 IPFS，并从网关读取"""

    def __init__(self, api_key: str, secret_api_key: str,
                 api_url: str = "https://api.pinata.cloud",
                 gateway_url: str = "https://gateway.pinata.cloud/ipfs/",
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.secret_api_key = secret_api_key
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url if gateway_url.endswith("/") else gateway_url + "/"
        self.session = session or requests.Session()

    def _auth_headers(self) -> dict:
        if not self.api_key or not self.secret_api_key:
            raise ContentStoreError("Failed to upload to IPFS: Pinata API keys not configured")
        return {
            'pinata_api_key': self.api_key,
            'pinata_secret_api_key': self.secret_api_key,
        }

    def _pin(self, endpoint: str, **kwargs) -> str:
        headers = self._auth_headers()
        try:
            response = self.session.post(
                f"{self.api_url}/pinning/{endpoint}", headers=headers, timeout=PIN_TIMEOUT, **kwargs
            )
        except requests.RequestException as e:
            logger.error(f"Error uploading to IPFS: {e}")
            raise ContentStoreError(f"Failed to upload to IPFS: {e}") from e

        if response.status_code != 200:
            raise ContentStoreError(f"Failed to upload to IPFS: {response.status_code} {response.reason}")
        cid = response.json().get('IpfsHash')
        if not cid:
            raise ContentStoreError("Failed to upload to IPFS: response did not include IpfsHash")
        logger.info(f"Pinned content to IPFS: {cid}")
        return cid

    def upload_bytes(self, content: bytes, filename: Optional[str] = None) -> str:
        """上传二进制内容，返回 CID"""
        filename = filename or f"file-{int(time.time() * 1000)}"
        return self._pin("pinFileToIPFS", files={'file': (filename, content)})

    def upload_json(self, data: Any) -> str:
        """上传 JSON 对象，返回 CID"""
        return self._pin("pinJSONToIPFS", json=data)

    def retrieve(self, cid: str) -> Optional[bytes]:
        """读取内容，找不到或网络错误时返回 None"""
        try:
            response = self.session.get(self.url_for(cid), timeout=10)
        except requests.RequestException as e:
            logger.error(f"Error retrieving {cid} from IPFS: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"IPFS gateway returned {response.status_code} for {cid}")
            return None
        return response.content

    def exists(self, cid: str) -> bool:
        try:
            response = self.session.head(self.url_for(cid), timeout=5)
        except requests.RequestException as e:
            logger.warning(f"Error checking {cid} on IPFS: {e}")
            return False
        return response.status_code == 200

    def url_for(self, cid: str) -> str:
        return f"{self.gateway_url}{cid}"
