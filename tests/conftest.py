import json
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from desci.analysis import PaperAnalyzer
from desci.api import create_app
from desci.auth import IdentityResolver, SignatureVerifier
from desci.config import Settings
from desci.errors import ContentStoreError
from desci.repository import PaperRepository
from desci.workflow import PaperWorkflow


class FakeContentStore:
    """内存版 IPFS 客户端"""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.pinned_json: List[object] = []
        self.fail_uploads = False

    def _store(self, content: bytes) -> str:
        if self.fail_uploads:
            raise ContentStoreError("Failed to upload to IPFS: gateway unavailable")
        cid = f"QmFake{len(self.blobs) + 1}"
        self.blobs[cid] = content
        return cid

    def upload_bytes(self, content: bytes, filename: Optional[str] = None) -> str:
        return self._store(content)

    def upload_json(self, data) -> str:
        cid = self._store(json.dumps(data).encode())
        self.pinned_json.append(data)
        return cid

    def retrieve(self, cid: str) -> Optional[bytes]:
        return self.blobs.get(cid)

    def exists(self, cid: str) -> bool:
        return cid in self.blobs

    def url_for(self, cid: str) -> str:
        return f"https://gateway.test/ipfs/{cid}"


class FakeCompletions:
    def __init__(self, ratings, error: Optional[Exception] = None):
        self.ratings = list(ratings)
        self.error = error
        self.calls: List[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        # 依次返回评分，最后一个重复使用
        rating = self.ratings.pop(0) if len(self.ratings) > 1 else self.ratings[0]
        content = json.dumps({
            "plagiarismCheck": "No plagiarism detected.",
            "referenceVerification": "References look valid.",
            "contentSummary": "A short summary.",
            "qualityRating": rating,
        })
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeLLM:
    """模拟 AsyncOpenAI 的 chat.completions 接口"""

    def __init__(self, *ratings, error: Optional[Exception] = None):
        self.completions = FakeCompletions(ratings or (5,), error=error)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def calls(self) -> List[dict]:
        return self.completions.calls


@pytest.fixture
def settings():
    return Settings(_env_file=None, openai_api_key="", pinata_api_key="", pinata_secret_api_key="")


@pytest.fixture
def repository():
    return PaperRepository()


@pytest.fixture
def content_store():
    return FakeContentStore()


@pytest.fixture
def llm():
    return FakeLLM(5)


@pytest.fixture
def verifier():
    return SignatureVerifier()


@pytest.fixture
def identity(repository):
    return IdentityResolver(repository)


@pytest.fixture
def analyzer(repository, content_store, llm):
    return PaperAnalyzer(repository, content_store, llm)


@pytest.fixture
def workflow(repository, identity, verifier, content_store, analyzer):
    return PaperWorkflow(repository, identity, verifier, content_store, analyzer)


@pytest.fixture
def app(settings, repository, content_store, llm):
    return create_app(settings, repository=repository, content_store=content_store, llm_client=llm)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def drain_analyses(client: TestClient, app) -> None:
    """等待后台分析任务全部完成"""
    client.portal.call(app.state.workflow.dispatcher.join)


def paper_payload(**overrides) -> dict:
    payload = {
        "title": "X",
        "abstract": "A" * 60,
        "ipfsCid": "Qm1",
        "walletAddress": "0xAA",
    }
    payload.update(overrides)
    return payload
