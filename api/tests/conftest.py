import base64
import json
import os
from io import BytesIO
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from minio.error import S3Error
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_TOKEN", "admin-test-token")
os.environ.setdefault("PAYMENT_RECIPIENT_ADDRESS", "0xpayee")

from paysign.main import app  # noqa: E402
from paysign import db as db_module  # noqa: E402
from paysign.db import get_session  # noqa: E402
from paysign.identity import IdentityOracle, IdentityService, VerifiedIdentity, get_identity_service  # noqa: E402
from paysign.payments import SettleResult, VerifyResult, get_facilitator  # noqa: E402
from paysign.storage import get_storage  # noqa: E402

OWNER = "0xowner000000000000000000000000000000000000000000000000000000aaaa"
ALICE = "0xa11ce00000000000000000000000000000000000000000000000000000001234"
BOB = "0xb0b0000000000000000000000000000000000000000000000000000000005678"

SIMPLE_SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="

ADMIN_HEADERS = {"X-Admin-Token": "admin-test-token"}


def make_pdf(pages: int = 1) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for i in range(pages):
        c.drawString(72, 720, f"Agreement page {i + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def payment_header(payer: str = OWNER) -> Dict[str, str]:
    payload = {"x402Version": 2, "payload": {"payer": payer, "transaction": "0xsigned"}}
    return {"PAYMENT-SIGNATURE": base64.b64encode(json.dumps(payload).encode()).decode()}


class MemoryStore:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        self.objects[key] = bytes(data)

    def get_bytes(self, key: str) -> bytes:
        if key not in self.objects:
            raise S3Error(
                response=None, code="NoSuchKey", message="missing", resource=f"/{key}",
                request_id="test-request", host_id="test-host",
            )
        return self.objects[key]

    def delete_object(self, key: str):
        self.objects.pop(key, None)


class FakeFacilitator:
    def __init__(self):
        self.verify_result = VerifyResult(is_valid=True, payer=OWNER)
        self.settle_result = SettleResult(success=True, transaction="0xtx123", payer=OWNER)
        self.calls: List[str] = []

    def verify(self, payload, requirements):
        self.calls.append("verify")
        return self.verify_result

    def settle(self, payload, requirements):
        self.calls.append("settle")
        return self.settle_result


class FakeOracle(IdentityOracle):
    def __init__(self):
        self.claims: Dict[str, List[VerifiedIdentity]] = {}
        self.fail = False

    def fetch_claims(self, wallet):
        if self.fail:
            raise RuntimeError("indexer down")
        return self.claims.get(wallet, [])


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def db_session(test_engine, setup_db):
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def mock_storage() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def facilitator() -> FakeFacilitator:
    return FakeFacilitator()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def client(test_engine, setup_db, mock_storage, facilitator, oracle):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_storage] = lambda: mock_storage
    app.dependency_overrides[get_facilitator] = lambda: facilitator
    app.dependency_overrides[get_identity_service] = lambda: IdentityService(oracle)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def create_document(client):
    """Pays for and creates a document; returns the create response body."""

    def _create(recipients=None, pdf_pages=1, content=None, title="Mutual NDA"):
        body = {
            "title": title,
            "recipients": recipients or [{"name": "Alice", "walletAddress": ALICE, "email": "alice@example.com"}],
        }
        if content is not None:
            body.update(format="html", content=content)
        else:
            body.update(format="pdf", pdfBase64=base64.b64encode(make_pdf(pdf_pages)).decode())
        resp = client.post("/api/documents", json=body, headers=payment_header())
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create


def token_from_link(link: str) -> str:
    return link.rsplit("/sign/", 1)[1]


@pytest.fixture
def pending_document(client, create_document):
    """Creates, fills in and distributes a document; each recipient gets one field per type."""

    def _pending(recipients=None, field_types=("signature",), **kwargs):
        created = create_document(recipients=recipients, **kwargs)
        doc_id = created["documentId"]
        recipient_ids = [r["id"] for r in created["recipients"]]
        fields = []
        for rid in recipient_ids:
            for i, field_type in enumerate(field_types):
                fields.append({
                    "recipientId": rid,
                    "fieldType": field_type,
                    "page": 1,
                    "positionX": 10,
                    "positionY": 20 + i * 10,
                    "width": 30,
                    "height": 6,
                })
        resp = client.put(f"/api/documents/{doc_id}/fields", json={"fields": fields})
        assert resp.status_code == 200, resp.text
        resp = client.post(f"/api/documents/{doc_id}/distribute")
        assert resp.status_code == 200, resp.text
        links = resp.json()["signingLinks"]
        tokens = [token_from_link(links[f"recipient_{i}"]) for i in range(1, len(recipient_ids) + 1)]
        field_map = {}
        for f in resp_fields(client, doc_id):
            field_map.setdefault(f["recipientId"], {})[f["type"]] = f
        return {"id": doc_id, "tokens": tokens, "recipientIds": recipient_ids, "fields": field_map}

    return _pending


def resp_fields(client, doc_id):
    resp = client.get(f"/api/documents/{doc_id}")
    assert resp.status_code == 200
    return resp.json()["fields"]
