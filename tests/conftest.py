import base64
import os
from datetime import datetime, timedelta
from io import BytesIO
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlmodel import SQLModel, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("COMPLIANCE_JURISDICTION", "IN")

from esign import deps as deps_module  # noqa: E402
from esign.auth import register_owner  # noqa: E402
from esign.deps import build_services  # noqa: E402
from esign.errors import NotFoundError  # noqa: E402
from esign.main import app  # noqa: E402
from esign.models import Document, Signer, SignerRole  # noqa: E402
from esign.schemas import Placement, SignatureInput, SignerCreate  # noqa: E402
from esign.utils import sha256_bytes  # noqa: E402


class MemoryStore:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.objects[key] = bytes(data)

    def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise NotFoundError(f"Stored object {key} not found")
        return self.objects[key]


class FakeNotifier:
    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    def send(self, recipient: str, template_kind: str, template_data: dict) -> bool:
        if self.fail:
            return False
        self.sent.append({"to": recipient, "kind": template_kind, "data": dict(template_data)})
        return True

    def of_kind(self, kind: str) -> List[dict]:
        return [m for m in self.sent if m["kind"] == kind]


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 10, 18, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_pdf(pages: int = 2) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter, invariant=1)
    for n in range(pages):
        c.setFont("Helvetica", 14)
        c.drawString(72, 720, f"Purchase agreement page {n + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def png_data_url(width: int = 60, height: int = 24) -> str:
    buf = BytesIO()
    Image.new("RGBA", (width, height), (20, 20, 120, 255)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


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
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(test_engine, setup_db, store, notifier, clock):
    return build_services(engine=test_engine, notifier=notifier, store=store, clock=clock, jurisdiction="IN")


@pytest.fixture
def owner(services):
    return register_owner(services.repo, "owner@example.com", "Olivia Owner")


def store_document(services, owner, data: bytes, filename: str = "agreement.pdf") -> Document:
    doc = services.repo.create(
        Document(
            owner_id=owner.id,
            filename=filename,
            storage_path=f"documents/{owner.id}/{filename}",
            size_bytes=len(data),
            original_hash=sha256_bytes(data),
        )
    )
    services.store.put(doc.storage_path, data, "application/pdf")
    return doc


@pytest.fixture
def document(services, owner):
    return store_document(services, owner, make_pdf())


@pytest.fixture
def draft(services, owner, document):
    """Draft envelope with two signers (each with a placement) and one CC."""
    wf = services.workflow
    env = wf.create(owner.id, document.id, subject="Purchase agreement")
    alice = wf.add_signer(
        env.id,
        SignerCreate(email="alice@example.com", name="Alice", placement=Placement(page=1, x=0.1, y=0.2, width=0.3, height=0.08)),
        owner.id,
    )
    bob = wf.add_signer(
        env.id,
        SignerCreate(email="bob@example.com", name="Bob", routing_order=2, placement=Placement(page=2, x=0.5, y=0.2, width=0.3, height=0.08)),
        owner.id,
    )
    carol = wf.add_signer(env.id, SignerCreate(email="carol@example.com", name="Carol", role=SignerRole.CC), owner.id)
    return env, alice, bob, carol


@pytest.fixture
def sent(services, owner, draft):
    env, alice, bob, carol = draft
    services.workflow.send(env.id, owner.id)
    return env, alice, bob, carol


def open_session(services, signer) -> str:
    """Verify with the code the signer was invited with and return the session token."""
    code = services.repo.get(Signer, signer.id).otp_code
    return services.verification.verify_code(signer.id, code).token


def sign(services, signer, **kwargs):
    token = open_session(services, signer)
    payload = SignatureInput(consent=True, image=kwargs.pop("image", png_data_url()), **kwargs)
    return services.workflow.record_signature(signer.envelope_id, signer.id, token, payload)


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(deps_module, "_services", services)
    with TestClient(app) as test_client:
        yield test_client
