import math
import sys
from pathlib import Path

import pytest

# Add project root and src to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))
sys.path.insert(0, str(project_root))

from contract_inbox.db import InboxDB
from contract_inbox.models import Contract, FeedbackAction, FeedbackEvent
from contract_inbox.service import InboxService


PROMPT = "cloud hosting"


class FakeEmbedder:
    """Looks vectors up by exact text; unknown text fails like an upstream error."""

    def __init__(self, vectors):
        self.vectors = dict(vectors)
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if text not in self.vectors:
            raise RuntimeError(f"no vector for {text!r}")
        return list(self.vectors[text])


def _event(action, score, *, index=0, inbox_id="inbox-1", contract_id=None, reason=None):
    return FeedbackEvent(
        id=f"event-{index}",
        inbox_id=inbox_id,
        contract_id=contract_id or f"contract-{index}",
        action=FeedbackAction.parse(action),
        match_score=float(score),
        created_at=f"2024-01-01T00:{index // 60:02d}:{index % 60:02d}+00:00",
        hide_reason=reason,
    )


@pytest.fixture
def make_event():
    return _event


@pytest.fixture
def make_events():
    def build(specs, *, inbox_id="inbox-1", start=0):
        return [
            _event(action, score, index=start + offset, inbox_id=inbox_id)
            for offset, (action, score) in enumerate(specs)
        ]

    return build


@pytest.fixture
def contracts():
    return [
        Contract(
            id="c-high",
            title="Managed cloud hosting",
            description="Hosting of council services on a managed cloud platform.",
            authority="NHS Digital",
            value=250000.0,
            buyer_classification="Health",
            embedding=[1.0, 0.0, 0.0],
        ),
        Contract(
            id="c-mid",
            title="Data centre migration",
            description="Move legacy workloads to hosted infrastructure.",
            authority="Ministry of Defence",
            value=80000.0,
            buyer_classification="Central Government",
            embedding=[0.8, 0.6, 0.0],
        ),
        Contract(
            id="c-low",
            title="Network support",
            description="Second line support for the office network.",
            authority="Leeds City Council",
            value=None,
            buyer_classification="Local Government",
            embedding=[0.5, math.sqrt(0.75), 0.0],
        ),
        Contract(
            id="c-far",
            title="Grounds maintenance",
            description="Grass cutting and hedge trimming.",
            authority="Leeds City Council",
            value=15000.0,
            buyer_classification="Local Government",
            embedding=[0.0, 1.0, 0.0],
        ),
        Contract(
            id="c-none",
            title="Office furniture",
            description="Desks and chairs",
            authority="NHS Digital",
            value=5000.0,
            buyer_classification="Health",
            embedding=None,
        ),
    ]


@pytest.fixture
def embedder():
    return FakeEmbedder({PROMPT: [1.0, 0.0, 0.0]})


@pytest.fixture
def db(tmp_path):
    return InboxDB(tmp_path / "test_inbox.db")


@pytest.fixture
def service(tmp_path, db, embedder, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("CI_OPENAI_CONFIG_PATH", raising=False)
    return InboxService(root_dir=tmp_path, db=db, embedder=embedder, default_user_id="tester")


@pytest.fixture
def seeded_service(service, contracts):
    service.upsert_contracts(contracts)
    return service


@pytest.fixture
def inbox(seeded_service):
    return seeded_service.create_inbox(name="Cloud work", prompt=PROMPT)
