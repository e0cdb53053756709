# =============================================================================
# Integration Tests — HTTP API
# =============================================================================
#
# Exercises the FastAPI routers through TestClient with every engine
# collaborator swapped for an in-memory fake via dependency_overrides.
# No database, vector store, broker or model provider needed.
# =============================================================================

import json
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fakes import (
    FakePluginStore,
    FakeVectorStore,
    ScriptedLLM,
    fake_embed,
    fake_embed_many,
    make_plugin,
)
from fastapi.testclient import TestClient

from plugin_engine.api.deps import (
    get_caller_id,
    get_llm,
    get_retriever,
    get_store,
    get_vectorstore,
)
from plugin_engine.config import settings
from plugin_engine.db.engine import get_async_session
from plugin_engine.db.models import DocumentStatus, KnowledgeDocument, Plugin
from plugin_engine.main import create_app
from plugin_engine.services.retriever import Retriever

CITED = "Use 50 mm cover [Source 1]. Slab cover differs [Source 2]."


class FakeSession:
    """Just enough of AsyncSession for the documents router."""

    def __init__(self) -> None:
        self.objects: dict[tuple[type, int], object] = {}
        self.deleted: list[object] = []
        self.pending = None
        self._next_id = 42

    def put(self, model: type, obj_id: int, obj: object) -> None:
        self.objects[(model, obj_id)] = obj

    async def get(self, model, obj_id):
        return self.objects.get((model, obj_id))

    def add(self, obj) -> None:
        self.pending = obj

    async def flush(self) -> None:
        self.pending.id = self._next_id
        self.put(type(self.pending), self._next_id, self.pending)

    async def delete(self, obj) -> None:
        self.deleted.append(obj)


@pytest.fixture
def env():
    store = FakePluginStore()
    store.add_plugin(make_plugin())
    vectors = FakeVectorStore()
    vectors.add_text(1, 10, "is456.pdf", [
        "Minimum concrete cover for a beam in severe exposure is 50 mm.",
        "Slab cover in mild exposure may be reduced to 20 mm.",
    ])
    return SimpleNamespace(
        store=store,
        vectors=vectors,
        retriever=Retriever(store=vectors, embed=fake_embed, embed_many=fake_embed_many),
        llm=ScriptedLLM(responder=lambda messages, system: CITED),
        session=FakeSession(),
        caller_id=None,
    )


@pytest.fixture
def client(env):
    app = create_app()

    async def session_override():
        yield env.session

    app.dependency_overrides[get_caller_id] = lambda: env.caller_id
    app.dependency_overrides[get_store] = lambda: env.store
    app.dependency_overrides[get_retriever] = lambda: env.retriever
    app.dependency_overrides[get_llm] = lambda: env.llm
    app.dependency_overrides[get_vectorstore] = lambda: env.vectors
    app.dependency_overrides[get_async_session] = session_override
    return TestClient(app)


def _sse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.split("\n"))
        events.append((lines["event"], json.loads(lines["data"])))
    return events


# ---------------------------------------------------------------------------
# Test: Health & Errors
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestErrorMapping:
    def test_unknown_plugin_is_403_with_error_body(self, client):
        response = client.post("/v1/query", json={"plugin": "missing", "query": "cover?"})

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "access_denied"
        assert body["details"] == {"plugin": "missing"}

    def test_schema_violation_is_422(self, client):
        response = client.post("/v1/query", json={"plugin": "structural-codes", "query": ""})
        assert response.status_code == 422

    def test_generation_failure_is_502(self, client, env):
        env.llm = ScriptedLLM([RuntimeError("down"), RuntimeError("down")])
        response = client.post(
            "/v1/query", json={"plugin": "structural-codes", "query": "beam cover?"},
        )
        assert response.status_code == 502
        assert response.json()["code"] == "generation_error"


# ---------------------------------------------------------------------------
# Test: Query, Review & Collaboration
# ---------------------------------------------------------------------------


class TestQueryEndpoint:
    def test_json_answer(self, client):
        response = client.post("/v1/query", json={
            "plugin": "structural-codes",
            "query": "What cover does a beam in severe exposure need?",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["answer"] == CITED
        assert body["confidence"] == "high"
        assert [c["id"] for c in body["citations"]] == ["src_1", "src_2"]
        assert body["plugin_version"] == "2.1.0"

    def test_stream_flag_returns_sse(self, client):
        response = client.post("/v1/query", json={
            "plugin": "structural-codes",
            "query": "What cover does a beam in severe exposure need?",
            "stream": True,
        })

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        events = _sse_events(response.text)
        assert events[-1][0] == "done"
        assert events[-1][1]["type"] == "done"
        assert "".join(data["text"] for kind, data in events if kind == "delta") == CITED

    def test_accept_header_selects_sse(self, client):
        response = client.post(
            "/v1/query",
            json={"plugin": "structural-codes", "query": "beam cover?"},
            headers={"Accept": "text/event-stream"},
        )
        assert response.headers["content-type"].startswith("text/event-stream")


class TestReviewEndpoint:
    def test_json_review(self, client, env):
        env.llm = ScriptedLLM(responder=lambda messages, system: json.dumps([{
            "segmentIndex": 0, "severity": "warning", "category": "omission",
            "issue": "Cover not stated [Source 1]", "citations": ["[Source 1]"],
        }]))

        response = client.post("/v1/review", json={
            "plugin": "structural-codes",
            "document": "Beam design note for severe exposure.",
            "title": "Beam note",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["total_segments"] == 1
        assert body["annotations"][0]["id"] == "ann_0"
        assert body["summary"]["overall_compliance"] == "partially-compliant"


class TestCollaborateEndpoint:
    def test_unanimous_session(self, client, env):
        env.store.add_plugin(make_plugin(2, "durability", "Durability"))
        env.llm = ScriptedLLM(responder=lambda messages, system: (
            json.dumps({"answer": "50 mm concrete cover.", "expertContributions": []})
            if "synthesis moderator" in (system or "")
            else "Use 50 mm concrete cover for the beam."
        ))

        response = client.post("/v1/collaborate", json={
            "experts": ["structural-codes", "durability"],
            "query": "What cover does the beam need?",
            "mode": "consensus",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "complete"
        assert body["consensus"]["agreement_level"] == 1.0
        assert body["consensus"]["conflicts"] == []
        assert body["warning"] is None

    def test_too_few_experts_is_422(self, client):
        response = client.post("/v1/collaborate", json={
            "experts": ["structural-codes"], "query": "q",
        })
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Test: Documents
# ---------------------------------------------------------------------------


class TestDocumentsEndpoint:
    def _plugin(self, env, creator_id="owner-1"):
        env.session.put(Plugin, 1, SimpleNamespace(id=1, creator_id=creator_id))

    def test_create_queues_ingestion(self, client, env):
        self._plugin(env)
        with patch("plugin_engine.api.documents.ingest_document") as task:
            task.delay.return_value = SimpleNamespace(id="task-7")
            response = client.post("/plugins/1/documents", json={
                "file_name": "is456.md", "file_type": "md", "text": "# Cover\n\n50 mm.",
            })

        assert response.status_code == 202
        body = response.json()
        assert body == {
            "document_id": 42,
            "task_id": "task-7",
            "status": "pending",
            "message": "Document 'is456.md' queued for ingestion.",
        }
        kwargs = task.delay.call_args.kwargs
        assert kwargs["document_id"] == 42
        assert kwargs["plugin_id"] == 1
        assert kwargs["text"] == "# Cover\n\n50 mm."

    def test_unknown_plugin_is_404(self, client):
        response = client.post("/plugins/9/documents", json={
            "file_name": "a.txt", "text": "text",
        })
        assert response.status_code == 404

    def test_get_and_delete_document(self, client, env):
        self._plugin(env)
        now = datetime.now(UTC)
        doc = KnowledgeDocument(
            id=10, plugin_id=1, file_name="is456.pdf", file_type="pdf", char_count=120,
            status=DocumentStatus.COMPLETED, chunk_count=2, created_at=now, updated_at=now,
        )
        env.session.put(KnowledgeDocument, 10, doc)

        response = client.get("/plugins/1/documents/10")
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["chunk_count"] == 2

        response = client.delete("/plugins/1/documents/10")
        assert response.status_code == 204
        assert env.session.deleted == [doc]
        assert env.vectors.rows == []

    def test_document_of_other_plugin_is_404(self, client, env):
        self._plugin(env)
        now = datetime.now(UTC)
        env.session.put(KnowledgeDocument, 11, KnowledgeDocument(
            id=11, plugin_id=2, file_name="x.txt", char_count=1,
            status=DocumentStatus.PENDING, created_at=now, updated_at=now,
        ))
        assert client.get("/plugins/1/documents/11").status_code == 404

    def test_non_creator_is_forbidden_when_auth_enabled(self, client, env, monkeypatch):
        monkeypatch.setattr(settings, "auth_enabled", True)
        self._plugin(env, creator_id="someone-else")
        env.caller_id = "owner-1"

        response = client.get("/plugins/1/documents/10")
        assert response.status_code == 403

