"""Tests for answer generation and chat persistence."""

from __future__ import annotations

import itertools
from unittest.mock import patch

import numpy as np
import pytest

from starrecall.db.models import Chunk, Embedding, Repo
from starrecall.rag.answer import SYSTEM_PROMPT, AnswerService, NoContextError, build_messages
from starrecall.rag.retriever import SearchFilters


class FakePool:
    def embed(self, text):
        return np.array([1.0, 0.0], dtype=np.float32)


def _seed(store):
    store.upsert_repositories(
        [
            Repo(id=1, full_name="o/fzf", name="fzf", html_url="u1", updated_at="2024-01-01T00:00:00Z",
                 language="Go"),
            Repo(id=2, full_name="o/rg", name="rg", html_url="u2", updated_at="2024-01-01T00:00:00Z",
                 language="Rust"),
        ]
    )
    store.upsert_chunks(
        [Chunk(id="c1", repo_id=1, text="fuzzy finder"), Chunk(id="c2", repo_id=2, text="grep tool")]
    )
    store.upsert_embeddings(
        [Embedding(chunk_id="c1", model="m", vector=[1.0, 0.0]), Embedding(chunk_id="c2", model="m", vector=[0.6, 0.8])]
    )


def _service(store, clock, **kwargs):
    ids = (f"id{i}" for i in itertools.count(1))
    return AnswerService(store, FakePool(), "ollama/llama3", clock=clock, new_id=lambda: next(ids), **kwargs)


# ------------------------------------------------------------------
# build_messages
# ------------------------------------------------------------------


def test_build_messages_embeds_numbered_context():
    messages = build_messages("what?", ["o/a\nx", "o/b\ny"])
    assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert messages[1]["role"] == "user"
    assert messages[1]["content"] == "what?\n\nContext 1:\no/a\nx\n\nContext 2:\no/b\ny"


# ------------------------------------------------------------------
# ask
# ------------------------------------------------------------------


def test_ask_streams_and_persists(store, clock):
    _seed(store)
    tokens: list[str] = []
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["Use ", "fzf."])) as mock_stream:
        answer = _service(store, clock).ask("  fuzzy search?  ", on_token=tokens.append)

    assert answer.text == "Use fzf."
    assert tokens == ["Use ", "fzf."]
    assert [r.chunk_id for r in answer.results] == ["c1", "c2"]

    messages = mock_stream.call_args.args[1]
    assert messages[1]["content"].startswith("fuzzy search?\n\nContext 1:\no/fzf\nfuzzy finder")

    session = store.get_chat_session(answer.session_id)
    assert session.query == "fuzzy search?"
    stored = store.list_chat_messages(answer.session_id)
    assert [(m.role, m.content, m.sequence) for m in stored] == [
        ("user", "fuzzy search?", 1),
        ("assistant", "Use fzf.", 2),
    ]


def test_ask_continues_existing_session(store, clock):
    _seed(store)
    service = _service(store, clock)
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["one"])):
        first = service.ask("first")
    clock.advance(10)
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["two"])):
        second = service.ask("second", session_id=first.session_id)

    assert second.session_id == first.session_id
    assert [m.sequence for m in store.list_chat_messages(first.session_id)] == [1, 2, 3, 4]
    assert store.get_chat_session(first.session_id).query == "first"


def test_ask_unknown_session_id_is_created(store, clock):
    _seed(store)
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["ok"])):
        answer = _service(store, clock).ask("q", session_id="mine")
    assert answer.session_id == "mine"
    assert store.get_chat_session("mine") is not None


def test_ask_without_streaming_uses_complete(store, clock):
    _seed(store)
    tokens: list[str] = []
    with patch("starrecall.rag.answer.llm_client.complete", return_value="Try rg.") as mock_complete, \
            patch("starrecall.rag.answer.llm_client.stream") as mock_stream:
        answer = _service(store, clock, temperature=0.5).ask("grep?", on_token=tokens.append, stream=False)

    assert answer.text == "Try rg."
    assert tokens == ["Try rg."]
    mock_stream.assert_not_called()
    assert mock_complete.call_args.kwargs["temperature"] == 0.5


def test_empty_reply_is_not_persisted(store, clock):
    _seed(store)
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["  "])):
        answer = _service(store, clock).ask("q")
    assert answer.assistant_message is None
    assert [m.role for m in store.list_chat_messages(answer.session_id)] == ["user"]


def test_context_limited_to_max_snippets(store, clock):
    _seed(store)
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["ok"])) as mock_stream:
        _service(store, clock, max_context_snippets=1).ask("q")
    content = mock_stream.call_args.args[1][1]["content"]
    assert "Context 1:" in content
    assert "Context 2:" not in content


def test_filters_apply_before_context(store, clock):
    _seed(store)
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["ok"])):
        answer = _service(store, clock).ask("q", filters=SearchFilters(language="rust"))
    assert [r.repo_full_name for r in answer.results] == ["o/rg"]


def test_no_context_raises_and_records_nothing(store, clock):
    with patch("starrecall.rag.answer.llm_client.stream") as mock_stream:
        with pytest.raises(NoContextError):
            _service(store, clock).ask("anything")
    mock_stream.assert_not_called()
    assert store.list_chat_sessions() == []


def test_blank_question_rejected(store, clock):
    with pytest.raises(ValueError):
        _service(store, clock).ask("   ")


def test_missing_api_key_raises_before_retrieval(store, clock, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    _seed(store)
    service = AnswerService(store, FakePool(), "openai/gpt-4o-mini", clock=clock)
    with pytest.raises(EnvironmentError, match="OPENAI_API_KEY"):
        service.ask("q")
    assert store.list_chat_sessions() == []
