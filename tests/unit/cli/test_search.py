"""Tests for starrecall search / ask commands."""

from __future__ import annotations

from unittest.mock import patch

from typer.testing import CliRunner

from starrecall.cli.main import app
from starrecall.db.repository import IndexRepository

runner = CliRunner()


# ---------------------------------------------------------------------------
# starrecall search
# ---------------------------------------------------------------------------


def test_search_empty_index(db_path, fake_pool) -> None:
    result = runner.invoke(app, ["search", "fuzzy", "--db", str(db_path)])
    assert result.exit_code == 0
    assert "index is empty" in result.output
    assert fake_pool.terminated


def test_search_prints_ranked_results(seeded_db, fake_pool) -> None:
    result = runner.invoke(app, ["search", "fuzzy finder", "--db", str(seeded_db)])
    assert result.exit_code == 0, result.output
    assert "junegunn/fzf" in result.output
    assert "BurntSushi/ripgrep" in result.output
    assert result.output.index("junegunn/fzf") < result.output.index("BurntSushi/ripgrep")


def test_search_language_filter(seeded_db, fake_pool) -> None:
    result = runner.invoke(app, ["search", "tool", "--language", "rust", "--db", str(seeded_db)])
    assert result.exit_code == 0, result.output
    assert "BurntSushi/ripgrep" in result.output
    assert "junegunn/fzf" not in result.output


def test_search_no_results(seeded_db, fake_pool) -> None:
    result = runner.invoke(app, ["search", "tool", "--topic", "databases", "--db", str(seeded_db)])
    assert result.exit_code == 0
    assert "No results" in result.output


def test_search_blank_query(seeded_db, fake_pool) -> None:
    result = runner.invoke(app, ["search", "   ", "--db", str(seeded_db)])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_search_top_k_must_be_positive(seeded_db, fake_pool) -> None:
    result = runner.invoke(app, ["search", "tool", "--top-k", "0", "--db", str(seeded_db)])
    assert result.exit_code != 0


# ---------------------------------------------------------------------------
# starrecall ask
# ---------------------------------------------------------------------------


def test_ask_streams_answer_and_saves_session(seeded_db, fake_pool) -> None:
    with patch("starrecall.rag.answer.llm_client.stream", return_value=iter(["Use ", "fzf."])):
        result = runner.invoke(app, ["ask", "fuzzy finder?", "--model", "ollama/llama3", "--db", str(seeded_db)])
    assert result.exit_code == 0, result.output
    assert "Use" in result.output
    assert "fzf." in result.output
    assert "Sources: junegunn/fzf" in result.output
    assert "Session:" in result.output

    store = IndexRepository.open(seeded_db)
    try:
        sessions = store.list_chat_sessions()
        assert len(sessions) == 1
        assert [m.role for m in store.list_chat_messages(sessions[0].id)] == ["user", "assistant"]
    finally:
        store.close()


def test_ask_continues_named_session(seeded_db, fake_pool) -> None:
    args = ["ask", "q", "--model", "ollama/llama3", "--session", "s1", "--db", str(seeded_db)]
    with patch("starrecall.rag.answer.llm_client.stream", side_effect=lambda *a, **k: iter(["ok"])):
        runner.invoke(app, args)
        result = runner.invoke(app, args)
    assert result.exit_code == 0, result.output
    assert "Session: s1" in result.output

    store = IndexRepository.open(seeded_db)
    try:
        assert len(store.list_chat_messages("s1")) == 4
    finally:
        store.close()


def test_ask_no_stream(seeded_db, fake_pool) -> None:
    with patch("starrecall.rag.answer.llm_client.complete", return_value="Try ripgrep.") as mock_complete:
        result = runner.invoke(
            app, ["ask", "grep?", "--model", "ollama/llama3", "--no-stream", "--db", str(seeded_db)]
        )
    assert result.exit_code == 0, result.output
    assert "Try ripgrep." in result.output
    mock_complete.assert_called_once()


def test_ask_missing_api_key(seeded_db, fake_pool, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    result = runner.invoke(app, ["ask", "q", "--model", "openai/gpt-4o-mini", "--db", str(seeded_db)])
    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


def test_ask_empty_index(db_path, fake_pool) -> None:
    with patch("starrecall.rag.answer.llm_client.stream") as mock_stream:
        result = runner.invoke(app, ["ask", "q", "--model", "ollama/llama3", "--db", str(db_path)])
    assert result.exit_code == 1
    assert "No results" in result.output
    mock_stream.assert_not_called()
