"""Answer generation: retrieve, prompt a chat model, record the conversation."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from starrecall.db.checkpoint import now_ms
from starrecall.db.models import ChatMessage, ChatSession, SearchResult
from starrecall.db.repository import IndexRepository
from starrecall.embeddings.pool import EmbeddingWorkerPool
from starrecall.logging import get_logger
from starrecall.rag import llm_client
from starrecall.rag.retriever import (
    DEFAULT_TOP_K,
    MAX_CONTEXT_SNIPPETS,
    SearchFilters,
    build_context,
    format_context,
    retrieve,
)

log = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a recommendation assistant for GitHub starred repositories. "
    "Use only provided context and be concise."
)


class NoContextError(RuntimeError):
    """Retrieval returned nothing to ground an answer on."""


@dataclass
class Answer:
    session_id: str
    text: str
    results: list[SearchResult] = field(default_factory=list)
    user_message: ChatMessage | None = None
    assistant_message: ChatMessage | None = None


def build_messages(prompt: str, snippets: list[str]) -> list[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": f"{prompt}\n\n{format_context(snippets)}"},
    ]


class AnswerService:
    """Answer questions about the user's stars and persist the chat.

    Args:
        store: Open index repository (also the chat history store).
        pool: Embedding pool used to embed the question.
        model: LiteLLM model string.
        api_base: Optional custom endpoint for local/OpenAI-compatible servers.
    """

    def __init__(
        self,
        store: IndexRepository,
        pool: EmbeddingWorkerPool,
        model: str,
        *,
        api_base: str | None = None,
        max_context_snippets: int = MAX_CONTEXT_SNIPPETS,
        temperature: float = 0.2,
        top_k: int = DEFAULT_TOP_K,
        clock: Callable[[], int] = now_ms,
        new_id: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.store = store
        self.pool = pool
        self.model = model
        self.api_base = api_base
        self.max_context_snippets = max_context_snippets
        self.temperature = temperature
        self.top_k = top_k
        self._clock = clock
        self._new_id = new_id

    def _session(self, session_id: str | None, query: str) -> ChatSession:
        if session_id:
            existing = self.store.get_chat_session(session_id)
            if existing is not None:
                return existing
        stamp = self._clock()
        return self.store.upsert_chat_session(
            ChatSession(id=session_id or self._new_id(), query=query, created_at=stamp, updated_at=stamp)
        )

    def ask(
        self,
        query: str,
        session_id: str | None = None,
        on_token: Callable[[str], None] | None = None,
        filters: SearchFilters | None = None,
        stream: bool = True,
    ) -> Answer:
        """Answer *query* from the top-ranked snippets.

        The reply is streamed through *on_token* when *stream* is true;
        otherwise it is fetched in one call and passed to *on_token* once.

        Raises:
            ValueError: If *query* is blank.
            EnvironmentError: If the provider API key is missing.
            NoContextError: If retrieval found nothing to use as context.
        """
        prompt = query.strip()
        if not prompt:
            raise ValueError("query must not be empty")
        llm_client.validate_api_key(self.model, self.api_base)

        results = retrieve(prompt, self.store, self.pool, k=self.top_k, filters=filters)
        snippets = build_context(results, self.max_context_snippets)
        if not snippets:
            raise NoContextError("No context available: the index returned no results for this query.")

        session = self._session(session_id, prompt)
        user_message = self.store.add_chat_message(
            ChatMessage(id=self._new_id(), session_id=session.id, role="user", content=prompt,
                        created_at=self._clock())
        )

        messages = build_messages(prompt, snippets)
        if stream:
            parts: list[str] = []
            for delta in llm_client.stream(
                self.model, messages, temperature=self.temperature, api_base=self.api_base
            ):
                parts.append(delta)
                if on_token is not None:
                    on_token(delta)
            text = "".join(parts)
        else:
            text = llm_client.complete(
                self.model, messages, temperature=self.temperature, api_base=self.api_base
            )
            if on_token is not None and text:
                on_token(text)

        assistant_message = None
        if text.strip():
            assistant_message = self.store.add_chat_message(
                ChatMessage(id=self._new_id(), session_id=session.id, role="assistant", content=text,
                            created_at=self._clock())
            )
        else:
            log.warning("answer.empty_response", model=self.model, session_id=session.id)
        return Answer(
            session_id=session.id,
            text=text,
            results=results,
            user_message=user_message,
            assistant_message=assistant_message,
        )
