"""
Shared fakes and fixtures for the chat engine tests.
"""

import asyncio

import pytest

from paperchat.chat import ChatOrchestrator, ContextConfig, ContextWindowManager, SqlSessionStore
from paperchat.config import Settings
from paperchat.documents import Document, InMemoryDocumentSource
from paperchat.llm.base import BaseLLM, LLMResponse
from paperchat.llm.fallback import ProviderManager
from paperchat.tools import ToolExecutor

PAPER_TEXT = """Attention Is All You Need

Abstract
The dominant sequence transduction models are based on complex recurrent networks.
We propose the Transformer, based solely on attention mechanisms.

1. Introduction
Recurrent models factor computation along the symbol positions of the input sequences.
Attention mechanisms have become an integral part of sequence modeling in various tasks.

3. Method
Multi-head attention allows the model to jointly attend to information from different
representation subspaces at different positions, published in 2017 (doi 10.5555/3295222.3295349).

5. Results
On the WMT 2014 English-to-German translation task the big transformer model outperforms
the best previously reported models by more than 2.0 BLEU.

7. Conclusion
We presented the Transformer, the first sequence transduction model based entirely on attention.

References
[1] Bahdanau et al. Neural machine translation by jointly learning to align and translate.
"""


class FakeLLM(BaseLLM):
    """Scripted provider that records a snapshot of the messages of every call.

    ``responses`` and ``turns`` are consumed in order; the last entry repeats.
    """

    def __init__(
        self,
        name: str = "fake",
        capabilities=(),
        responses: list[LLMResponse] | None = None,
        chunks: list[str] | None = None,
        turns: list[list] | None = None,
        error: Exception | None = None,
        ready: bool = True,
    ):
        super().__init__(api_key="test-key" if ready else "", model="fake-model")
        self._name = name
        self.capabilities = frozenset(capabilities)
        self.responses = list(responses or [])
        self.chunks = list(chunks or [])
        self.turns = list(turns or [])
        self.error = error
        self.calls: list[list] = []
        self.system_prompts: list[str | None] = []
        self.attachments: list = []
        # When set, the stream pauses after its first chunk until the gate opens
        self.gate: asyncio.Event | None = None
        self.paused = asyncio.Event()

    @property
    def provider_name(self) -> str:
        return self._name

    def _next(self, items: list):
        return items.pop(0) if len(items) > 1 else items[0]

    async def generate(self, messages, tools=None, system_prompt=None):
        self.calls.append(list(messages))
        self.system_prompts.append(system_prompt)
        if self.error:
            raise self.error
        if not self.responses:
            return LLMResponse(content="")
        return self._next(self.responses)

    async def stream(self, messages, system_prompt=None, attachment=None):
        self.calls.append(list(messages))
        self.attachments.append(attachment)
        if self.error:
            raise self.error
        for index, chunk in enumerate(self.chunks):
            if index > 0 and self.gate is not None:
                self.paused.set()
                await self.gate.wait()
            yield chunk

    async def stream_with_tools(self, messages, tools):
        self.calls.append(list(messages))
        if self.error:
            raise self.error
        for event in self._next(self.turns):
            yield event


@pytest.fixture
def documents():
    return InMemoryDocumentSource({
        "P1": Document(title="Attention Is All You Need", text=PAPER_TEXT),
        "P2": Document(title="Scanned Paper", pdf_base64="JVBERi0xLjQK"),
    })


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}"


@pytest.fixture
def make_orchestrator(database_url, documents):
    """Factory wiring an orchestrator around fake providers and a temp database."""

    def factory(*providers, context_config=None, credential_manager=None, **overrides):
        manager = ProviderManager({p.provider_name: p for p in providers})
        settings = Settings(_env_file=None, **overrides)
        return ChatOrchestrator(
            store=SqlSessionStore(database_url),
            provider_manager=manager,
            tool_executor=ToolExecutor(document_source=documents),
            context_manager=ContextWindowManager(manager, context_config or ContextConfig()),
            document_source=documents,
            credential_manager=credential_manager,
            settings=settings,
        )

    return factory
