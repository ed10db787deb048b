"""
Document access.

The engine never reads files itself; a host application exposes its papers
through a ``DocumentSource``.
"""

from dataclasses import dataclass
from typing import Protocol


class DocumentSource(Protocol):
    """Where paper titles, extracted text and raw PDFs come from."""

    async def get_title(self, item_key: str) -> str | None: ...

    async def get_text(self, item_key: str) -> str | None: ...

    async def get_pdf_base64(self, item_key: str) -> str | None: ...


@dataclass
class Document:
    title: str
    text: str | None = None
    pdf_base64: str | None = None


class InMemoryDocumentSource:
    """Dictionary-backed document source for embedding and tests."""

    def __init__(self, documents: dict[str, Document] | None = None):
        self._documents: dict[str, Document] = dict(documents or {})

    def add(self, item_key: str, document: Document) -> None:
        self._documents[item_key] = document

    def remove(self, item_key: str) -> None:
        self._documents.pop(item_key, None)

    async def get_title(self, item_key: str) -> str | None:
        doc = self._documents.get(item_key)
        return doc.title if doc else None

    async def get_text(self, item_key: str) -> str | None:
        doc = self._documents.get(item_key)
        return doc.text if doc else None

    async def get_pdf_base64(self, item_key: str) -> str | None:
        doc = self._documents.get(item_key)
        return doc.pdf_base64 if doc else None
