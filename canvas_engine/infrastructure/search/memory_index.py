from typing import Dict, List, Optional
import asyncio

from canvas_engine.domain.models.card_state import IndexDocument
from canvas_engine.infrastructure.search.index_sync import EmbeddingStore, SearchIndex


class InMemorySearchIndex(SearchIndex):
    """Mock keyword index over card documents"""

    def __init__(self):
        self.documents: Dict[str, IndexDocument] = {}

    def add_document(self, document: IndexDocument) -> None:
        """Insert or replace a document"""

        self.documents[document.id] = document

    def remove_document(self, doc_id: str) -> bool:
        return self.documents.pop(doc_id, None) is not None


class InMemoryEmbeddingStore(EmbeddingStore):
    """Mock embedding store keyed by card id.

    Embeddings are produced outside the engine; a host can seed them here.
    """

    def __init__(self, embeddings: Optional[Dict[str, List[float]]] = None):
        self.embeddings: Dict[str, List[float]] = dict(embeddings or {})
        self._lock = asyncio.Lock()

    async def delete_embedding(self, card_id: str) -> None:
        async with self._lock:
            self.embeddings.pop(card_id, None)
