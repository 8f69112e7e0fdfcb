from typing import Dict, List, Optional, Tuple

from canvas_engine.domain.graph.fingerprint import ContextFingerprinter
from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.models.card_state import IndexDocument
from canvas_engine.infrastructure.search.index_sync import EmbeddingStore, SearchIndex


class RecordingSearchIndex(SearchIndex):
    """Search index fake that remembers every call"""

    def __init__(self, fail_remove: bool = False):
        self.documents: Dict[str, IndexDocument] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_remove = fail_remove

    def add_document(self, document: IndexDocument) -> None:
        self.calls.append(("add", document.id))
        self.documents[document.id] = document

    def remove_document(self, doc_id: str) -> bool:
        self.calls.append(("remove", doc_id))
        if self.fail_remove:
            raise RuntimeError("index offline")
        return self.documents.pop(doc_id, None) is not None

    def count(self, operation: str, doc_id: str) -> int:
        return self.calls.count((operation, doc_id))


class RecordingEmbeddingStore(EmbeddingStore):
    def __init__(self, fail: bool = False):
        self.deleted: List[str] = []
        self.fail = fail

    async def delete_embedding(self, card_id: str) -> None:
        if self.fail:
            raise RuntimeError("embedding store offline")
        self.deleted.append(card_id)


def answered(
    store: GraphStore,
    fingerprinter: ContextFingerprinter,
    prompt: str,
    response: str,
    parent_ids: Optional[List[str]] = None,
    **fields
) -> str:
    """Add a card that already has a response and a saved fingerprint"""

    card_id = store.add_card(parent_ids=parent_ids, prompt=prompt, response=response, **fields)
    fingerprinter.save_fingerprint(card_id)
    return card_id
