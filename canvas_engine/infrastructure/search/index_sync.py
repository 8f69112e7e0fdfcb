from abc import ABC, abstractmethod
from typing import Iterable, Optional
from enum import Enum
import asyncio
import time

import structlog
from pydantic import BaseModel

from canvas_engine.domain.errors import IndexSyncFailure
from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.models.card_state import (
    GraphEvent, GraphEventKind, HistoryJump, IndexDocument
)
from canvas_engine.infrastructure.observability.logging import canvas_logger, metrics

logger = structlog.get_logger(__name__)


class SearchIndex(ABC):
    """Full-text search collaborator"""

    @abstractmethod
    def add_document(self, document: IndexDocument) -> None:
        pass

    @abstractmethod
    def remove_document(self, doc_id: str) -> bool:
        pass


class EmbeddingStore(ABC):
    """Semantic embedding collaborator"""

    @abstractmethod
    async def delete_embedding(self, card_id: str) -> None:
        pass


class IndexCommandKind(str, Enum):
    REMOVE = "remove"
    DELETE_EMBEDDING = "delete_embedding"
    ADD = "add"


class IndexCommand(BaseModel):
    kind: IndexCommandKind
    card_id: str
    document: Optional[IndexDocument] = None


class IndexSynchronizer:
    """Keeps the search index and embedding store in line with the canvas.

    Mutations only enqueue commands; a background worker executes them one at
    a time. Each command stands alone, so a failed removal never prevents the
    matching embedding deletion, and nothing is ever raised back to the code
    that mutated the graph.
    """

    def __init__(
        self,
        store: GraphStore,
        search_index: SearchIndex,
        embedding_store: Optional[EmbeddingStore] = None,
        preview_chars: int = 200
    ):
        self.store = store
        self.search_index = search_index
        self.embedding_store = embedding_store
        self.preview_chars = preview_chars
        self._queue: "asyncio.Queue[IndexCommand]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def attach(self) -> None:
        """Subscribe to graph mutations"""

        self.store.register_listener(self.handle_event)

    def handle_event(self, event: GraphEvent) -> None:
        # Cards dropped by undo/redo arrive through on_history_jump instead
        if event.kind == GraphEventKind.CARD_REMOVED and event.card_id:
            self.on_cards_removed([event.card_id])

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def on_cards_removed(self, card_ids: Iterable[str]) -> None:
        for card_id in card_ids:
            self._enqueue(IndexCommand(kind=IndexCommandKind.REMOVE, card_id=card_id))
            if self.embedding_store is not None:
                self._enqueue(IndexCommand(kind=IndexCommandKind.DELETE_EMBEDDING, card_id=card_id))

    def on_history_jump(self, jump: HistoryJump) -> None:
        """Reconcile after undo/redo using the card-id diff"""

        self.on_cards_removed(jump.vanished_ids)
        for card_id in jump.resurrected_ids:
            self.upsert(card_id)

    def upsert(self, card_id: str) -> bool:
        """Queue (re-)insertion of an answered card using its current text"""

        card = self.store.get_card(card_id)
        if card is None or not card.has_response:
            return False
        document = IndexDocument.from_card(card, self.preview_chars)
        self._enqueue(IndexCommand(kind=IndexCommandKind.ADD, card_id=card_id, document=document))
        return True

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the background worker on the running loop"""

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.info("Index sync worker started")

    async def drain(self) -> None:
        """Wait until every queued command has been executed"""

        if self._worker is not None and not self._worker.done():
            await self._queue.join()
            return

        while not self._queue.empty():
            command = self._queue.get_nowait()
            try:
                await self._execute(command)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Index sync worker stopped", backlog=self.backlog)

    async def _run(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                await self._execute(command)
            finally:
                self._queue.task_done()

    async def _execute(self, command: IndexCommand) -> None:
        start_time = time.time()
        try:
            if command.kind == IndexCommandKind.REMOVE:
                removed = self.search_index.remove_document(command.card_id)
                if not removed:
                    logger.debug("Document was not indexed", card_id=command.card_id)
            elif command.kind == IndexCommandKind.DELETE_EMBEDDING:
                await self.embedding_store.delete_embedding(command.card_id)
            elif command.kind == IndexCommandKind.ADD:
                self.search_index.add_document(command.document)

            canvas_logger.log_index_sync(command.kind.value, command.card_id)
            metrics.record_latency(
                "index_sync",
                (time.time() - start_time) * 1000,
                {"operation": command.kind.value}
            )
        except Exception as e:
            failure = IndexSyncFailure(command.kind.value, command.card_id, e)
            canvas_logger.log_index_sync(command.kind.value, command.card_id, success=False, error=str(failure))
            metrics.increment_counter("index_sync.failures", tags={"operation": command.kind.value})

    def _enqueue(self, command: IndexCommand) -> None:
        self._queue.put_nowait(command)
