from typing import Any, Dict, Iterable, List, Optional
import asyncio

import structlog
from langchain_core.language_models import BaseChatModel

from canvas_engine.config import Settings, get_settings
from canvas_engine.domain.context.context_builder import ContextBuilder
from canvas_engine.domain.generation.generator import CardGenerator
from canvas_engine.domain.graph.fingerprint import ContextFingerprinter
from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.graph.staleness import StalenessPropagator
from canvas_engine.domain.history.debounce import Clock, MonotonicClock
from canvas_engine.domain.history.history_manager import HistoryManager
from canvas_engine.domain.models.card_state import (
    Card, Edge, HistoryJump, Position, Quote, RegenerationProgress
)
from canvas_engine.domain.scheduling.batch_scheduler import BatchRegenerationScheduler
from canvas_engine.infrastructure.search.index_sync import (
    EmbeddingStore, IndexSynchronizer, SearchIndex
)
from canvas_engine.infrastructure.search.memory_index import (
    InMemoryEmbeddingStore, InMemorySearchIndex
)

logger = structlog.get_logger(__name__)

# Layout offsets for cards created next to an existing one
CARD_WIDTH = 400
HORIZONTAL_GAP = 100
SIBLING_OFFSET = 200


class CanvasEngine:
    """One canvas: graph, staleness, history, regeneration and search sync wired together"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        model: Optional[BaseChatModel] = None,
        search_index: Optional[SearchIndex] = None,
        embedding_store: Optional[EmbeddingStore] = None,
        clock: Optional[Clock] = None
    ):
        self.settings = settings or get_settings()
        self.clock = clock or MonotonicClock()

        self.store = GraphStore()
        self.fingerprinter = ContextFingerprinter(
            self.store,
            ancestor_limit=self.settings.fingerprint_ancestor_limit,
            prefix_chars=self.settings.fingerprint_prefix_chars,
        )
        self.propagator = StalenessPropagator(
            self.store,
            self.fingerprinter,
            recheck_delay=self.settings.stale_check_debounce_seconds,
            clock=self.clock,
        )
        self.history = HistoryManager(
            self.store,
            limit=self.settings.history_limit,
            debounce_seconds=self.settings.history_debounce_seconds,
            clock=self.clock,
        )
        self.scheduler = BatchRegenerationScheduler(self.store)
        self.search_index = search_index or InMemorySearchIndex()
        self.embedding_store = embedding_store or InMemoryEmbeddingStore()
        self.index_sync = IndexSynchronizer(self.store, self.search_index, self.embedding_store)
        self.context_builder = ContextBuilder(
            self.store,
            system_prompt=self.settings.system_prompt,
            use_summarization=self.settings.use_summarization,
            ancestor_limit=self.settings.context_ancestor_limit,
            prefix_chars=self.settings.fingerprint_prefix_chars,
        )
        self.generator: Optional[CardGenerator] = None

        # Staleness settles before history and index observe a mutation
        self.propagator.attach()
        self.history.attach()
        self.index_sync.attach()
        self.scheduler.attach()

        if model is not None:
            self.set_model(model)

        self._timer_task: Optional[asyncio.Task] = None

    def set_model(self, model: BaseChatModel, summary_model: Optional[BaseChatModel] = None) -> CardGenerator:
        """Use a chat model as the generation collaborator"""

        self.generator = CardGenerator(
            self.store,
            self.fingerprinter,
            self.context_builder,
            model,
            summary_model=summary_model,
            use_summarization=self.settings.use_summarization,
            summary_fallback_chars=self.settings.summary_fallback_chars,
        )
        self.generator.bind(scheduler=self.scheduler, index_sync=self.index_sync)
        return self.generator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start the index worker and the timer loop"""

        self.index_sync.start()
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self.run_timers())
        logger.info("Canvas engine started")

    async def stop(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
        if self.generator is not None:
            await self.generator.wait_idle()
        await self.index_sync.drain()
        await self.index_sync.stop()
        logger.info("Canvas engine stopped")

    def tick(self) -> bool:
        """Fire every debounce timer that is due"""

        committed = self.history.poll()
        rechecked = self.propagator.poll()
        return committed or rechecked

    async def run_timers(self) -> None:
        """Poll the debounce timers until cancelled"""

        while True:
            try:
                self.tick()
            except Exception as e:
                logger.error("Timer tick error", error=str(e), exc_info=True)

            await asyncio.sleep(self.settings.timer_interval_seconds)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------
    def get_card(self, card_id: str) -> Optional[Card]:
        return self.store.get_card(card_id)

    def cards(self) -> List[Card]:
        return self.store.cards()

    def edges(self) -> List[Edge]:
        return self.store.edges()

    def add_card(
        self,
        position: Optional[Position] = None,
        parent_ids: Optional[Iterable[str]] = None,
        **fields: Any
    ) -> str:
        return self.store.add_card(position=position, parent_ids=parent_ids, **fields)

    def remove_card(self, card_id: str) -> bool:
        return self.store.remove_card(card_id)

    def patch_card(self, card_id: str, fields: Dict[str, Any]) -> Optional[Card]:
        return self.store.patch_card(card_id, fields)

    def add_edge(self, source: str, target: str) -> Optional[Edge]:
        return self.store.add_edge(Edge.between(source, target))

    def connect(self, source: str, target: str) -> Optional[Edge]:
        return self.store.connect(source, target)

    def remove_edge(self, edge_id: str) -> bool:
        return self.store.remove_edge(edge_id)

    def create_child_card(self, parent_id: str, position: Optional[Position] = None) -> Optional[str]:
        """New card to the right of ``parent_id``, linked to it"""

        parent = self.store.get_card(parent_id)
        if parent is None:
            logger.warning("Cannot create child of unknown card", card_id=parent_id)
            return None
        if position is None:
            position = Position(x=parent.position.x + CARD_WIDTH + HORIZONTAL_GAP, y=parent.position.y)
        return self.store.add_card(position=position, parent_ids=[parent_id])

    def create_sibling_card(self, card_id: str) -> Optional[str]:
        """New card below ``card_id`` sharing its first parent"""

        card = self.store.get_card(card_id)
        if card is None or card.parent_id is None:
            logger.warning("Cannot create sibling without a parent", card_id=card_id)
            return None
        position = Position(x=card.position.x, y=card.position.y + SIBLING_OFFSET)
        return self.store.add_card(position=position, parent_ids=[card.parent_id])

    def create_merged_card(self, parent_ids: List[str], position: Optional[Position] = None) -> Optional[str]:
        """New card inheriting context from several parents"""

        parents = [self.store.get_card(parent_id) for parent_id in dict.fromkeys(parent_ids)]
        parents = [parent for parent in parents if parent is not None]
        if len(parents) < 2:
            logger.warning("Merge needs at least two existing parents", parent_ids=parent_ids)
            return None
        if position is None:
            position = Position(
                x=max(parent.position.x for parent in parents) + CARD_WIDTH + HORIZONTAL_GAP,
                y=sum(parent.position.y for parent in parents) / len(parents),
            )
        return self.store.add_card(position=position, parent_ids=[parent.id for parent in parents])

    def create_quote_card(self, source_id: str, quote_text: str) -> Optional[str]:
        """New card seeded from an excerpt of the source's response"""

        source = self.store.get_card(source_id)
        if source is None or not source.has_response:
            logger.warning("Quote source missing or unanswered", card_id=source_id)
            return None
        if not quote_text.strip():
            return None

        quote = Quote(text=quote_text, source_id=source_id, source_response=source.response)
        position = Position(x=source.position.x + CARD_WIDTH + HORIZONTAL_GAP, y=source.position.y)
        return self.store.add_card(position=position, parent_ids=[source_id], quote=quote)

    def update_quote(self, card_id: str, quote_text: str, source_id: str) -> Optional[Card]:
        """Replace a card's quote; staleness follows from the quote change"""

        source = self.store.get_card(source_id)
        if source is None:
            logger.warning("Quote source missing", card_id=card_id, source_id=source_id)
            return None
        quote = Quote(text=quote_text, source_id=source_id, source_response=source.response)
        return self.store.patch_card(card_id, {"quote": quote})

    def clear_quote(self, card_id: str) -> Optional[Card]:
        return self.store.patch_card(card_id, {"quote": None})

    def fingerprint(self, card_id: str) -> Optional[str]:
        return self.fingerprinter.fingerprint(card_id)

    def save_fingerprint(self, card_id: str) -> Optional[str]:
        return self.fingerprinter.save_fingerprint(card_id)

    def stale_count(self) -> int:
        return self.propagator.stale_count()

    def stale_ids(self) -> List[str]:
        return self.propagator.stale_ids()

    # ------------------------------------------------------------------
    # Regeneration
    # ------------------------------------------------------------------
    def regenerate_stale_cards(self) -> Optional[RegenerationProgress]:
        """Start a batch run over the stale set; raises StructuralError on a cycle"""

        # A pending recheck may still clear some cards
        self.propagator.flush()
        return self.scheduler.start()

    def cancel_regeneration(self) -> bool:
        return self.scheduler.cancel()

    def get_regeneration_progress(self) -> RegenerationProgress:
        return self.scheduler.progress()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def undo(self) -> Optional[HistoryJump]:
        jump = self.history.undo()
        if jump is not None:
            self.index_sync.on_history_jump(jump)
        return jump

    def redo(self) -> Optional[HistoryJump]:
        jump = self.history.redo()
        if jump is not None:
            self.index_sync.on_history_jump(jump)
        return jump

    def can_undo(self) -> bool:
        return self.history.can_undo()

    def can_redo(self) -> bool:
        return self.history.can_redo()

    def clear_history(self) -> None:
        self.history.clear()

    def undo_count(self) -> int:
        return self.history.undo_count()

    def redo_count(self) -> int:
        return self.history.redo_count()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def export(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.store.export()

    def load(self, cards: Iterable[Card], edges: Iterable[Edge]) -> None:
        """Switch to another canvas; history starts over"""

        self.store.load(cards, edges)
        self.history.clear()
