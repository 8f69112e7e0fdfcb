from typing import Optional, Set, TYPE_CHECKING
import asyncio
import time

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from canvas_engine.domain.context.context_builder import ContextBuilder
from canvas_engine.domain.errors import GenerationFailure
from canvas_engine.domain.graph.fingerprint import ContextFingerprinter
from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.infrastructure.observability.logging import metrics

if TYPE_CHECKING:
    from canvas_engine.domain.scheduling.batch_scheduler import BatchRegenerationScheduler
    from canvas_engine.infrastructure.search.index_sync import IndexSynchronizer

logger = structlog.get_logger(__name__)

SUMMARY_PROMPT = (
    "Condense the answer below into two or three sentences that keep its key facts. "
    "Reply with the summary only."
)


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for chunk in content:
        if isinstance(chunk, str):
            parts.append(chunk)
        elif isinstance(chunk, dict) and chunk.get("type") == "text":
            parts.append(chunk.get("text", ""))
    return "".join(parts)


class CardGenerator:
    """Generation collaborator: answers one card with a chat model.

    Every generation reports back to the scheduler, whether it succeeded or
    not, so a level can always finish. A failed card keeps ``is_stale`` and
    its old fingerprint and is picked up again by the next run.
    """

    def __init__(
        self,
        store: GraphStore,
        fingerprinter: ContextFingerprinter,
        context_builder: ContextBuilder,
        model: BaseChatModel,
        summary_model: Optional[BaseChatModel] = None,
        use_summarization: bool = True,
        summary_fallback_chars: int = 200
    ):
        self.store = store
        self.fingerprinter = fingerprinter
        self.context_builder = context_builder
        self.model = model
        self.summary_model = summary_model or model
        self.use_summarization = use_summarization
        self.summary_fallback_chars = summary_fallback_chars

        self.scheduler: Optional["BatchRegenerationScheduler"] = None
        self.index_sync: Optional["IndexSynchronizer"] = None
        self._tasks: Set[asyncio.Task] = set()

    def bind(
        self,
        scheduler: Optional["BatchRegenerationScheduler"] = None,
        index_sync: Optional["IndexSynchronizer"] = None
    ) -> None:
        """Connect the completion target and the search index"""

        if scheduler is not None:
            self.scheduler = scheduler
            scheduler.set_dispatcher(self.dispatch)
        if index_sync is not None:
            self.index_sync = index_sync

    @property
    def active(self) -> int:
        return len(self._tasks)

    def dispatch(self, card_id: str, run_id: int) -> None:
        """Start generating a card in the background"""

        task = asyncio.create_task(self.generate(card_id, run_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for every dispatched generation, including ones started meanwhile"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def generate(self, card_id: str, run_id: Optional[int] = None) -> bool:
        """Answer a card and commit the response; returns False on failure"""

        start_time = time.time()
        try:
            if self.store.get_card(card_id) is None:
                logger.warning("Card vanished before generation", card_id=card_id)
                return False

            self.store.set_flags(card_id, pending_regenerate=False, is_generating=True)
            messages = self.context_builder.build_messages(card_id)

            logger.info("Generating response", card_id=card_id, run_id=run_id)
            result = await self.model.ainvoke(messages)
            response = _message_text(result)

            if self.store.get_card(card_id) is None:
                logger.info("Card removed during generation, dropping response", card_id=card_id)
                return False

            summary = await self.summarize(card_id, response) if self.use_summarization else None

            self.store.patch_card(card_id, {"response": response, "summary": summary, "is_stale": False})
            self.fingerprinter.save_fingerprint(card_id)
            if self.index_sync is not None:
                self.index_sync.upsert(card_id)

            metrics.increment_counter("generation.completed")
            return True

        except Exception as e:
            failure = GenerationFailure(card_id, e)
            logger.error("Generation failed", card_id=card_id, run_id=run_id, error=str(failure))
            metrics.increment_counter("generation.failures")
            return False

        finally:
            if card_id in self.store:
                self.store.set_flags(card_id, is_generating=False)
            metrics.record_latency("generation", (time.time() - start_time) * 1000)
            if self.scheduler is not None:
                self.scheduler.on_card_complete(card_id, run_id)

    async def summarize(self, card_id: str, response: str) -> str:
        """Short summary handed to distant descendants; falls back to a prefix"""

        fallback = response[:self.summary_fallback_chars] + "..."
        if not response.strip():
            return fallback
        try:
            result = await self.summary_model.ainvoke([
                SystemMessage(content=SUMMARY_PROMPT),
                HumanMessage(content=response),
            ])
            summary = _message_text(result).strip()
            return summary or fallback
        except Exception as e:
            logger.warning("Summarization failed, using prefix", card_id=card_id, error=str(e))
            metrics.increment_counter("summary.fallbacks")
            return fallback
