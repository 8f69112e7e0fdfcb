from typing import Deque, Dict, List, Optional
from collections import deque

import structlog

from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.history.debounce import Clock, Debouncer
from canvas_engine.domain.models.card_state import (
    GENERATION_FIELDS, Card, CardOutcome, CardRecord, GraphEvent, GraphEventKind,
    HistoryJump, HistorySnapshot, Quote
)
from canvas_engine.infrastructure.observability.logging import canvas_logger

logger = structlog.get_logger(__name__)


class HistoryManager:
    """Coalesced undo/redo over the graph store.

    The manager keeps a baseline snapshot of the last committed state. Every
    user mutation re-arms a debounce timer; when the timer fires the live
    canvas is compared with the baseline and, if the user-visible intent
    differs, the baseline is pushed onto the undo stack. Both stacks drop
    their oldest entry once ``limit`` is reached.
    """

    def __init__(
        self,
        store: GraphStore,
        limit: int = 50,
        debounce_seconds: float = 0.5,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.limit = limit
        self._undo: Deque[HistorySnapshot] = deque(maxlen=limit)
        self._redo: Deque[HistorySnapshot] = deque(maxlen=limit)
        self._capture = Debouncer(debounce_seconds, self.commit, clock)
        self._baseline = self.snapshot()

    def attach(self) -> None:
        """Subscribe to graph mutations"""

        self.store.register_listener(self.handle_event)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------
    def snapshot(self) -> HistorySnapshot:
        """Stripped, comparable copy of the live canvas"""

        cards = self.store.cards()
        return HistorySnapshot(
            cards=tuple(CardRecord.from_card(card) for card in cards),
            edges=tuple(self.store.edges()),
            outcomes={card.id: CardOutcome.from_card(card) for card in cards},
        )

    def handle_event(self, event: GraphEvent) -> None:
        if event.kind == GraphEventKind.RESTORED:
            return
        if event.kind == GraphEventKind.LOADED:
            self.clear()
            return

        # Keep the baseline's outcomes current so a card deleted before the
        # next commit comes back with its latest answer
        if event.kind == GraphEventKind.CARD_REMOVED and event.removed is not None:
            self._refresh_outcome(event.removed)
        elif event.kind == GraphEventKind.CARD_PATCHED and set(event.changed_fields) <= GENERATION_FIELDS:
            card = self.store.get_card(event.card_id)
            if card is not None:
                self._refresh_outcome(card)
        self._capture.touch()

    def _refresh_outcome(self, card: Card) -> None:
        if card.id not in self._baseline.outcomes:
            return
        outcomes = dict(self._baseline.outcomes)
        outcomes[card.id] = CardOutcome.from_card(card)
        self._baseline = self._baseline.model_copy(update={"outcomes": outcomes})

    def poll(self) -> bool:
        """Commit the pending capture if the quiet period is over"""

        return self._capture.poll()

    def flush(self) -> bool:
        return self._capture.flush()

    @property
    def capture_pending(self) -> bool:
        return self._capture.pending

    def commit(self) -> bool:
        """Record the baseline as an undo step if the canvas moved away from it"""

        current = self.snapshot()
        if current.same_intent(self._baseline):
            # Only generation outcomes moved; keep them for later resurrection
            self._baseline = current
            return False

        self._undo.append(self._baseline)
        self._baseline = current
        self._redo.clear()
        canvas_logger.log_history_step("capture", len(self._undo), len(self._redo))
        return True

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    def can_undo(self) -> bool:
        if self._undo:
            return True
        # A pending capture only counts if it will not be deduplicated
        return self._capture.pending and not self.snapshot().same_intent(self._baseline)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo_count(self) -> int:
        return len(self._undo)

    def redo_count(self) -> int:
        return len(self._redo)

    def undo(self) -> Optional[HistoryJump]:
        """Step back one entry; returns the card-id diff or None"""

        self._capture.flush()
        if not self._undo:
            return None

        target = self._undo.pop()
        self._redo.append(self.snapshot())
        jump = self._apply(target)
        canvas_logger.log_history_step(
            "undo", len(self._undo), len(self._redo),
            vanished=jump.vanished_ids, resurrected=jump.resurrected_ids
        )
        return jump

    def redo(self) -> Optional[HistoryJump]:
        """Step forward one entry; returns the card-id diff or None"""

        self._capture.flush()
        if not self._redo:
            return None

        target = self._redo.pop()
        self._undo.append(self.snapshot())
        jump = self._apply(target)
        canvas_logger.log_history_step(
            "redo", len(self._undo), len(self._redo),
            vanished=jump.vanished_ids, resurrected=jump.resurrected_ids
        )
        return jump

    def clear(self) -> None:
        """Forget every entry, e.g. when another canvas is opened"""

        self._capture.cancel()
        self._undo.clear()
        self._redo.clear()
        self._baseline = self.snapshot()
        logger.debug("History cleared")

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def _apply(self, target: HistorySnapshot) -> HistoryJump:
        before_ids = set(self.store.card_ids())
        live: Dict[str, Card] = {card.id: card for card in self.store.cards()}

        cards: List[Card] = [
            self._materialize(record, live.get(record.id), target.outcomes.get(record.id))
            for record in target.cards
        ]
        self.store.restore(cards, target.edges)
        self._baseline = self.snapshot()

        after_ids = set(self.store.card_ids())
        return HistoryJump(
            vanished_ids=sorted(before_ids - after_ids),
            resurrected_ids=sorted(after_ids - before_ids),
        )

    @staticmethod
    def _materialize(
        record: CardRecord,
        live: Optional[Card],
        outcome: Optional[CardOutcome]
    ) -> Card:
        if live is not None:
            # The card survived the jump: its latest generation wins
            response = live.response
            summary = live.summary
            is_stale = live.is_stale
            fingerprint = live.last_context_fingerprint
            source_response = live.quote.source_response if live.quote else None
            invalidated = live.quote.invalidated if live.quote else False
        else:
            outcome = outcome or CardOutcome()
            response = outcome.response
            summary = outcome.summary
            is_stale = outcome.is_stale
            fingerprint = outcome.last_context_fingerprint
            source_response = outcome.quote_source_response
            invalidated = outcome.quote_invalidated

        quote = None
        if record.quote_text is not None and record.quote_source_id is not None:
            quote = Quote(
                text=record.quote_text,
                source_id=record.quote_source_id,
                source_response=source_response,
                invalidated=invalidated,
            )

        fields = dict(
            id=record.id,
            position=record.position.model_copy(),
            prompt=record.prompt,
            response=response,
            summary=summary,
            quote=quote,
            is_stale=is_stale,
            last_context_fingerprint=fingerprint,
            excluded_context_node_ids=list(record.excluded_context_node_ids),
        )
        if live is not None:
            fields.update(
                pending_regenerate=live.pending_regenerate,
                is_generating=live.is_generating,
                selected=live.selected,
                created_at=live.created_at,
                updated_at=live.updated_at,
            )
        return Card(**fields)
