from typing import List, Optional, Set

import structlog

from canvas_engine.domain.errors import StructuralError
from canvas_engine.domain.graph.fingerprint import ContextFingerprinter
from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.history.debounce import Clock, Debouncer
from canvas_engine.domain.models.card_state import GraphEvent, GraphEventKind

logger = structlog.get_logger(__name__)

# Edits to these fields change the card's own context
CONTEXT_FIELDS = frozenset({"prompt", "quote", "excluded_context_node_ids"})


class StalenessPropagator:
    """Marks and clears ``is_stale`` as the context around answered cards changes"""

    def __init__(
        self,
        store: GraphStore,
        fingerprinter: ContextFingerprinter,
        recheck_delay: float = 0.5,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.fingerprinter = fingerprinter
        self._recheck = Debouncer(recheck_delay, self.try_clear_stale_all, clock)

    def attach(self) -> None:
        """Subscribe to graph mutations"""

        self.store.register_listener(self.handle_event)

    # ------------------------------------------------------------------
    # Marking
    # ------------------------------------------------------------------
    def mark_stale(self, card_id: str) -> bool:
        card = self.store.get_card(card_id)
        if card is None or not card.has_response:
            return False
        if not card.is_stale:
            self.store.set_flags(card_id, is_stale=True)
        return True

    def mark_descendants_stale(self, card_id: str, _visited: Optional[Set[str]] = None) -> List[str]:
        """Flag every answered descendant of ``card_id`` as stale"""

        visited = _visited if _visited is not None else {card_id}
        marked: List[str] = []
        for child_id in self.store.children_ids(card_id):
            if child_id in visited:
                continue
            visited.add(child_id)
            if self.mark_stale(child_id):
                marked.append(child_id)
            marked.extend(self.mark_descendants_stale(child_id, visited))
        return marked

    # ------------------------------------------------------------------
    # Clearing
    # ------------------------------------------------------------------
    def try_clear_stale(self, card_id: str, _visited: Optional[Set[str]] = None) -> List[str]:
        """Clear ``is_stale`` when the context is back to the fingerprinted one.

        Children are rechecked afterwards: resolving an ancestor can unblock them.
        """

        visited = _visited if _visited is not None else set()
        if card_id in visited:
            return []
        visited.add(card_id)

        card = self.store.get_card(card_id)
        if card is None:
            return []

        cleared: List[str] = []
        if card.is_stale and card.last_context_fingerprint:
            if self._matches_saved(card_id, card.last_context_fingerprint):
                self.store.set_flags(card_id, is_stale=False)
                cleared.append(card_id)
                logger.debug("Stale cleared, context matches fingerprint", card_id=card_id)

        for child_id in self.store.children_ids(card_id):
            cleared.extend(self.try_clear_stale(child_id, visited))
        return cleared

    def try_clear_stale_all(self) -> List[str]:
        """Recheck every stale card that carries a fingerprint"""

        candidates = [
            card for card in self.store.cards()
            if card.is_stale and card.last_context_fingerprint
        ]
        to_clear = [
            card.id for card in candidates
            if self._matches_saved(card.id, card.last_context_fingerprint)
        ]
        for card_id in to_clear:
            self.store.set_flags(card_id, is_stale=False)

        if to_clear:
            logger.info("Stale flags cleared", card_ids=to_clear)
        return to_clear

    def revalidate_all(self) -> List[str]:
        """Mark answered cards whose context no longer matches their fingerprint"""

        marked: List[str] = []
        for card in self.store.cards():
            if card.is_stale or not card.has_response or not card.last_context_fingerprint:
                continue
            if not self._matches_saved(card.id, card.last_context_fingerprint):
                self.store.set_flags(card.id, is_stale=True)
                marked.append(card.id)
        for card_id in list(marked):
            marked.extend(self.mark_descendants_stale(card_id))
        return marked

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def stale_ids(self) -> List[str]:
        return [card.id for card in self.store.cards() if card.is_stale and card.has_response]

    def stale_count(self) -> int:
        return len(self.stale_ids())

    # ------------------------------------------------------------------
    # Debounced recheck
    # ------------------------------------------------------------------
    def schedule_recheck(self) -> None:
        self._recheck.touch()

    def poll(self) -> bool:
        return self._recheck.poll()

    def flush(self) -> bool:
        """Run a pending recheck now"""

        return self._recheck.flush()

    @property
    def recheck_pending(self) -> bool:
        return self._recheck.pending

    # ------------------------------------------------------------------
    # Graph events
    # ------------------------------------------------------------------
    def handle_event(self, event: GraphEvent) -> None:
        """React to a graph mutation"""

        if event.kind in (GraphEventKind.EDGE_ADDED, GraphEventKind.EDGE_REMOVED):
            target = self.store.get_card(event.card_id)
            if target is not None and target.has_response:
                self.mark_descendants_stale(target.id)
            self.try_clear_stale_all()

        elif event.kind == GraphEventKind.CARD_REMOVED:
            for child_id in event.affected_ids:
                self.mark_descendants_stale(child_id)

        elif event.kind == GraphEventKind.CARD_PATCHED:
            self._on_card_patched(event)

        elif event.kind == GraphEventKind.RESTORED:
            self.revalidate_all()
            self.schedule_recheck()

        elif event.kind == GraphEventKind.LOADED:
            self._recheck.cancel()

    def _on_card_patched(self, event: GraphEvent) -> None:
        card_id = event.card_id
        changed = set(event.changed_fields)

        if "response" in changed:
            self._invalidate_quotes(card_id)
            self.mark_descendants_stale(card_id)
            visited: Set[str] = {card_id}
            for child_id in self.store.children_ids(card_id):
                self.try_clear_stale(child_id, visited)

        if changed & CONTEXT_FIELDS:
            self.mark_stale(card_id)
            self.mark_descendants_stale(card_id)
            self.try_clear_stale(card_id)

    def _invalidate_quotes(self, source_id: str) -> None:
        source = self.store.get_card(source_id)
        response = source.response if source else None
        for card in self.store.cards():
            quote = card.quote
            if quote is None or quote.source_id != source_id or quote.invalidated:
                continue
            if response is None or quote.text not in response:
                self.store.set_flags(card.id, quote=quote.model_copy(update={"invalidated": True}))
                logger.info("Quote invalidated", card_id=card.id, source_id=source_id)

    def _matches_saved(self, card_id: str, saved: str) -> bool:
        try:
            return self.fingerprinter.fingerprint(card_id) == saved
        except StructuralError as e:
            logger.warning("Cannot fingerprint card", card_id=card_id, error=str(e))
            return False
