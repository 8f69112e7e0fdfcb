from typing import Dict, List, Any, Optional, Callable, Iterable
from datetime import datetime
import uuid

import structlog

from canvas_engine.domain.errors import MissingReferenceError
from canvas_engine.domain.models.card_state import (
    Card, Edge, Position, GraphEvent, GraphEventKind, STRUCTURAL_FIELDS
)

logger = structlog.get_logger(__name__)

GraphListener = Callable[[GraphEvent], None]

# Flags other subsystems write without it counting as a user mutation
DERIVED_FLAGS = frozenset({
    "is_stale",
    "pending_regenerate",
    "is_generating",
    "last_context_fingerprint",
    "quote",
})


def generate_card_id() -> str:
    return f"card-{uuid.uuid4().hex[:12]}"


class GraphStore:
    """Canonical cards and edges of one canvas.

    Cards and edges live in two id-keyed arenas; nothing holds a reference to
    another object, only ids. Edges are authoritative and every card's
    ``parent_ids`` is recomputed from its incoming edges whenever they change.

    Every public mutation first builds its new objects and only then swaps them
    in, so a failure half way leaves the arenas untouched. Listeners are told
    about a mutation after it has been applied.
    """

    def __init__(self):
        self._cards: Dict[str, Card] = {}
        self._edges: Dict[str, Edge] = {}
        self._listeners: List[GraphListener] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def register_listener(self, listener: GraphListener) -> None:
        """Register a callback invoked after every applied mutation"""

        self._listeners.append(listener)

    def _notify(self, event: GraphEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Error in graph listener",
                             event_kind=event.kind.value,
                             card_id=event.card_id,
                             error=str(e),
                             exc_info=True)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    def __contains__(self, card_id: object) -> bool:
        return card_id in self._cards

    def __len__(self) -> int:
        return len(self._cards)

    def get_card(self, card_id: str) -> Optional[Card]:
        return self._cards.get(card_id)

    def require(self, card_id: str) -> Card:
        """Strict lookup used where a missing card is a programming error"""

        card = self._cards.get(card_id)
        if card is None:
            raise MissingReferenceError(card_id)
        return card

    def cards(self) -> List[Card]:
        return list(self._cards.values())

    def card_ids(self) -> List[str]:
        return list(self._cards.keys())

    def edges(self) -> List[Edge]:
        return list(self._edges.values())

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        return self._edges.get(edge_id)

    def incoming(self, card_id: str) -> List[Edge]:
        return [edge for edge in self._edges.values() if edge.target == card_id]

    def outgoing(self, card_id: str) -> List[Edge]:
        return [edge for edge in self._edges.values() if edge.source == card_id]

    def children_ids(self, card_id: str) -> List[str]:
        return [edge.target for edge in self.outgoing(card_id)]

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------
    def add_card(
        self,
        position: Optional[Position] = None,
        parent_ids: Optional[Iterable[str]] = None,
        card_id: Optional[str] = None,
        **fields: Any
    ) -> str:
        """Create a card linked to the given parents and return its id"""

        new_id = card_id or generate_card_id()
        if new_id in self._cards:
            raise ValueError(f"card already exists: {new_id}")
        self._check_field_names(fields)

        parents: List[str] = []
        for parent_id in parent_ids or []:
            if parent_id not in self._cards:
                logger.warning("Skipping unknown parent", card_id=new_id, parent_id=parent_id)
                continue
            if parent_id not in parents:
                parents.append(parent_id)

        card = Card(id=new_id, position=position or Position(), parent_ids=parents, **fields)
        new_edges = [Edge.between(parent_id, new_id) for parent_id in parents]

        self._cards[new_id] = card
        for edge in new_edges:
            self._edges[edge.id] = edge

        logger.debug("Card added", card_id=new_id, parent_ids=parents)
        self._notify(GraphEvent(kind=GraphEventKind.CARD_ADDED, card_id=new_id, affected_ids=parents))
        return new_id

    def remove_card(self, card_id: str) -> bool:
        """Delete a card and every incident edge; orphaned children go stale"""

        if card_id not in self._cards:
            logger.warning("Attempted to remove unknown card", card_id=card_id)
            return False

        child_ids = [edge.target for edge in self.outgoing(card_id) if edge.target != card_id]
        remaining_edges = {
            edge_id: edge for edge_id, edge in self._edges.items()
            if edge.source != card_id and edge.target != card_id
        }

        updated_children: Dict[str, Card] = {}
        for child_id in child_ids:
            child = self._cards[child_id]
            parents = [edge.source for edge in remaining_edges.values() if edge.target == child_id]
            updated_children[child_id] = self._rebuild(
                child, parent_ids=parents, is_stale=child.is_stale or child.has_response
            )

        self._edges = remaining_edges
        removed = self._cards.pop(card_id)
        self._cards.update(updated_children)

        logger.info("Card removed", card_id=card_id, orphaned_children=child_ids)
        self._notify(GraphEvent(
            kind=GraphEventKind.CARD_REMOVED, card_id=card_id, affected_ids=child_ids, removed=removed
        ))
        return True

    def patch_card(self, card_id: str, fields: Dict[str, Any]) -> Optional[Card]:
        """Apply field updates; listeners learn which fields actually changed"""

        card = self._cards.get(card_id)
        if card is None:
            logger.warning("Attempted to patch unknown card", card_id=card_id)
            return None
        self._check_field_names(fields)

        updated = self._rebuild(card, **fields)
        changed = [
            name for name in fields
            if getattr(updated, name) != getattr(card, name)
        ]
        if not changed:
            return card

        previous = {name: getattr(card, name) for name in changed}
        self._cards[card_id] = updated

        self._notify(GraphEvent(
            kind=GraphEventKind.CARD_PATCHED,
            card_id=card_id,
            changed_fields=changed,
            previous=previous,
        ))
        return updated

    def set_flags(self, card_id: str, **flags: Any) -> Optional[Card]:
        """Write derived flags without reporting a mutation"""

        unknown = set(flags) - DERIVED_FLAGS
        if unknown:
            raise ValueError(f"not a derived flag: {sorted(unknown)}")
        card = self._cards.get(card_id)
        if card is None:
            return None
        updated = self._rebuild(card, touch=False, **flags)
        self._cards[card_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------
    def add_edge(self, edge: Edge) -> Optional[Edge]:
        """Insert an edge; an existing (source, target) pair is left as is"""

        if edge.source not in self._cards or edge.target not in self._cards:
            logger.warning("Edge references unknown card", source=edge.source, target=edge.target)
            return None
        if edge.source == edge.target:
            logger.warning("Refusing self-loop edge", card_id=edge.source)
            return None

        edge = Edge.between(edge.source, edge.target)
        existing = self._edges.get(edge.id)
        if existing is not None:
            return existing

        target = self._cards[edge.target]
        parents = [e.source for e in self._edges.values() if e.target == edge.target] + [edge.source]
        updated_target = self._rebuild(
            target, parent_ids=parents, is_stale=target.is_stale or target.has_response
        )

        self._edges[edge.id] = edge
        self._cards[edge.target] = updated_target

        logger.debug("Edge added", source=edge.source, target=edge.target)
        self._notify(GraphEvent(kind=GraphEventKind.EDGE_ADDED, card_id=edge.target, edge=edge))
        return edge

    def connect(self, source: str, target: str) -> Optional[Edge]:
        """Link two cards so that ``source`` provides context to ``target``"""

        return self.add_edge(Edge.between(source, target))

    def remove_edge(self, edge_id: str) -> bool:
        """Remove an edge and recompute the target's parents"""

        edge = self._edges.get(edge_id)
        if edge is None:
            logger.warning("Attempted to remove unknown edge", edge_id=edge_id)
            return False

        remaining_edges = {eid: e for eid, e in self._edges.items() if eid != edge_id}
        target = self._cards[edge.target]
        parents = [e.source for e in remaining_edges.values() if e.target == edge.target]
        updated_target = self._rebuild(
            target, parent_ids=parents, is_stale=target.is_stale or target.has_response
        )

        self._edges = remaining_edges
        self._cards[edge.target] = updated_target

        logger.debug("Edge removed", source=edge.source, target=edge.target)
        self._notify(GraphEvent(kind=GraphEventKind.EDGE_REMOVED, card_id=edge.target, edge=edge))
        return True

    # ------------------------------------------------------------------
    # Whole-canvas replacement
    # ------------------------------------------------------------------
    def export(self) -> Dict[str, List[Dict[str, Any]]]:
        """Serializable copy of the current cards and edges"""

        return {
            "cards": [card.model_dump(mode="json") for card in self._cards.values()],
            "edges": [edge.model_dump(mode="json") for edge in self._edges.values()],
        }

    def restore(
        self,
        cards: Iterable[Card],
        edges: Iterable[Edge],
        kind: GraphEventKind = GraphEventKind.RESTORED
    ) -> None:
        """Replace the whole canvas; edges to missing cards are dropped"""

        new_cards: Dict[str, Card] = {card.id: card for card in cards}
        new_edges: Dict[str, Edge] = {}
        for edge in edges:
            if edge.source in new_cards and edge.target in new_cards and edge.source != edge.target:
                normalized = Edge.between(edge.source, edge.target)
                new_edges.setdefault(normalized.id, normalized)

        for card_id, card in new_cards.items():
            parents = [e.source for e in new_edges.values() if e.target == card_id]
            if parents != card.parent_ids:
                new_cards[card_id] = self._rebuild(card, touch=False, parent_ids=parents)

        self._cards = new_cards
        self._edges = new_edges

        logger.info("Canvas replaced", kind=kind.value, cards=len(new_cards), edges=len(new_edges))
        self._notify(GraphEvent(kind=kind, affected_ids=list(new_cards.keys())))

    def load(self, cards: Iterable[Card], edges: Iterable[Edge]) -> None:
        """Swap in another canvas"""

        self.restore(cards, edges, kind=GraphEventKind.LOADED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _check_field_names(fields: Dict[str, Any]) -> None:
        structural = set(fields) & STRUCTURAL_FIELDS
        if structural:
            raise ValueError(f"fields are managed through edges: {sorted(structural)}")
        unknown = set(fields) - set(Card.model_fields)
        if unknown:
            raise ValueError(f"unknown card fields: {sorted(unknown)}")

    @staticmethod
    def _rebuild(card: Card, touch: bool = True, **changes: Any) -> Card:
        data = card.model_dump()
        data.update(changes)
        if touch:
            data["updated_at"] = datetime.utcnow()
        return Card.model_validate(data)
