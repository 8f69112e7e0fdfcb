from typing import List, Optional, Set
from collections import deque

import structlog

from canvas_engine.domain.errors import StructuralError
from canvas_engine.domain.graph.graph_store import GraphStore

logger = structlog.get_logger(__name__)

PART_SEPARATOR = "|||"


def normalize_for_hash(text: Optional[str]) -> str:
    """Trim and lowercase so whitespace/case-only edits keep the same fingerprint"""

    if not text:
        return ""
    return text.strip().lower()


def djb2_hash(text: str) -> str:
    """32-bit djb2, rendered as hex. Fast, not collision resistant."""

    value = 5381
    for char in text:
        value = ((value << 5) + value + ord(char)) & 0xFFFFFFFF
    return format(value, "x")


class ContextFingerprinter:
    """Deterministic hash of everything a card's response depends on"""

    def __init__(self, store: GraphStore, ancestor_limit: int = 20, prefix_chars: int = 300):
        self.store = store
        self.ancestor_limit = ancestor_limit
        self.prefix_chars = prefix_chars

    def context_parts(self, card_id: str) -> Optional[List[str]]:
        """Ordered, normalized pieces of context that feed the hash"""

        card = self.store.get_card(card_id)
        if card is None:
            return None

        excluded = set(card.excluded_context_node_ids)
        parts: List[str] = [f"PROMPT:{normalize_for_hash(card.prompt)}"]

        if card.quote is not None:
            parts.append(f"QUOTE:{normalize_for_hash(card.quote.text)}")
            parts.append(f"QUOTE_SOURCE:{card.quote.source_id}")

        direct_parents = list(card.parent_ids)
        if card_id in direct_parents:
            raise StructuralError(f"card {card_id} is its own parent", [card_id])

        for index, parent_id in enumerate(direct_parents):
            if parent_id in excluded:
                continue
            parent = self.store.get_card(parent_id)
            if parent is None:
                continue
            parts.append(f"PARENT[{index}]:{normalize_for_hash(parent.response)}")
            parts.append(f"PARENT_PROMPT[{index}]:{normalize_for_hash(parent.prompt)}")

        # Breadth-first over the remaining ancestors. Excluded ancestors are
        # skipped and not walked through.
        visited: Set[str] = {card_id, *direct_parents}
        queue = deque(direct_parents)
        ancestor_index = 0

        while queue and ancestor_index < self.ancestor_limit:
            current = self.store.get_card(queue.popleft())
            if current is None:
                continue

            for ancestor_id in current.parent_ids:
                if ancestor_id == card_id:
                    raise StructuralError(f"card {card_id} is its own ancestor", [card_id, current.id])
                if ancestor_id in visited:
                    continue
                visited.add(ancestor_id)
                if ancestor_id in excluded:
                    continue

                ancestor = self.store.get_card(ancestor_id)
                if ancestor is None:
                    continue
                parts.append(f"ANCESTOR[{ancestor_index}]:{normalize_for_hash(self._digest(ancestor))}")
                parts.append(f"ANCESTOR_PROMPT[{ancestor_index}]:{normalize_for_hash(ancestor.prompt)}")
                ancestor_index += 1
                queue.append(ancestor_id)

        return parts

    def fingerprint(self, card_id: str) -> Optional[str]:
        """Fingerprint of the card's current context, or None for an unknown card"""

        parts = self.context_parts(card_id)
        if parts is None:
            return None
        return djb2_hash(PART_SEPARATOR.join(parts))

    def save_fingerprint(self, card_id: str) -> Optional[str]:
        """Store the current fingerprint as the one the response was produced against"""

        value = self.fingerprint(card_id)
        if value is None:
            logger.warning("Cannot save fingerprint for unknown card", card_id=card_id)
            return None
        self.store.set_flags(card_id, last_context_fingerprint=value)
        logger.debug("Fingerprint saved", card_id=card_id, fingerprint=value)
        return value

    def _digest(self, ancestor) -> str:
        if ancestor.summary:
            return ancestor.summary
        if ancestor.response:
            return ancestor.response[:self.prefix_chars] + "..."
        return ""
