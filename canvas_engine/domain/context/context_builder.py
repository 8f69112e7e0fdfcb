from typing import List, Optional, Set
from collections import deque

import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.models.card_state import Card

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are answering one card of a branching conversation canvas. "
    "Earlier cards are given below as context; answer the user's question directly."
)


class ContextBuilder:
    """Assembles the prompt a card is answered against from its ancestors"""

    def __init__(
        self,
        store: GraphStore,
        system_prompt: str = "",
        use_summarization: bool = True,
        ancestor_limit: int = 500,
        prefix_chars: int = 300,
        quote_prefix_chars: int = 500
    ):
        self.store = store
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.use_summarization = use_summarization
        self.ancestor_limit = ancestor_limit
        self.prefix_chars = prefix_chars
        self.quote_prefix_chars = quote_prefix_chars

    def direct_parents(self, card: Card) -> List[Card]:
        parents = [self.store.get_card(parent_id) for parent_id in card.parent_ids]
        return [parent for parent in parents if parent is not None]

    def ancestor_chain(self, card: Card) -> List[Card]:
        """Direct parents followed by further ancestors in breadth-first order"""

        parents = self.direct_parents(card)
        chain: List[Card] = list(parents)
        processed: Set[str] = {card.id, *(parent.id for parent in parents)}
        queue = deque(parent.id for parent in parents)

        iterations = 0
        while queue and iterations < self.ancestor_limit:
            iterations += 1
            current = self.store.get_card(queue.popleft())
            if current is None:
                continue
            for parent in self.direct_parents(current):
                if parent.id not in processed:
                    processed.add(parent.id)
                    chain.append(parent)
                    queue.append(parent.id)

        if queue:
            logger.warning("Ancestor walk truncated", card_id=card.id, limit=self.ancestor_limit)
        return chain

    def build_context(self, card_id: str) -> Optional[str]:
        """Text block describing everything upstream of the card, or None for a root"""

        card = self.store.get_card(card_id)
        if card is None:
            return None

        excluded = set(card.excluded_context_node_ids)
        parents = self.direct_parents(card)
        parent_ids = {parent.id for parent in parents}
        blocks: List[str] = []

        for index, parent in enumerate(parents):
            if parent.id in excluded:
                continue
            title = "PARENT CARD" if len(parents) == 1 else f"PARENT CARD #{index + 1}"
            lines = [f"=== {title} ==="]
            if parent.prompt:
                lines.append(f"Question: {parent.prompt}")

            if card.quote is not None and card.quote.source_id == parent.id:
                lines.append(f'[Quote]: "{card.quote.text}"')
                if self.use_summarization and parent.summary:
                    lines.append(f"[Context]: {parent.summary}")
                elif parent.response:
                    lines.append(f"[Context]: {parent.response}")
            elif parent.response:
                lines.append(f"Answer: {parent.response}")
            blocks.append("\n".join(lines))

        chain = self.ancestor_chain(card)
        further = [a for a in chain if a.id not in parent_ids and a.id not in excluded]
        for index, ancestor in enumerate(further):
            lines = [f"=== ANCESTOR (level -{index + 2}) ==="]
            if ancestor.prompt:
                lines.append(f"Question: {ancestor.prompt}")

            quote = self._quote_for_ancestor(ancestor.id, chain, excluded)
            if quote is not None:
                lines.append(f'[Quote from descendant]: "{quote}"')
                if self.use_summarization and ancestor.summary:
                    lines.append(f"[Context]: {ancestor.summary}")
                elif ancestor.response:
                    text = ancestor.response
                    if self.use_summarization:
                        text = text[:self.quote_prefix_chars] + "..."
                    lines.append(f"[Context]: {text}")
            elif not self.use_summarization and ancestor.response:
                lines.append(f"Answer: {ancestor.response}")
            elif ancestor.summary:
                lines.append(f"Answer summary: {ancestor.summary}")
            elif ancestor.response:
                lines.append(f"Answer summary: {ancestor.response[:self.prefix_chars]}...")
            blocks.append("\n".join(lines))

        if not blocks:
            return None
        return "\n\n".join(blocks)

    def build_messages(self, card_id: str) -> List[BaseMessage]:
        """System + human messages for the completion model"""

        card = self.store.require(card_id)
        context = self.build_context(card_id)

        system_content = self.system_prompt
        if context:
            system_content = f"{system_content}\n\n{context}"

        return [
            SystemMessage(content=system_content),
            HumanMessage(content=card.prompt),
        ]

    @staticmethod
    def _quote_for_ancestor(ancestor_id: str, chain: List[Card], excluded: Set[str]) -> Optional[str]:
        for other in chain:
            if other.id in excluded or other.id == ancestor_id:
                continue
            if other.quote is not None and other.quote.source_id == ancestor_id:
                return other.quote.text
        return None
