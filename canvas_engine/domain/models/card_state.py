from typing import Dict, Any, List, Optional, Tuple, Set
from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from enum import Enum


# Fields that only describe what the UI is doing right now
EPHEMERAL_FIELDS = frozenset({"pending_regenerate", "is_generating", "selected"})

# Fields produced by generation or derived from it
GENERATION_FIELDS = frozenset({
    "response",
    "summary",
    "is_stale",
    "last_context_fingerprint",
    "created_at",
    "updated_at",
})

# Fields the graph store owns; callers change them through edges only
STRUCTURAL_FIELDS = frozenset({"id", "parent_ids"})


class Position(BaseModel):
    """Canvas coordinates; kept for the editor, ignored by the engine"""
    x: float = 0.0
    y: float = 0.0


class Quote(BaseModel):
    """Excerpt of another card's response that seeded this card"""
    text: str = Field(description="Quoted excerpt")
    source_id: str = Field(description="Card the excerpt was taken from")
    source_response: Optional[str] = Field(None, description="Source response at excerpt time")
    invalidated: bool = Field(default=False, description="Excerpt no longer occurs in the source")


class Card(BaseModel):
    """A prompt/response turn on the canvas"""
    id: str = Field(description="Unique card identifier")
    position: Position = Field(default_factory=Position)
    prompt: str = ""
    response: Optional[str] = None
    summary: Optional[str] = Field(None, description="Condensed response handed to distant descendants")
    parent_ids: List[str] = Field(default_factory=list, description="Direct parents, cached from edges")
    quote: Optional[Quote] = None
    is_stale: bool = False
    last_context_fingerprint: Optional[str] = None
    excluded_context_node_ids: List[str] = Field(default_factory=list)

    pending_regenerate: bool = False
    is_generating: bool = False
    selected: bool = False

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def _unanswered_is_never_stale(self) -> "Card":
        if self.response is None and self.is_stale:
            self.is_stale = False
        return self

    @property
    def parent_id(self) -> Optional[str]:
        return self.parent_ids[0] if self.parent_ids else None

    @property
    def has_response(self) -> bool:
        return self.response is not None

    @property
    def is_quote_card(self) -> bool:
        return self.quote is not None


class Edge(BaseModel):
    """Directed context link: source provides context to target"""
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str

    @staticmethod
    def make_id(source: str, target: str) -> str:
        return f"edge-{source}-{target}"

    @classmethod
    def between(cls, source: str, target: str) -> "Edge":
        return cls(id=cls.make_id(source, target), source=source, target=target)


class GraphEventKind(str, Enum):
    """Kinds of mutation the graph store reports"""
    CARD_ADDED = "card_added"
    CARD_REMOVED = "card_removed"
    CARD_PATCHED = "card_patched"
    EDGE_ADDED = "edge_added"
    EDGE_REMOVED = "edge_removed"
    RESTORED = "restored"
    LOADED = "loaded"


class GraphEvent(BaseModel):
    """Notification emitted after a mutation has been fully applied"""
    kind: GraphEventKind
    card_id: Optional[str] = None
    edge: Optional[Edge] = None
    changed_fields: List[str] = Field(default_factory=list)
    affected_ids: List[str] = Field(default_factory=list, description="Cards touched as a side effect")
    previous: Optional[Dict[str, Any]] = Field(None, description="Values of changed fields before the patch")
    removed: Optional[Card] = Field(None, description="The card as it was just before removal")


class SchedulerStatus(str, Enum):
    """Batch regeneration states"""
    IDLE = "idle"
    RUNNING = "running"
    LEVEL_IN_PROGRESS = "level_in_progress"
    CANCELLED = "cancelled"


class RegenerationProgress(BaseModel):
    """Polling view of a batch regeneration run"""
    status: SchedulerStatus = SchedulerStatus.IDLE
    run_id: int = 0
    completed: int = 0
    total: int = 0
    current_level: int = 0
    level_count: int = 0
    current_level_ids: List[str] = Field(default_factory=list)


class CardRecord(BaseModel):
    """User-intent view of a card as kept in history"""
    model_config = ConfigDict(frozen=True)

    id: str
    position: Position
    prompt: str
    quote_text: Optional[str] = None
    quote_source_id: Optional[str] = None
    excluded_context_node_ids: Tuple[str, ...] = ()

    @classmethod
    def from_card(cls, card: Card) -> "CardRecord":
        return cls(
            id=card.id,
            position=card.position.model_copy(),
            prompt=card.prompt,
            quote_text=card.quote.text if card.quote else None,
            quote_source_id=card.quote.source_id if card.quote else None,
            excluded_context_node_ids=tuple(card.excluded_context_node_ids),
        )


class CardOutcome(BaseModel):
    """Generation results recorded next to a history entry"""
    model_config = ConfigDict(frozen=True)

    response: Optional[str] = None
    summary: Optional[str] = None
    is_stale: bool = False
    last_context_fingerprint: Optional[str] = None
    quote_source_response: Optional[str] = None
    quote_invalidated: bool = False

    @classmethod
    def from_card(cls, card: Card) -> "CardOutcome":
        return cls(
            response=card.response,
            summary=card.summary,
            is_stale=card.is_stale,
            last_context_fingerprint=card.last_context_fingerprint,
            quote_source_response=card.quote.source_response if card.quote else None,
            quote_invalidated=card.quote.invalidated if card.quote else False,
        )


class HistorySnapshot(BaseModel):
    """Immutable, comparable copy of the canvas for undo/redo"""
    model_config = ConfigDict(frozen=True)

    cards: Tuple[CardRecord, ...] = ()
    edges: Tuple[Edge, ...] = ()
    outcomes: Dict[str, CardOutcome] = Field(default_factory=dict)

    def card_ids(self) -> Set[str]:
        return {record.id for record in self.cards}

    def same_intent(self, other: "HistorySnapshot") -> bool:
        """Compare user intent only; generation outcomes are ignored"""

        if len(self.cards) != len(other.cards) or len(self.edges) != len(other.edges):
            return False
        if {edge.id for edge in self.edges} != {edge.id for edge in other.edges}:
            return False
        mine = {record.id: record for record in self.cards}
        for record in other.cards:
            if mine.get(record.id) != record:
                return False
        return True


class HistoryJump(BaseModel):
    """Card-id diff produced by undo/redo"""
    vanished_ids: List[str] = Field(default_factory=list)
    resurrected_ids: List[str] = Field(default_factory=list)


class IndexDocument(BaseModel):
    """Document handed to the search index"""
    id: str
    text: str
    title: str
    preview: str

    @classmethod
    def from_card(cls, card: Card, preview_chars: int = 200) -> "IndexDocument":
        response = card.response or ""
        return cls(
            id=card.id,
            text=f"{card.prompt} {response}",
            title=card.prompt,
            preview=response[:preview_chars],
        )
