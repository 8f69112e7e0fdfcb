from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field

from canvas_engine.domain.models.card_state import Card, Edge, Position, HistoryJump


class CreateCardRequest(BaseModel):
    """Create a card, optionally linked to existing parents"""
    position: Optional[Position] = None
    parent_ids: List[str] = Field(default_factory=list)
    prompt: str = ""
    response: Optional[str] = None


class PatchCardRequest(BaseModel):
    """Field updates for one card"""
    fields: Dict[str, Any] = Field(description="Card field name to new value")


class CreateChildRequest(BaseModel):
    position: Optional[Position] = None


class CreateMergedRequest(BaseModel):
    parent_ids: List[str] = Field(min_length=2)
    position: Optional[Position] = None


class QuoteRequest(BaseModel):
    """Excerpt of a source card's response"""
    source_id: str
    quote_text: str


class EdgeRequest(BaseModel):
    source: str
    target: str


class CardIdResponse(BaseModel):
    id: str


class FingerprintResponse(BaseModel):
    card_id: str
    fingerprint: Optional[str] = None
    saved: Optional[str] = None
    is_stale: bool = False


class StaleCountResponse(BaseModel):
    stale_count: int
    stale_ids: List[str] = Field(default_factory=list)


class HistoryState(BaseModel):
    """Undo/redo availability for the editor toolbar"""
    can_undo: bool
    can_redo: bool
    undo_count: int
    redo_count: int


class HistoryStepResponse(BaseModel):
    applied: bool
    jump: Optional[HistoryJump] = None
    history: HistoryState


class CanvasDocument(BaseModel):
    """Persisted canvas: cards and edges only"""
    cards: List[Card] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
