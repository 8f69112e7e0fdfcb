from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
import structlog

from canvas_engine.application.api.schema.canvas import (
    CanvasDocument, CardIdResponse, CreateCardRequest, CreateChildRequest,
    CreateMergedRequest, EdgeRequest, FingerprintResponse, HistoryState,
    HistoryStepResponse, PatchCardRequest, QuoteRequest, StaleCountResponse
)
from canvas_engine.domain.models.card_state import Card, Edge, RegenerationProgress
from canvas_engine.domain.orchestration.canvas_engine import CanvasEngine

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_engine(request: Request) -> CanvasEngine:
    return request.app.state.engine


def _card_or_404(engine: CanvasEngine, card_id: str) -> Card:
    card = engine.get_card(card_id)
    if card is None:
        raise HTTPException(status_code=404, detail=f"Card not found: {card_id}")
    return card


def _created_or_404(card_id, detail: str) -> CardIdResponse:
    if card_id is None:
        raise HTTPException(status_code=404, detail=detail)
    return CardIdResponse(id=card_id)


def _history_state(engine: CanvasEngine) -> HistoryState:
    return HistoryState(
        can_undo=engine.can_undo(),
        can_redo=engine.can_redo(),
        undo_count=engine.undo_count(),
        redo_count=engine.redo_count(),
    )


# Cards
@router.get("/cards", response_model=List[Card])
async def list_cards(engine: CanvasEngine = Depends(get_engine)):
    return engine.cards()


@router.get("/cards/{card_id}", response_model=Card)
async def get_card(card_id: str, engine: CanvasEngine = Depends(get_engine)):
    return _card_or_404(engine, card_id)


@router.post("/cards", response_model=CardIdResponse, status_code=201)
async def create_card(request: CreateCardRequest, engine: CanvasEngine = Depends(get_engine)):
    card_id = engine.add_card(
        position=request.position,
        parent_ids=request.parent_ids,
        prompt=request.prompt,
        response=request.response,
    )
    return CardIdResponse(id=card_id)


@router.patch("/cards/{card_id}", response_model=Card)
async def patch_card(card_id: str, request: PatchCardRequest, engine: CanvasEngine = Depends(get_engine)):
    try:
        card = engine.patch_card(card_id, request.fields)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if card is None:
        raise HTTPException(status_code=404, detail=f"Card not found: {card_id}")
    return card


@router.delete("/cards/{card_id}")
async def delete_card(card_id: str, engine: CanvasEngine = Depends(get_engine)):
    if not engine.remove_card(card_id):
        raise HTTPException(status_code=404, detail=f"Card not found: {card_id}")
    return {"removed": card_id}


@router.post("/cards/{card_id}/children", response_model=CardIdResponse, status_code=201)
async def create_child(
    card_id: str,
    request: CreateChildRequest = CreateChildRequest(),
    engine: CanvasEngine = Depends(get_engine)
):
    return _created_or_404(engine.create_child_card(card_id, request.position), f"Card not found: {card_id}")


@router.post("/cards/{card_id}/siblings", response_model=CardIdResponse, status_code=201)
async def create_sibling(card_id: str, engine: CanvasEngine = Depends(get_engine)):
    return _created_or_404(engine.create_sibling_card(card_id), f"No parent to share: {card_id}")


@router.post("/merge", response_model=CardIdResponse, status_code=201)
async def create_merged(request: CreateMergedRequest, engine: CanvasEngine = Depends(get_engine)):
    return _created_or_404(
        engine.create_merged_card(request.parent_ids, request.position),
        "Merge needs at least two existing parents"
    )


# Quotes
@router.post("/quotes", response_model=CardIdResponse, status_code=201)
async def create_quote_card(request: QuoteRequest, engine: CanvasEngine = Depends(get_engine)):
    return _created_or_404(
        engine.create_quote_card(request.source_id, request.quote_text),
        f"Quote source missing or unanswered: {request.source_id}"
    )


@router.put("/cards/{card_id}/quote", response_model=Card)
async def update_quote(card_id: str, request: QuoteRequest, engine: CanvasEngine = Depends(get_engine)):
    card = engine.update_quote(card_id, request.quote_text, request.source_id)
    if card is None:
        raise HTTPException(status_code=404, detail="Card or quote source not found")
    return card


@router.delete("/cards/{card_id}/quote", response_model=Card)
async def clear_quote(card_id: str, engine: CanvasEngine = Depends(get_engine)):
    card = engine.clear_quote(card_id)
    if card is None:
        raise HTTPException(status_code=404, detail=f"Card not found: {card_id}")
    return card


# Edges
@router.get("/edges", response_model=List[Edge])
async def list_edges(engine: CanvasEngine = Depends(get_engine)):
    return engine.edges()


@router.post("/edges", response_model=Edge, status_code=201)
async def connect(request: EdgeRequest, engine: CanvasEngine = Depends(get_engine)):
    edge = engine.connect(request.source, request.target)
    if edge is None:
        raise HTTPException(status_code=404, detail="Unknown card or self-loop")
    return edge


@router.delete("/edges/{edge_id}")
async def delete_edge(edge_id: str, engine: CanvasEngine = Depends(get_engine)):
    if not engine.remove_edge(edge_id):
        raise HTTPException(status_code=404, detail=f"Edge not found: {edge_id}")
    return {"removed": edge_id}


# Staleness
@router.get("/cards/{card_id}/fingerprint", response_model=FingerprintResponse)
async def get_fingerprint(card_id: str, engine: CanvasEngine = Depends(get_engine)):
    card = _card_or_404(engine, card_id)
    return FingerprintResponse(
        card_id=card_id,
        fingerprint=engine.fingerprint(card_id),
        saved=card.last_context_fingerprint,
        is_stale=card.is_stale,
    )


@router.get("/stale", response_model=StaleCountResponse)
async def stale_cards(engine: CanvasEngine = Depends(get_engine)):
    stale_ids = engine.stale_ids()
    return StaleCountResponse(stale_count=len(stale_ids), stale_ids=stale_ids)


# Regeneration
@router.post("/regeneration/start", response_model=RegenerationProgress)
async def start_regeneration(engine: CanvasEngine = Depends(get_engine)):
    progress = engine.regenerate_stale_cards()
    return progress or engine.get_regeneration_progress()


@router.post("/regeneration/cancel")
async def cancel_regeneration(engine: CanvasEngine = Depends(get_engine)):
    cancelled = engine.cancel_regeneration()
    return {"cancelled": cancelled, "progress": engine.get_regeneration_progress()}


@router.get("/regeneration/progress", response_model=RegenerationProgress)
async def regeneration_progress(engine: CanvasEngine = Depends(get_engine)):
    return engine.get_regeneration_progress()


# History
@router.get("/history", response_model=HistoryState)
async def history_state(engine: CanvasEngine = Depends(get_engine)):
    return _history_state(engine)


@router.post("/history/undo", response_model=HistoryStepResponse)
async def undo(engine: CanvasEngine = Depends(get_engine)):
    jump = engine.undo()
    return HistoryStepResponse(applied=jump is not None, jump=jump, history=_history_state(engine))


@router.post("/history/redo", response_model=HistoryStepResponse)
async def redo(engine: CanvasEngine = Depends(get_engine)):
    jump = engine.redo()
    return HistoryStepResponse(applied=jump is not None, jump=jump, history=_history_state(engine))


@router.delete("/history", response_model=HistoryState)
async def clear_history(engine: CanvasEngine = Depends(get_engine)):
    engine.clear_history()
    return _history_state(engine)


# Persistence
@router.get("/export", response_model=CanvasDocument)
async def export_canvas(engine: CanvasEngine = Depends(get_engine)):
    return CanvasDocument(cards=engine.cards(), edges=engine.edges())


@router.post("/load", response_model=HistoryState)
async def load_canvas(document: CanvasDocument, engine: CanvasEngine = Depends(get_engine)):
    engine.load(document.cards, document.edges)
    logger.info("Canvas loaded over HTTP", cards=len(document.cards), edges=len(document.edges))
    return _history_state(engine)
