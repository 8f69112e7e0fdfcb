"""
Shared fixtures for the canvas engine tests.

- ManualClock drives every debounce timer deterministically
- Recording fakes stand in for the search index and embedding store
"""
import pytest

from canvas_engine.config import Settings
from canvas_engine.domain.graph.fingerprint import ContextFingerprinter
from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.graph.staleness import StalenessPropagator
from canvas_engine.domain.history.debounce import ManualClock
from canvas_engine.domain.orchestration.canvas_engine import CanvasEngine
from canvas_engine.infrastructure.observability.logging import metrics
from tests.helpers import RecordingEmbeddingStore, RecordingSearchIndex


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return Settings(
        history_limit=50,
        history_debounce_seconds=0.5,
        stale_check_debounce_seconds=0.5,
        fingerprint_ancestor_limit=20,
        use_summarization=False,
        log_format="console",
    )


@pytest.fixture
def store():
    return GraphStore()


@pytest.fixture
def fingerprinter(store):
    return ContextFingerprinter(store)


@pytest.fixture
def propagator(store, fingerprinter, clock):
    propagator = StalenessPropagator(store, fingerprinter, recheck_delay=0.5, clock=clock)
    propagator.attach()
    return propagator


@pytest.fixture
def search_index():
    return RecordingSearchIndex()


@pytest.fixture
def embedding_store():
    return RecordingEmbeddingStore()


@pytest.fixture
def engine(settings, clock, search_index, embedding_store):
    return CanvasEngine(
        settings=settings,
        search_index=search_index,
        embedding_store=embedding_store,
        clock=clock,
    )
