from typing import Callable, Dict, List, Optional, Set

import structlog

from canvas_engine.domain.errors import StructuralError
from canvas_engine.domain.graph.graph_store import GraphStore
from canvas_engine.domain.models.card_state import (
    GraphEvent, GraphEventKind, RegenerationProgress, SchedulerStatus
)
from canvas_engine.infrastructure.observability.logging import canvas_logger, metrics

logger = structlog.get_logger(__name__)

# Called once per card to start its regeneration: (card_id, run_id)
Dispatcher = Callable[[str, int], None]


class BatchRegenerationScheduler:
    """Regenerates stale cards level by level in dependency order.

    Cards in one level have no stale ancestor in common with each other and
    are dispatched together; the next level starts once every card of the
    current one has reported back through ``on_card_complete``. The scheduler
    never awaits anything itself, so all bookkeeping happens on the caller's
    thread of control.
    """

    def __init__(self, store: GraphStore, dispatcher: Optional[Dispatcher] = None):
        self.store = store
        self.dispatcher = dispatcher
        self.state = SchedulerStatus.IDLE

        self._run_id = 0
        self._levels: List[List[str]] = []
        self._level_index = 0
        self._pending: List[str] = []
        self._in_flight: Set[str] = set()
        self._completed = 0
        self._total = 0

    def attach(self) -> None:
        """Subscribe to graph mutations"""

        self.store.register_listener(self.handle_event)

    def set_dispatcher(self, dispatcher: Optional[Dispatcher]) -> None:
        self.dispatcher = dispatcher

    @property
    def is_running(self) -> bool:
        return self.state in (SchedulerStatus.RUNNING, SchedulerStatus.LEVEL_IN_PROGRESS)

    @property
    def run_id(self) -> int:
        return self._run_id

    # ------------------------------------------------------------------
    # Leveling
    # ------------------------------------------------------------------
    def stale_ancestors(self, card_id: str, stale_ids: Set[str]) -> Set[str]:
        """Other stale cards reachable from ``card_id`` through parent links"""

        found: Set[str] = set()
        visited: Set[str] = {card_id}
        stack = list(self._parents_of(card_id))
        while stack:
            parent_id = stack.pop()
            if parent_id in visited:
                continue
            visited.add(parent_id)
            if parent_id in stale_ids:
                found.add(parent_id)
            stack.extend(self._parents_of(parent_id))
        return found

    def compute_levels(self, stale_ids: List[str]) -> List[List[str]]:
        """Kahn-style leveling of the stale set.

        Raises StructuralError when some cards can never be placed, which only
        happens if their stale ancestors form a cycle.
        """

        stale_set = set(stale_ids)
        ancestors: Dict[str, Set[str]] = {
            card_id: self.stale_ancestors(card_id, stale_set) for card_id in stale_ids
        }

        levels: List[List[str]] = []
        assigned: Set[str] = set()
        while len(assigned) < len(stale_ids):
            level = [
                card_id for card_id in stale_ids
                if card_id not in assigned and ancestors[card_id] <= assigned
            ]
            if not level:
                remaining = [card_id for card_id in stale_ids if card_id not in assigned]
                raise StructuralError("cycle among stale cards", remaining)
            levels.append(level)
            assigned.update(level)
        return levels

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------
    def start(self) -> Optional[RegenerationProgress]:
        """Begin regenerating every stale answered card"""

        if self.is_running:
            logger.info("Regeneration already running", run_id=self._run_id)
            return None

        stale_ids = [card.id for card in self.store.cards() if card.is_stale and card.has_response]
        if not stale_ids:
            logger.info("No stale cards to regenerate")
            return None

        # Leveling may raise; nothing has been touched yet at that point
        levels = self.compute_levels(stale_ids)

        previous = self.state
        self._run_id += 1
        self._levels = levels
        self._level_index = 0
        self._pending = []
        self._in_flight = set()
        self._completed = 0
        self._total = len(stale_ids)
        self.state = SchedulerStatus.RUNNING

        canvas_logger.log_regeneration_transition(
            self._run_id, previous.value, self.state.value, card_ids=stale_ids
        )
        logger.info("Regeneration levels computed",
                    run_id=self._run_id,
                    levels=[len(level) for level in levels])

        self._dispatch_level(0)
        return self.progress()

    def cancel(self) -> bool:
        """Stop dispatching; cards already running may finish but are not counted"""

        if not self.is_running:
            return False

        previous = self.state
        self._in_flight = set(self._pending)
        self._pending = []
        self._levels = []
        self.state = SchedulerStatus.CANCELLED
        self._clear_pending_flags()

        canvas_logger.log_regeneration_transition(
            self._run_id, previous.value, self.state.value, card_ids=sorted(self._in_flight)
        )
        if not self._in_flight:
            self._become_idle()
        return True

    def on_card_complete(self, card_id: str, run_id: Optional[int] = None) -> None:
        """Completion entry point for the generation collaborator (success or failure)"""

        if run_id is not None and run_id != self._run_id:
            logger.debug("Ignoring completion from another run", card_id=card_id, run_id=run_id)
            return

        if self.state == SchedulerStatus.CANCELLED:
            self._in_flight.discard(card_id)
            if not self._in_flight:
                self._become_idle()
            return

        if self.state != SchedulerStatus.LEVEL_IN_PROGRESS or card_id not in self._pending:
            logger.debug("Ignoring completion for card outside current level", card_id=card_id)
            return

        self._pending.remove(card_id)
        self._completed += 1
        if card_id in self.store:
            self.store.set_flags(card_id, pending_regenerate=False)
        metrics.increment_counter("regeneration.completed")

        if not self._pending:
            self._advance()

    def progress(self) -> RegenerationProgress:
        """Snapshot of the current run for polling"""

        return RegenerationProgress(
            status=self.state,
            run_id=self._run_id,
            completed=self._completed,
            total=self._total,
            current_level=self._level_index,
            level_count=len(self._levels),
            current_level_ids=list(self._pending),
        )

    # ------------------------------------------------------------------
    # Graph events
    # ------------------------------------------------------------------
    def handle_event(self, event: GraphEvent) -> None:
        """Treat cards that disappear mid-run as completed"""

        if event.kind == GraphEventKind.CARD_REMOVED:
            self._forget(event.card_id)
        elif event.kind == GraphEventKind.RESTORED:
            for card_id in list(self._pending) + list(self._in_flight):
                if card_id not in self.store:
                    self._forget(card_id)
        elif event.kind == GraphEventKind.LOADED:
            if self.state != SchedulerStatus.IDLE:
                logger.info("Canvas replaced, dropping regeneration run", run_id=self._run_id)
                self._pending = []
                self._in_flight = set()
                self._levels = []
                self._become_idle()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _forget(self, card_id: Optional[str]) -> None:
        if card_id is None:
            return
        if card_id in self._pending or card_id in self._in_flight:
            self.on_card_complete(card_id, self._run_id)

    def _advance(self) -> None:
        next_index = self._level_index + 1
        if next_index >= len(self._levels):
            logger.info("Regeneration complete",
                        run_id=self._run_id,
                        completed=self._completed,
                        total=self._total)
            self._become_idle()
            return
        self._dispatch_level(next_index)

    def _dispatch_level(self, index: int) -> None:
        run_id = self._run_id
        while index < len(self._levels):
            self._level_index = index
            runnable: List[str] = []
            for card_id in self._levels[index]:
                card = self.store.get_card(card_id)
                if card is not None and card.is_stale and card.has_response:
                    runnable.append(card_id)
                else:
                    # Vanished or no longer stale since leveling
                    self._completed += 1

            if runnable:
                break
            index += 1
        else:
            self._become_idle()
            return

        previous = self.state
        self._pending = list(runnable)
        self.state = SchedulerStatus.LEVEL_IN_PROGRESS
        for card_id in runnable:
            self.store.set_flags(card_id, pending_regenerate=True)

        canvas_logger.log_regeneration_transition(
            run_id, previous.value, self.state.value, level=index, card_ids=runnable
        )

        if self.dispatcher is None:
            logger.warning("No dispatcher set; cards wait with pending_regenerate", card_ids=runnable)
            return

        for card_id in runnable:
            # A synchronous completion may cancel the run or start the next level
            if self._run_id != run_id or self.state != SchedulerStatus.LEVEL_IN_PROGRESS:
                break
            if card_id not in self._pending:
                continue
            self.dispatcher(card_id, run_id)

    def _become_idle(self) -> None:
        previous = self.state
        self.state = SchedulerStatus.IDLE
        self._pending = []
        self._in_flight = set()
        self._clear_pending_flags()
        if previous != SchedulerStatus.IDLE:
            canvas_logger.log_regeneration_transition(self._run_id, previous.value, self.state.value)

    def _clear_pending_flags(self) -> None:
        for card in self.store.cards():
            if card.pending_regenerate:
                self.store.set_flags(card.id, pending_regenerate=False)

    def _parents_of(self, card_id: str) -> List[str]:
        card = self.store.get_card(card_id)
        return list(card.parent_ids) if card else []
