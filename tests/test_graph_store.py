"""
Unit tests for the graph store.

Tests cover:
- Card and edge mutation primitives
- Parent cache recomputation and the deletion cascade
- Listener notification
- Whole-canvas restore
"""
import pytest

from canvas_engine.domain.errors import MissingReferenceError
from canvas_engine.domain.models.card_state import Card, Edge, GraphEventKind, Position


class TestCards:
    """Tests for card creation, patching and removal."""

    def test_add_card_links_parents(self, store):
        root = store.add_card(prompt="root")
        child = store.add_card(position=Position(x=10, y=20), parent_ids=[root], prompt="child")

        card = store.get_card(child)
        assert card.parent_ids == [root]
        assert card.position.x == 10
        assert [e.id for e in store.incoming(child)] == [Edge.make_id(root, child)]

    def test_add_card_skips_unknown_parent(self, store):
        child = store.add_card(parent_ids=["card-missing"])

        assert store.get_card(child).parent_ids == []
        assert store.edges() == []

    def test_unanswered_card_is_never_stale(self):
        card = Card(id="card-x", is_stale=True)

        assert card.is_stale is False

    def test_patch_card_reports_changed_fields(self, store):
        events = []
        store.register_listener(events.append)
        card_id = store.add_card(prompt="old")

        store.patch_card(card_id, {"prompt": "new", "summary": None})

        patched = [e for e in events if e.kind == GraphEventKind.CARD_PATCHED]
        assert len(patched) == 1
        assert patched[0].changed_fields == ["prompt"]
        assert patched[0].previous == {"prompt": "old"}

    def test_patch_card_without_change_is_silent(self, store):
        card_id = store.add_card(prompt="same")
        events = []
        store.register_listener(events.append)

        store.patch_card(card_id, {"prompt": "same"})

        assert events == []

    def test_patch_card_rejects_structural_fields(self, store):
        card_id = store.add_card()

        with pytest.raises(ValueError):
            store.patch_card(card_id, {"parent_ids": ["card-other"]})
        with pytest.raises(ValueError):
            store.patch_card(card_id, {"colour": "red"})

    def test_patch_unknown_card_is_noop(self, store):
        assert store.patch_card("card-missing", {"prompt": "x"}) is None

    def test_require_raises_for_unknown_card(self, store):
        with pytest.raises(MissingReferenceError) as exc_info:
            store.require("card-missing")

        assert isinstance(exc_info.value, KeyError)
        assert "card-missing" in str(exc_info.value)

    def test_set_flags_emits_no_event(self, store):
        card_id = store.add_card(response="r")
        events = []
        store.register_listener(events.append)

        store.set_flags(card_id, is_stale=True)

        assert store.get_card(card_id).is_stale is True
        assert events == []

    def test_set_flags_only_accepts_derived_flags(self, store):
        card_id = store.add_card()

        with pytest.raises(ValueError):
            store.set_flags(card_id, prompt="sneaky")


class TestDeletionCascade:
    """Removing a card severs its children and marks them stale."""

    def test_delete_parent_orphans_children(self, store):
        parent = store.add_card(prompt="P", response="RP")
        a = store.add_card(parent_ids=[parent], prompt="A", response="RA")
        b = store.add_card(parent_ids=[parent], prompt="B", response="RB")

        assert store.remove_card(parent) is True

        assert store.get_card(a).parent_id is None
        assert store.get_card(b).parent_id is None
        assert store.get_card(a).is_stale is True
        assert store.get_card(b).is_stale is True
        assert all(parent not in (e.source, e.target) for e in store.edges())

    def test_delete_keeps_other_parents(self, store):
        p1 = store.add_card(response="1")
        p2 = store.add_card(response="2")
        merged = store.add_card(parent_ids=[p1, p2], response="m")

        store.remove_card(p1)

        assert store.get_card(merged).parent_ids == [p2]

    def test_unanswered_child_stays_fresh(self, store):
        parent = store.add_card(response="RP")
        child = store.add_card(parent_ids=[parent])

        store.remove_card(parent)

        assert store.get_card(child).is_stale is False

    def test_remove_unknown_card(self, store):
        assert store.remove_card("card-missing") is False

    def test_removal_event_lists_children(self, store):
        parent = store.add_card()
        child = store.add_card(parent_ids=[parent])
        events = []
        store.register_listener(events.append)

        store.remove_card(parent)

        assert events[-1].kind == GraphEventKind.CARD_REMOVED
        assert events[-1].card_id == parent
        assert events[-1].affected_ids == [child]


class TestEdges:
    """Tests for connect / add_edge / remove_edge."""

    def test_duplicate_edges_are_ignored(self, store):
        a = store.add_card()
        b = store.add_card()

        first = store.connect(a, b)
        second = store.connect(a, b)

        assert first == second
        assert len(store.edges()) == 1
        assert store.get_card(b).parent_ids == [a]

    def test_connect_marks_answered_target_stale(self, store):
        a = store.add_card(response="ra")
        b = store.add_card(response="rb")

        store.connect(a, b)

        assert store.get_card(b).is_stale is True

    def test_self_loop_and_unknown_cards_rejected(self, store):
        a = store.add_card()

        assert store.connect(a, a) is None
        assert store.connect(a, "card-missing") is None
        assert store.edges() == []

    def test_remove_edge_recomputes_parents(self, store):
        a = store.add_card()
        b = store.add_card()
        c = store.add_card(parent_ids=[a, b], response="rc")

        assert store.remove_edge(Edge.make_id(a, c)) is True

        card = store.get_card(c)
        assert card.parent_ids == [b]
        assert card.is_stale is True
        assert store.remove_edge(Edge.make_id(a, c)) is False


class TestListeners:
    def test_failing_listener_does_not_break_mutation(self, store):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        store.register_listener(broken)
        store.register_listener(seen.append)

        card_id = store.add_card()

        assert card_id in store
        assert [e.kind for e in seen] == [GraphEventKind.CARD_ADDED]


class TestRestore:
    def test_restore_drops_dangling_edges(self, store):
        cards = [Card(id="card-a"), Card(id="card-b", parent_ids=["card-zzz"])]
        edges = [Edge.between("card-a", "card-b"), Edge.between("card-gone", "card-b")]

        store.restore(cards, edges)

        assert [e.id for e in store.edges()] == [Edge.make_id("card-a", "card-b")]
        assert store.get_card("card-b").parent_ids == ["card-a"]

    def test_export_round_trips_through_load(self, store):
        a = store.add_card(prompt="A", response="RA")
        store.add_card(parent_ids=[a], prompt="B")
        exported = store.export()

        other = type(store)()
        other.load(
            [Card.model_validate(c) for c in exported["cards"]],
            [Edge.model_validate(e) for e in exported["edges"]],
        )

        assert other.export() == exported
