"""
Unit tests for context fingerprinting.

Run with: pytest tests/test_fingerprint.py -v
"""
import pytest

from canvas_engine.domain.errors import StructuralError
from canvas_engine.domain.graph.fingerprint import (
    ContextFingerprinter, djb2_hash, normalize_for_hash
)
from canvas_engine.domain.models.card_state import Card, Edge, Quote
from tests.helpers import answered


class TestHashing:
    def test_djb2_known_values(self):
        assert djb2_hash("") == format(5381, "x")
        assert djb2_hash("a") == format((5381 * 33 + 97) & 0xFFFFFFFF, "x")

    def test_djb2_stays_within_32_bits(self):
        assert int(djb2_hash("x" * 10000), 16) <= 0xFFFFFFFF

    def test_normalize_trims_and_lowercases(self):
        assert normalize_for_hash("  Hello World \n") == "hello world"
        assert normalize_for_hash(None) == ""


class TestContextParts:
    """Tests for the ordered pieces that feed the hash."""

    def test_root_card(self, store, fingerprinter):
        card_id = store.add_card(prompt="  What Is X? ")

        assert fingerprinter.context_parts(card_id) == ["PROMPT:what is x?"]

    def test_parents_and_ancestors(self, store, fingerprinter):
        root = store.add_card(prompt="Root", response="root answer", summary="Root sum")
        mid = store.add_card(parent_ids=[root], prompt="Mid", response="mid answer")
        leaf = store.add_card(parent_ids=[mid], prompt="Leaf")

        assert fingerprinter.context_parts(leaf) == [
            "PROMPT:leaf",
            "PARENT[0]:mid answer",
            "PARENT_PROMPT[0]:mid",
            "ANCESTOR[0]:root sum",
            "ANCESTOR_PROMPT[0]:root",
        ]

    def test_ancestor_without_summary_uses_prefix(self, store):
        fingerprinter = ContextFingerprinter(store, prefix_chars=5)
        root = store.add_card(prompt="r", response="ABCDEFGHIJ")
        mid = store.add_card(parent_ids=[root], prompt="m")
        leaf = store.add_card(parent_ids=[mid], prompt="l")

        assert "ANCESTOR[0]:abcde..." in fingerprinter.context_parts(leaf)

    def test_quote_parts(self, store, fingerprinter):
        source = store.add_card(prompt="s", response="alpha beta")
        quote = Quote(text="Beta", source_id=source, source_response="alpha beta")
        card_id = store.add_card(parent_ids=[source], prompt="q", quote=quote)

        parts = fingerprinter.context_parts(card_id)

        assert parts[1:3] == ["QUOTE:beta", f"QUOTE_SOURCE:{source}"]

    def test_excluded_ancestor_is_skipped(self, store, fingerprinter):
        root = store.add_card(prompt="root", response="r")
        mid = store.add_card(parent_ids=[root], prompt="mid", response="m")
        leaf = store.add_card(parent_ids=[mid], prompt="leaf", excluded_context_node_ids=[root])

        parts = fingerprinter.context_parts(leaf)

        assert not any(p.startswith("ANCESTOR") for p in parts)

    def test_excluded_direct_parent_is_skipped(self, store, fingerprinter):
        p1 = store.add_card(prompt="one", response="1")
        p2 = store.add_card(prompt="two", response="2")
        merged = store.add_card(parent_ids=[p1, p2], prompt="m", excluded_context_node_ids=[p1])

        parts = fingerprinter.context_parts(merged)

        assert "PARENT[1]:2" in parts
        assert not any(p.startswith("PARENT[0]") for p in parts)

    def test_ancestor_walk_is_capped(self, store):
        fingerprinter = ContextFingerprinter(store, ancestor_limit=3)
        previous = store.add_card(prompt="c0", response="r0")
        for i in range(1, 10):
            previous = store.add_card(parent_ids=[previous], prompt=f"c{i}", response=f"r{i}")

        parts = fingerprinter.context_parts(previous)

        assert len([p for p in parts if p.startswith("ANCESTOR[")]) == 3


class TestFingerprint:
    def test_unknown_card(self, fingerprinter):
        assert fingerprinter.fingerprint("card-missing") is None

    def test_whitespace_and_case_edits_keep_fingerprint(self, store, fingerprinter):
        parent = store.add_card(prompt="P", response="Answer")
        child = store.add_card(parent_ids=[parent], prompt="C")
        before = fingerprinter.fingerprint(child)

        store.patch_card(parent, {"response": "  ANSWER  "})

        assert fingerprinter.fingerprint(child) == before

    def test_unrelated_card_does_not_change_fingerprint(self, store, fingerprinter):
        a = store.add_card(prompt="A", response="RA")
        b = store.add_card(parent_ids=[a], prompt="B", response="RB")
        other = store.add_card(prompt="other", response="x")
        before = fingerprinter.fingerprint(b)

        store.patch_card(other, {"response": "changed", "prompt": "changed"})
        store.add_card(parent_ids=[b], prompt="descendant")

        assert fingerprinter.fingerprint(b) == before

    def test_save_fingerprint_stores_value(self, store, fingerprinter):
        card_id = answered(store, fingerprinter, "p", "r")

        card = store.get_card(card_id)
        assert card.last_context_fingerprint == fingerprinter.fingerprint(card_id)

    def test_cycle_raises_structural_error(self, store, fingerprinter):
        store.restore(
            [Card(id="card-a", response="a"), Card(id="card-b", response="b")],
            [Edge.between("card-a", "card-b")],
        )
        # Force the back edge past the store's own guards
        store._edges[Edge.make_id("card-b", "card-a")] = Edge.between("card-b", "card-a")
        store._cards["card-a"] = store.get_card("card-a").model_copy(update={"parent_ids": ["card-b"]})

        with pytest.raises(StructuralError):
            fingerprinter.fingerprint("card-a")
