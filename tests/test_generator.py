"""
Tests for context assembly and the chat-model generation collaborator.

The chat model is langchain-core's FakeListChatModel, which answers with a
fixed list of responses in order.
"""
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from canvas_engine.config import Settings
from canvas_engine.domain.models.card_state import SchedulerStatus
from canvas_engine.domain.orchestration.canvas_engine import CanvasEngine
from canvas_engine.infrastructure.observability.logging import metrics


class BrokenChatModel(FakeListChatModel):
    """Chat model whose provider is always down"""

    def _call(self, *args, **kwargs):
        raise RuntimeError("provider down")


def answered(engine, prompt, response, parent_ids=None, **fields):
    card_id = engine.add_card(parent_ids=parent_ids, prompt=prompt, response=response, **fields)
    engine.save_fingerprint(card_id)
    return card_id


class TestContextBuilder:
    """Tests for prompt assembly from ancestors."""

    def test_root_card_has_no_context(self, engine):
        card_id = engine.add_card(prompt="Hello")

        messages = engine.context_builder.build_messages(card_id)

        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[1], HumanMessage)
        assert messages[1].content == "Hello"
        assert engine.context_builder.build_context(card_id) is None

    def test_parent_and_ancestor_blocks(self, engine):
        root = answered(engine, "Root question", "Root answer", summary="Root summary")
        mid = answered(engine, "Mid question", "Mid answer", parent_ids=[root])
        leaf = engine.add_card(parent_ids=[mid], prompt="Leaf")

        context = engine.context_builder.build_context(leaf)

        assert "Question: Mid question\nAnswer: Mid answer" in context
        # Summarization is off in the test settings: full answers all the way up
        assert "Answer: Root answer" in context
        assert context.index("PARENT CARD") < context.index("ANCESTOR")

    def test_quote_replaces_answer_block(self, engine):
        source = answered(engine, "S", "alpha beta gamma")
        quoted = engine.create_quote_card(source, "beta")

        context = engine.context_builder.build_context(quoted)

        assert '[Quote]: "beta"' in context
        assert "[Context]: alpha beta gamma" in context

    def test_excluded_ancestor_left_out(self, engine):
        root = answered(engine, "secret", "hidden")
        mid = answered(engine, "mid", "visible", parent_ids=[root])
        leaf = engine.add_card(parent_ids=[mid], prompt="leaf", excluded_context_node_ids=[root])

        context = engine.context_builder.build_context(leaf)

        assert "hidden" not in context
        assert "visible" in context

    def test_summarized_ancestor(self, clock):
        engine = CanvasEngine(settings=Settings(use_summarization=True), clock=clock)
        root = answered(engine, "root", "x" * 400)
        mid = answered(engine, "mid", "m", parent_ids=[root])
        leaf = engine.add_card(parent_ids=[mid], prompt="leaf")

        context = engine.context_builder.build_context(leaf)

        assert "Answer summary: " + "x" * 300 + "..." in context


class TestCardGenerator:
    async def test_generate_commits_response(self, engine, search_index):
        generator = engine.set_model(FakeListChatModel(responses=["fresh answer"]))
        card_id = answered(engine, "Q", "old answer")
        engine.store.set_flags(card_id, is_stale=True)

        assert await generator.generate(card_id) is True
        await engine.index_sync.drain()

        card = engine.get_card(card_id)
        assert card.response == "fresh answer"
        assert card.is_stale is False
        assert card.is_generating is False
        assert card.last_context_fingerprint == engine.fingerprint(card_id)
        assert search_index.documents[card_id].preview == "fresh answer"
        assert metrics.get_counter("generation.completed") == 1

    async def test_batch_regeneration_end_to_end(self, engine):
        generator = engine.set_model(FakeListChatModel(responses=["A2", "B2"]))
        a = answered(engine, "A", "A1")
        b = answered(engine, "B", "B1", parent_ids=[a])
        engine.patch_card(a, {"prompt": "A edited"})
        assert engine.stale_count() == 2

        engine.regenerate_stale_cards()
        await generator.wait_idle()

        assert engine.get_card(a).response == "A2"
        assert engine.get_card(b).response == "B2"
        assert engine.stale_count() == 0
        assert engine.get_regeneration_progress().status == SchedulerStatus.IDLE
        assert engine.get_regeneration_progress().completed == 2

    async def test_failure_keeps_card_stale_and_advances(self, engine):
        generator = engine.set_model(BrokenChatModel(responses=["unused"]))
        a = answered(engine, "A", "A1")
        saved = engine.get_card(a).last_context_fingerprint
        engine.patch_card(a, {"prompt": "A edited"})

        engine.regenerate_stale_cards()
        await generator.wait_idle()

        card = engine.get_card(a)
        assert card.is_stale is True
        assert card.response == "A1"
        assert card.last_context_fingerprint == saved
        assert engine.get_regeneration_progress().status == SchedulerStatus.IDLE
        assert metrics.get_counter("generation.failures") == 1

    async def test_summary_from_model(self, clock):
        engine = CanvasEngine(settings=Settings(use_summarization=True), clock=clock)
        generator = engine.set_model(FakeListChatModel(responses=["long answer", "short summary"]))
        card_id = answered(engine, "Q", "old")

        await generator.generate(card_id)

        assert engine.get_card(card_id).summary == "short summary"

    async def test_summary_falls_back_to_prefix(self, clock):
        engine = CanvasEngine(settings=Settings(use_summarization=True), clock=clock)
        generator = engine.set_model(
            FakeListChatModel(responses=["y" * 250]),
            summary_model=BrokenChatModel(responses=["unused"]),
        )
        card_id = answered(engine, "Q", "old")

        await generator.generate(card_id)

        assert engine.get_card(card_id).summary == "y" * 200 + "..."
        assert metrics.get_counter("summary.fallbacks") == 1
