"""
Tests for GenerationOrchestrator.

Runs the submit state machine against a real store in a temp directory and
a fake OpenRouter client.
"""

import asyncio

import httpx
import pytest

from promptcanvas.clients.openrouter_client import (
    Balance,
    ChatMessage,
    ImageModel,
    OpenRouterClient,
    OpenRouterError,
    OpenRouterResponseError,
)
from promptcanvas.orchestrator import GenerationContext, GenerationOrchestrator, generate_random_seed
from promptcanvas.prompts import SYSTEM_PROMPT, UPSCALE_PROMPT
from promptcanvas.store.models import DEFAULT_SUMMARY_TITLE, GENERATING_SENTINEL
from promptcanvas.store.preferences import (
    PREF_API_KEY,
    PREF_DEFAULT_ASPECT_RATIO,
    PREF_DEFAULT_RESOLUTION,
    PREF_SELECTED_MODEL,
)
from tests.helpers.fixtures import build_generation_result, png_data_url


async def submit_and_settle(orchestrator, prompt, **kwargs):
    entry = await orchestrator.submit(prompt, **kwargs)
    await orchestrator.wait_for_background()
    return entry


class TestSubmit:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_first_submit_persists_entry(self, orchestrator, store, fake_client):
        entry = await submit_and_settle(orchestrator, "a cat", resolution="2K")

        assert entry is not None
        assert await store.conversations.list() == [1000]
        conversation = await store.conversations.load(1000)
        assert len(conversation.entries) == 1
        persisted = conversation.entries[0]
        assert persisted.message.text == "a cat"
        assert persisted.message.seed == 42
        assert persisted.message.system_prompt == SYSTEM_PROMPT
        assert persisted.response.image_filenames == ["1"]
        assert persisted.response.image_resolutions == ["2K"]
        assert persisted.response.text == "Here is your image"
        assert persisted.response.response_data["id"] == "gen-1"
        assert "images" not in persisted.response.response_data["choices"][0]["message"]
        assert await store.conversations.get_image(1000, 1) is not None

    @pytest.mark.asyncio
    async def test_remote_call_parameters(self, orchestrator, fake_client):
        await submit_and_settle(orchestrator, "  a cat  ", resolution="2K", aspect_ratio="16:9")

        call = fake_client.generate_calls[0]
        assert call.api_key == "sk-test"
        assert call.prompt == "a cat"
        assert call.model == "test/image-model"
        assert call.system_prompt == SYSTEM_PROMPT
        assert call.history == []
        assert call.seed == 42
        assert call.image_config.image_size == "2K"
        assert call.image_config.aspect_ratio == "16:9"
        assert call.image_input is None

    @pytest.mark.asyncio
    async def test_context_defaults_used(self, orchestrator, fake_client):
        orchestrator.context.resolution = "4K"
        orchestrator.context.aspect_ratio = "3:2"
        await submit_and_settle(orchestrator, "a cat")

        call = fake_client.generate_calls[0]
        assert call.image_config.image_size == "4K"
        assert call.image_config.aspect_ratio == "3:2"

    @pytest.mark.asyncio
    async def test_placeholder_shown_before_result(self, orchestrator, listener):
        await submit_and_settle(orchestrator, "a cat", resolution="2K")

        names = listener.names()
        assert names.index("placeholder_created") < names.index("entry_finalized")
        placeholder_view = listener.payloads("placeholder_created")[0]
        assert placeholder_view.entries[0].response.image_filenames == [GENERATING_SENTINEL]
        assert placeholder_view.entries[0].response.image_resolutions == ["2K"]
        final_view = listener.payloads("entry_finalized")[0]
        assert final_view.entries[0].response.image_filenames == ["1"]

    @pytest.mark.asyncio
    async def test_first_entry_gets_title_and_counts(self, orchestrator, store, fake_client, listener):
        await submit_and_settle(orchestrator, "a cat")

        summary = await store.summaries.load(1000)
        assert summary.title == "A Cat Portrait"
        assert summary.image_count == 1
        assert summary.entry_count == 1
        assert summary.created == 1000
        assert fake_client.title_calls == [("a cat", "google/gemma-3n-e4b-it")]
        assert ("conversations_changed", [1000]) in listener.events
        assert listener.payloads("summary_updated")[-1][1].title == "A Cat Portrait"

    @pytest.mark.asyncio
    async def test_title_failure_keeps_default(self, orchestrator, store, fake_client, listener):
        fake_client.title = OpenRouterError("Failed to generate title: 500 - boom", status_code=500)
        await submit_and_settle(orchestrator, "a cat")

        summary = await store.summaries.load(1000)
        assert summary.title == DEFAULT_SUMMARY_TITLE
        assert summary.image_count == 1
        assert listener.payloads("error") == []

    @pytest.mark.asyncio
    async def test_second_turn_sends_history_and_recounts(self, orchestrator, store, fake_client):
        await submit_and_settle(orchestrator, "a cat")
        fake_client.generate_results.append(build_generation_result(images=2, generation_id="gen-2"))
        await submit_and_settle(orchestrator, "make it orange")

        call = fake_client.generate_calls[1]
        assert call.history == [
            ChatMessage(role="user", content="a cat"),
            ChatMessage(role="assistant", content="Here is your image"),
        ]
        conversation = await store.conversations.load(1000)
        assert [e.response.image_filenames for e in conversation.entries] == [["1"], ["2", "3"]]

        summary = await store.summaries.load(1000)
        assert summary.entry_count == 2
        assert summary.image_count == 3
        assert summary.title == "A Cat Portrait"
        # Only the first entry generates a title
        assert len(fake_client.title_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_assistant_text_uses_default(self, orchestrator, fake_client):
        fake_client.generate_results.append(build_generation_result(content=None))
        await submit_and_settle(orchestrator, "a cat")
        assert orchestrator.context.conversation_history[-1] == ChatMessage(
            role="assistant", content="Image generated"
        )

    @pytest.mark.asyncio
    async def test_undecodable_images_dropped(self, orchestrator, store, fake_client):
        fake_client.generate_results.append(
            build_generation_result(urls=[png_data_url(), "data:image/png;base64,@@@", png_data_url()])
        )
        entry = await submit_and_settle(orchestrator, "a cat", resolution="1K")

        assert entry.response.image_filenames == ["1", "2"]
        assert entry.response.image_resolutions == ["1K", "1K"]
        assert (await store.summaries.load(1000)).image_count == 2


class TestSubmitFailures:
    """Tests for validation, rollback and the in-flight guard."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "api_key,model,prompt,message",
        [
            ("", "m", "a cat", "Please enter your API key first"),
            ("sk", "m", "   ", "Please enter a prompt"),
            ("sk", None, "a cat", "Please select a model first"),
        ],
    )
    async def test_validation(self, orchestrator, store, listener, fake_client, api_key, model, prompt, message):
        orchestrator.context.api_key = api_key
        orchestrator.context.selected_model = model

        assert await orchestrator.submit(prompt) is None
        assert listener.payloads("error") == [message]
        assert fake_client.generate_calls == []
        assert await store.conversations.list() == []
        assert orchestrator.context.is_generating is False

    @pytest.mark.asyncio
    async def test_remote_failure_rolls_back(self, orchestrator, store, fake_client, listener):
        fake_client.generate_results.append(
            OpenRouterError("Failed to generate image: 500 - boom", status_code=500)
        )
        assert await submit_and_settle(orchestrator, "a cat") is None

        assert listener.names()[:3] == ["placeholder_created", "placeholder_removed", "error"]
        assert listener.payloads("error") == ["Failed to generate image: 500 - boom"]
        assert orchestrator.context.current_conversation.entries == []
        assert orchestrator.context.conversation_history == []
        assert orchestrator.context.is_generating is False
        assert await store.conversations.load(1000) is None
        assert await store.summaries.load(1000) is None

    @pytest.mark.asyncio
    async def test_failure_keeps_earlier_entries(self, orchestrator, store, fake_client):
        await submit_and_settle(orchestrator, "a cat")
        fake_client.generate_results.append(httpx.ConnectError("connection refused"))
        assert await submit_and_settle(orchestrator, "a dog") is None

        assert len(orchestrator.context.current_conversation.entries) == 1
        assert len(orchestrator.context.conversation_history) == 2
        assert len((await store.conversations.load(1000)).entries) == 1

    @pytest.mark.asyncio
    async def test_zero_images_is_failure(self, orchestrator, store, fake_client, listener):
        fake_client.generate_results.append(build_generation_result(images=0, content="I can't draw that"))
        assert await submit_and_settle(orchestrator, "a cat") is None

        assert listener.payloads("error") == ["No images were returned by the model"]
        assert orchestrator.context.current_conversation.entries == []
        assert await store.conversations.next_image_index(1000) == 1

    @pytest.mark.asyncio
    async def test_all_images_undecodable_is_failure(self, orchestrator, fake_client, listener):
        fake_client.generate_results.append(build_generation_result(urls=["data:image/png;base64,@@@"]))
        assert await submit_and_settle(orchestrator, "a cat") is None
        assert "placeholder_removed" in listener.names()

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, orchestrator, store, fake_client):
        fake_client.generate_results.append(OpenRouterError("boom"))
        await submit_and_settle(orchestrator, "a cat")
        entry = await submit_and_settle(orchestrator, "a cat")

        assert entry.response.image_filenames == ["1"]
        assert (await store.summaries.load(1000)).title == "A Cat Portrait"

    @pytest.mark.asyncio
    async def test_guard_rejects_reentrant_submit(self, orchestrator, fake_client, listener):
        orchestrator.context.is_generating = True
        assert await orchestrator.submit("a cat") is None
        assert fake_client.generate_calls == []
        assert listener.events == []

    @pytest.mark.asyncio
    async def test_concurrent_submits_run_once(self, orchestrator, fake_client):
        results = await asyncio.gather(orchestrator.submit("a cat"), orchestrator.submit("a dog"))
        await orchestrator.wait_for_background()

        assert len(fake_client.generate_calls) == 1
        assert sum(1 for r in results if r is not None) == 1

    @pytest.mark.asyncio
    async def test_same_second_conversations_merge(self, orchestrator, store):
        await submit_and_settle(orchestrator, "a cat")
        orchestrator.new_conversation()
        await submit_and_settle(orchestrator, "a dog")

        assert await store.conversations.list() == [1000]
        conversation = await store.conversations.load(1000)
        assert [e.message.text for e in conversation.entries] == ["a cat", "a dog"]


class TestEnrichment:
    """Tests for background usage/cost enrichment."""

    @pytest.mark.asyncio
    async def test_usage_attached_after_retry(self, orchestrator, store, fake_client):
        fake_client.generation_info = [
            OpenRouterError("not ready", status_code=404),
            {"id": "gen-1", "total_cost": 0.04},
        ]
        await submit_and_settle(orchestrator, "a cat")

        assert fake_client.info_calls == ["gen-1", "gen-1"]
        conversation = await store.conversations.load(1000)
        assert conversation.entries[0].response.generation_data == {"id": "gen-1", "total_cost": 0.04}
        current = orchestrator.context.current_conversation
        assert current.entries[0].response.generation_data == {"id": "gen-1", "total_cost": 0.04}

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_retries(self, orchestrator, store, fake_client):
        await submit_and_settle(orchestrator, "a cat")

        assert fake_client.info_calls == ["gen-1"] * 3
        conversation = await store.conversations.load(1000)
        assert conversation.entries[0].response.generation_data is None

    @pytest.mark.asyncio
    async def test_malformed_usage_response_is_retried(self, orchestrator, store, fake_client):
        fake_client.generation_info = [
            OpenRouterResponseError("Failed to fetch generation info: response is not a JSON object"),
            {"id": "gen-1", "total_cost": 0.04},
        ]
        await submit_and_settle(orchestrator, "a cat")

        assert fake_client.info_calls == ["gen-1", "gen-1"]
        conversation = await store.conversations.load(1000)
        assert conversation.entries[0].response.generation_data == {"id": "gen-1", "total_cost": 0.04}

    @pytest.mark.asyncio
    async def test_no_enrichment_without_generation_id(self, orchestrator, fake_client):
        fake_client.generate_results.append(build_generation_result(generation_id=None))
        await submit_and_settle(orchestrator, "a cat")
        assert fake_client.info_calls == []

    @pytest.mark.asyncio
    async def test_mismatched_generation_id_not_attached(self, orchestrator, store):
        await submit_and_settle(orchestrator, "a cat")
        attached = await orchestrator._attach_generation_data(1000, 0, "gen-other", {"total_cost": 1})

        assert attached is False
        conversation = await store.conversations.load(1000)
        assert conversation.entries[0].response.generation_data is None


class TestRegenerate:
    """Tests for new-seed and upscale variants."""

    @pytest.mark.asyncio
    async def test_new_seed_appends_image(self, orchestrator, store, fake_client):
        await submit_and_settle(orchestrator, "a cat", resolution="2K")
        orchestrator.seed_factory = lambda: 7
        fake_client.generate_results.append(build_generation_result(generation_id="gen-2"))

        entry = await orchestrator.regenerate_with_new_seed(0)
        await orchestrator.wait_for_background()

        assert entry.response.image_filenames == ["1", "2"]
        assert entry.response.image_resolutions == ["2K", "2K"]
        call = fake_client.generate_calls[1]
        assert call.prompt == "a cat"
        assert call.seed == 7
        assert call.image_config.image_size == "2K"
        assert call.history == []

        conversation = await store.conversations.load(1000)
        assert conversation.entries[0].response.image_filenames == ["1", "2"]
        summary = await store.summaries.load(1000)
        assert summary.image_count == 2
        assert summary.entry_count == 1

    @pytest.mark.asyncio
    async def test_new_seed_sends_prior_history(self, orchestrator, fake_client):
        await submit_and_settle(orchestrator, "a cat")
        await submit_and_settle(orchestrator, "a dog")
        await orchestrator.regenerate_with_new_seed(1)

        assert fake_client.generate_calls[-1].history == [
            ChatMessage(role="user", content="a cat"),
            ChatMessage(role="assistant", content="Here is your image"),
        ]

    @pytest.mark.asyncio
    async def test_upscale(self, orchestrator, store, fake_client):
        await submit_and_settle(orchestrator, "a cat", resolution="2K")
        orchestrator.seed_factory = lambda: 999
        image_url = await store.conversations.get_image_data_url(1000, 1)

        entry = await orchestrator.upscale(0)
        await orchestrator.wait_for_background()

        call = fake_client.generate_calls[1]
        assert call.prompt == UPSCALE_PROMPT
        assert call.seed == 42
        assert call.image_input == image_url
        assert call.image_config.image_size == "4K"
        assert entry.response.image_filenames == ["1", "2"]
        assert entry.response.image_resolutions == ["2K", "4K"]

    @pytest.mark.asyncio
    async def test_upscale_noop_at_4k(self, orchestrator, fake_client, listener):
        await submit_and_settle(orchestrator, "a cat", resolution="4K")
        assert await orchestrator.upscale(0) is None
        assert len(fake_client.generate_calls) == 1
        assert listener.payloads("error") == []

    @pytest.mark.asyncio
    async def test_regenerate_failure_leaves_entry(self, orchestrator, store, fake_client, listener):
        await submit_and_settle(orchestrator, "a cat")
        fake_client.generate_results.append(OpenRouterError("boom"))

        assert await orchestrator.regenerate_with_new_seed(0) is None
        assert listener.payloads("error") == ["boom"]
        conversation = await store.conversations.load(1000)
        assert conversation.entries[0].response.image_filenames == ["1"]
        assert orchestrator.context.is_generating is False

    @pytest.mark.asyncio
    async def test_regenerate_unknown_entry(self, orchestrator, listener):
        await submit_and_settle(orchestrator, "a cat")
        assert await orchestrator.regenerate_with_new_seed(5) is None
        assert listener.payloads("error") == ["Entry 5 not found"]

    @pytest.mark.asyncio
    async def test_regenerate_guarded(self, orchestrator, fake_client):
        await submit_and_settle(orchestrator, "a cat")
        orchestrator.context.is_generating = True
        assert await orchestrator.upscale(0) is None
        assert len(fake_client.generate_calls) == 1


class TestSession:
    """Tests for connect, preferences and conversation navigation."""

    @pytest.mark.asyncio
    async def test_connect_restores_saved_model(self, orchestrator, store, fake_client, listener):
        fake_client.models = [ImageModel(id="a/img", name="A"), ImageModel(id="b/img", name="B")]
        fake_client.balance = Balance(total_credits=10.0, total_usage=2.0)
        await store.preferences.set(PREF_SELECTED_MODEL, "b/img")

        models = await orchestrator.connect(" sk-new ")

        assert [m.id for m in models] == ["a/img", "b/img"]
        assert orchestrator.context.api_key == "sk-new"
        assert orchestrator.context.selected_model == "b/img"
        assert await store.preferences.get(PREF_API_KEY) == "sk-new"
        assert listener.payloads("models_loaded")[0][1] == "b/img"
        assert listener.payloads("balance_updated") == [fake_client.balance]

    @pytest.mark.asyncio
    async def test_connect_selects_first_model(self, orchestrator, fake_client):
        fake_client.models = [ImageModel(id="a/img", name="A")]
        await orchestrator.connect("sk")
        assert orchestrator.context.selected_model == "a/img"

    @pytest.mark.asyncio
    async def test_connect_empty_key(self, orchestrator, listener):
        assert await orchestrator.connect("  ") == []
        assert orchestrator.context.selected_model is None
        assert listener.payloads("balance_updated") == [None]

    @pytest.mark.asyncio
    async def test_connect_survives_non_object_bodies(self, store, listener, config):
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[1, 2]))
        )
        async with OpenRouterClient(http_client=http_client) as client:
            orchestrator = GenerationOrchestrator(store, client, listener, config=config)
            assert await orchestrator.connect("sk-test") == []
        await http_client.aclose()

        assert listener.payloads("error")[0].startswith("Failed to fetch models")
        assert listener.payloads("balance_updated") == [None]

    @pytest.mark.asyncio
    async def test_balance_failure_is_silent(self, orchestrator, fake_client, listener):
        fake_client.balance_error = httpx.ConnectError("offline")
        assert await orchestrator.refresh_balance() is None
        assert listener.payloads("balance_updated") == [None]
        assert listener.payloads("error") == []

    @pytest.mark.asyncio
    async def test_balance_refreshed_after_submit(self, orchestrator, fake_client, listener):
        fake_client.balance = Balance(total_credits=5.0, total_usage=1.0)
        await submit_and_settle(orchestrator, "a cat")
        assert listener.payloads("balance_updated") == [fake_client.balance]

    @pytest.mark.asyncio
    async def test_preferences_round_trip(self, orchestrator, store):
        await orchestrator.select_model("x/model")
        await orchestrator.set_resolution("2K")
        await orchestrator.set_aspect_ratio("16:9")

        context = GenerationContext()
        fresh = GenerationOrchestrator(
            store, orchestrator.client, config=orchestrator.config, context=context
        )
        await fresh.load_preferences()
        assert context.selected_model == "x/model"
        assert context.resolution == "2K"
        assert context.aspect_ratio == "16:9"

    @pytest.mark.asyncio
    async def test_invalid_settings(self, orchestrator, store):
        with pytest.raises(ValueError):
            await orchestrator.set_resolution("8K")
        with pytest.raises(ValueError):
            await orchestrator.set_aspect_ratio("7:5")

        await store.preferences.set(PREF_DEFAULT_RESOLUTION, "8K")
        await store.preferences.set(PREF_DEFAULT_ASPECT_RATIO, "7:5")
        context = await orchestrator.load_preferences()
        assert context.resolution == "1K"
        assert context.aspect_ratio == "1:1"

    @pytest.mark.asyncio
    async def test_open_conversation_rebuilds_history(self, orchestrator, listener):
        await submit_and_settle(orchestrator, "a cat")
        orchestrator.new_conversation()
        assert orchestrator.context.conversation_history == []

        conversation = await orchestrator.open_conversation(1000)
        assert conversation.timestamp == 1000
        assert orchestrator.context.conversation_history == [
            ChatMessage(role="user", content="a cat"),
            ChatMessage(role="assistant", content="Here is your image"),
        ]
        assert listener.payloads("conversation_loaded")[-1] is conversation

    @pytest.mark.asyncio
    async def test_open_missing_conversation(self, orchestrator, listener):
        assert await orchestrator.open_conversation(4242) is None
        assert listener.payloads("error") == ["Conversation 4242 not found"]

    @pytest.mark.asyncio
    async def test_delete_current_conversation(self, orchestrator, store, listener):
        await submit_and_settle(orchestrator, "a cat")
        assert await orchestrator.delete_conversation(1000) is True

        assert orchestrator.context.current_conversation is None
        assert await store.conversations.list() == []
        assert listener.payloads("conversations_changed")[-1] == []

    @pytest.mark.asyncio
    async def test_list_conversations(self, orchestrator, clock):
        await submit_and_settle(orchestrator, "a cat")
        orchestrator.new_conversation()
        clock.now = 2000
        await submit_and_settle(orchestrator, "a dog")

        items = await orchestrator.list_conversations()
        assert [ts for ts, _ in items] == [2000, 1000]
        assert all(summary.entry_count == 1 for _, summary in items)


def test_random_seed_range():
    for _ in range(100):
        seed = generate_random_seed()
        assert 0 <= seed < 0x7FFFFFFF
