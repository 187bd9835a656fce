"""
Generation Orchestrator

Turns one user prompt into a persisted conversation turn:

1. Guard: a single in-flight generation per session (context.is_generating)
2. Validate API key, prompt and model
3. Append and show a placeholder entry
4. Call the remote API (rolled back on failure or when no image came back)
5. Store images, replace the placeholder, persist the conversation
6. Reconcile the summary in the background (title for new conversations)
7. Attach usage/cost data in the background, with bounded retries
8. Clear the guard and refresh the balance (best-effort)

Everything after step 5 is best-effort: failures are logged, never shown.
"""

import asyncio
import functools
import logging
import random
from typing import List, Optional, Tuple

import httpx

from ..clients.openrouter_client import (
    Balance,
    ChatMessage,
    GenerationResult,
    ImageConfig,
    ImageModel,
    OpenRouterClient,
    OpenRouterError,
)
from ..config import ASPECT_RATIOS, RESOLUTIONS, UPSCALE_RESOLUTION, PromptCanvasConfig, get_config
from ..prompts import SYSTEM_PROMPT, TITLE_GENERATION_PROMPT, UPSCALE_PROMPT
from ..store import Store
from ..store.models import Conversation, ConversationEntry, ConversationSummary, EntryResponse
from ..store.preferences import (
    PREF_API_KEY,
    PREF_DEFAULT_ASPECT_RATIO,
    PREF_DEFAULT_RESOLUTION,
    PREF_SELECTED_MODEL,
)
from .background import BackgroundTasks
from .context import DEFAULT_ASSISTANT_TEXT, GenerationContext, history_from_conversation
from .listener import GenerationListener

logger = logging.getLogger(__name__)

MAX_SEED = 0x7FFFFFFF


class GenerationError(Exception):
    """A generation turn failed and was rolled back."""
    pass


# Failures of the remote call that abort the current turn
REMOTE_ERRORS = (OpenRouterError, httpx.HTTPError, GenerationError)


def generate_random_seed() -> int:
    """Random non-negative 31-bit seed for reproducible generation."""
    return random.randrange(MAX_SEED)


def _error_message(error: Exception) -> str:
    return str(error) or error.__class__.__name__


class GenerationOrchestrator:
    """
    End-to-end state machine for user-initiated generations.

    The context is the only session state; the store is the only
    persistence. Background work is keyed by conversation timestamp.
    """

    def __init__(
        self,
        store: Store,
        client: OpenRouterClient,
        listener: Optional[GenerationListener] = None,
        config: Optional[PromptCanvasConfig] = None,
        context: Optional[GenerationContext] = None,
        seed_factory=generate_random_seed,
    ):
        self.store = store
        self.client = client
        self.listener = listener or GenerationListener()
        self.config = config or get_config()
        self.context = context or GenerationContext(
            api_key=self.config.api.api_key or "",
            resolution=self.config.generation.default_resolution,
            aspect_ratio=self.config.generation.default_aspect_ratio,
        )
        self.seed_factory = seed_factory
        self.background = BackgroundTasks()

    @property
    def repository(self):
        return self.store.conversations

    @property
    def summaries(self):
        return self.store.summaries

    @property
    def preferences(self):
        return self.store.preferences

    # =========================================================================
    # Session setup
    # =========================================================================

    async def load_preferences(self) -> GenerationContext:
        """Restore API key, model and image settings from the preference store."""
        ctx = self.context
        ctx.api_key = await self.preferences.get(PREF_API_KEY, ctx.api_key or "") or ""
        ctx.selected_model = await self.preferences.get(PREF_SELECTED_MODEL, ctx.selected_model)

        resolution = await self.preferences.get(PREF_DEFAULT_RESOLUTION, ctx.resolution)
        if resolution in RESOLUTIONS:
            ctx.resolution = resolution
        aspect_ratio = await self.preferences.get(PREF_DEFAULT_ASPECT_RATIO, ctx.aspect_ratio)
        if aspect_ratio in ASPECT_RATIOS:
            ctx.aspect_ratio = aspect_ratio
        return ctx

    async def connect(self, api_key: str) -> List[ImageModel]:
        """
        Use an API key: persist it, load image models and refresh the balance.

        The previously selected model is restored when still available,
        otherwise the first model is selected.
        """
        ctx = self.context
        ctx.api_key = (api_key or "").strip()
        if not ctx.api_key:
            ctx.selected_model = None
            self.listener.on_models_loaded([], None)
            self.listener.on_balance_updated(None)
            return []

        await self.preferences.set(PREF_API_KEY, ctx.api_key)

        models: List[ImageModel] = []
        try:
            models = await self.client.fetch_models(ctx.api_key)
        except REMOTE_ERRORS as e:
            logger.error("[orchestrator] Error fetching models: %s", e)
            self.listener.on_error(f"Failed to fetch models: {_error_message(e)}")
        else:
            saved = await self.preferences.get(PREF_SELECTED_MODEL)
            model_ids = [m.id for m in models]
            if saved in model_ids:
                ctx.selected_model = saved
            elif model_ids:
                ctx.selected_model = model_ids[0]
            else:
                ctx.selected_model = None
            self.listener.on_models_loaded(models, ctx.selected_model)

        await self.refresh_balance()
        return models

    async def select_model(self, model_id: str) -> None:
        self.context.selected_model = model_id
        await self.preferences.set(PREF_SELECTED_MODEL, model_id)

    async def set_resolution(self, resolution: str) -> None:
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unknown resolution '{resolution}', expected one of {RESOLUTIONS}")
        self.context.resolution = resolution
        await self.preferences.set(PREF_DEFAULT_RESOLUTION, resolution)

    async def set_aspect_ratio(self, aspect_ratio: str) -> None:
        if aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(
                f"Unknown aspect ratio '{aspect_ratio}', expected one of {ASPECT_RATIOS}"
            )
        self.context.aspect_ratio = aspect_ratio
        await self.preferences.set(PREF_DEFAULT_ASPECT_RATIO, aspect_ratio)

    # =========================================================================
    # Conversation navigation
    # =========================================================================

    def new_conversation(self) -> None:
        """Start a fresh conversation; its directory is created on first submit."""
        self.context.reset_conversation()
        self.listener.on_conversation_loaded(None)

    async def open_conversation(self, timestamp: int) -> Optional[Conversation]:
        """Make a stored conversation current and rebuild its model context."""
        conversation = await self.repository.load(timestamp)
        if conversation is None:
            self.listener.on_error(f"Conversation {timestamp} not found")
            return None
        self.context.current_conversation = conversation
        self.context.conversation_history = history_from_conversation(conversation)
        self.listener.on_conversation_loaded(conversation)
        return conversation

    async def delete_conversation(self, timestamp: int) -> bool:
        removed = await self.repository.delete(timestamp)
        if self.context.current_timestamp == timestamp:
            self.new_conversation()
        self.listener.on_conversations_changed(await self.repository.list())
        return removed

    async def list_conversations(self) -> List[Tuple[int, Optional[ConversationSummary]]]:
        """Timestamps (most recent first) with their cached summaries."""
        result = []
        for timestamp in await self.repository.list():
            result.append((timestamp, await self.summaries.load(timestamp)))
        return result

    # =========================================================================
    # Main flow
    # =========================================================================

    def validate(self, prompt: str) -> Optional[str]:
        """Return a user-visible message for the first failing check, or None."""
        ctx = self.context
        if not ctx.api_key:
            return "Please enter your API key first"
        if not prompt or not prompt.strip():
            return "Please enter a prompt"
        if not ctx.selected_model:
            return "Please select a model first"
        return None

    async def submit(
        self,
        prompt: str,
        resolution: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
    ) -> Optional[ConversationEntry]:
        """
        Run one generation round for the current conversation.

        Returns:
            The persisted entry, or None when rejected or failed
        """
        ctx = self.context
        if ctx.is_generating:
            logger.debug("[orchestrator] Generation already in progress, ignoring submit")
            return None

        error = self.validate(prompt)
        if error:
            self.listener.on_error(error)
            return None

        # Checked and set in the same step: no await in between
        ctx.is_generating = True
        try:
            return await self._generate(
                prompt.strip(),
                resolution or ctx.resolution,
                aspect_ratio or ctx.aspect_ratio,
            )
        finally:
            ctx.is_generating = False
            self._schedule_balance_refresh()

    async def _ensure_conversation(self) -> Conversation:
        ctx = self.context
        if ctx.current_conversation is not None:
            return ctx.current_conversation

        timestamp = await self.repository.create()
        conversation = await self.repository.load(timestamp)
        if conversation is None:
            conversation = Conversation(timestamp=timestamp)
        else:
            # Created within the same second as an existing conversation
            logger.warning(
                "[orchestrator] Conversation %s already exists, appending to it", timestamp
            )
        ctx.current_conversation = conversation
        ctx.conversation_history = history_from_conversation(conversation)
        return conversation

    async def _generate(
        self,
        prompt: str,
        resolution: str,
        aspect_ratio: str,
    ) -> Optional[ConversationEntry]:
        ctx = self.context
        api_key = ctx.api_key
        conversation = await self._ensure_conversation()
        timestamp = conversation.timestamp
        seed = self.seed_factory()

        history = list(ctx.conversation_history)
        user_message = ChatMessage(role="user", content=prompt)
        ctx.conversation_history.append(user_message)

        placeholder = ConversationEntry.placeholder(prompt, SYSTEM_PROMPT, seed, resolution)
        conversation.entries.append(placeholder)
        entry_index = len(conversation.entries) - 1
        self.listener.on_placeholder_created(conversation)

        try:
            result = await self.client.generate_image(
                api_key,
                prompt,
                ctx.selected_model,
                SYSTEM_PROMPT,
                history,
                ImageConfig(image_size=resolution, aspect_ratio=aspect_ratio),
                seed=seed,
            )
            if not result.has_images:
                raise GenerationError("No images were returned by the model")

            filenames = await self._store_images(timestamp, result)
            if not filenames:
                raise GenerationError("None of the returned images could be saved")
        except REMOTE_ERRORS as e:
            logger.error("[orchestrator] Generation failed for %s: %s", timestamp, e)
            self._rollback(conversation, placeholder, user_message)
            self.listener.on_error(_error_message(e))
            return None

        entry = ConversationEntry(
            message=placeholder.message,
            response=EntryResponse(
                text=result.content,
                image_filenames=filenames,
                image_resolutions=[resolution] * len(filenames),
                response_data=result.stripped_payload(),
                generation_data=None,
            ),
        )
        conversation.entries[entry_index] = entry
        if not await self._save_conversation(conversation):
            self.listener.on_error("Failed to save conversation")

        if ctx.current_conversation is conversation:
            ctx.conversation_history.append(
                ChatMessage(role="assistant", content=result.content or DEFAULT_ASSISTANT_TEXT)
            )
        self.listener.on_entry_finalized(conversation)

        if entry_index == 0:
            self.background.schedule(
                (timestamp, "title"),
                functools.partial(self._reconcile_new_conversation, timestamp, prompt, api_key),
            )
        else:
            self._schedule_summary_recompute(timestamp)

        if result.id:
            self.background.schedule(
                (timestamp, "usage", entry_index),
                functools.partial(self._enrich, timestamp, entry_index, result.id, api_key),
            )
        return entry

    def _rollback(
        self,
        conversation: Conversation,
        placeholder: ConversationEntry,
        user_message: ChatMessage,
    ) -> None:
        """Remove the placeholder and the pushed user turn."""
        ctx = self.context
        if conversation.entries and conversation.entries[-1] is placeholder:
            conversation.entries.pop()
        else:
            conversation.entries = [e for e in conversation.entries if e is not placeholder]
        if ctx.conversation_history and ctx.conversation_history[-1] is user_message:
            ctx.conversation_history.pop()
        self.listener.on_placeholder_removed(conversation)

    async def _store_images(self, timestamp: int, result: GenerationResult) -> List[str]:
        """Save every decodable image; the rest are dropped."""
        filenames = []
        for image in result.images:
            index = await self.repository.save_image(timestamp, image.url)
            if index is None:
                continue
            filenames.append(str(index))
        dropped = len(result.images) - len(filenames)
        if dropped:
            logger.warning(
                "[orchestrator] Dropped %d of %d image(s) for %s",
                dropped,
                len(result.images),
                timestamp,
            )
        return filenames

    async def _save_conversation(self, conversation: Conversation) -> bool:
        """Persist a conversation without any in-flight placeholder."""
        if any(entry.is_pending for entry in conversation.entries):
            conversation = Conversation(
                timestamp=conversation.timestamp,
                entries=[e for e in conversation.entries if not e.is_pending],
            )
        return await self.repository.save(conversation.timestamp, conversation)

    # =========================================================================
    # Regeneration variants
    # =========================================================================

    async def regenerate_with_new_seed(
        self,
        entry_index: int,
        image_position: int = 0,
    ) -> Optional[ConversationEntry]:
        """Generate another image for an entry with a fresh seed and append it."""
        return await self._regenerate(entry_index, image_position, upscale=False)

    async def upscale(
        self,
        entry_index: int,
        image_position: int = 0,
    ) -> Optional[ConversationEntry]:
        """Re-render an image at 4K with its original seed and append it. No-op at 4K."""
        return await self._regenerate(entry_index, image_position, upscale=True)

    async def _regenerate(
        self,
        entry_index: int,
        image_position: int,
        upscale: bool,
    ) -> Optional[ConversationEntry]:
        ctx = self.context
        if ctx.is_generating:
            logger.debug("[orchestrator] Generation already in progress, ignoring regenerate")
            return None

        conversation = ctx.current_conversation
        error = None
        entry = None
        if not ctx.api_key:
            error = "Please enter your API key first"
        elif not ctx.selected_model:
            error = "Please select a model first"
        elif conversation is None or not 0 <= entry_index < len(conversation.entries):
            error = f"Entry {entry_index} not found"
        else:
            entry = conversation.entries[entry_index]
            if entry.is_pending or not 0 <= image_position < len(entry.response.image_filenames):
                error = f"Image {image_position} of entry {entry_index} not found"
        if error:
            self.listener.on_error(error)
            return None

        resolution = entry.response.image_resolutions[image_position]
        if upscale and resolution == UPSCALE_RESOLUTION:
            logger.info("[orchestrator] Image is already %s, skipping upscale", resolution)
            return None

        ctx.is_generating = True
        try:
            return await self._generate_variant(
                conversation, entry_index, image_position, resolution, upscale
            )
        finally:
            ctx.is_generating = False
            self._schedule_balance_refresh()

    async def _generate_variant(
        self,
        conversation: Conversation,
        entry_index: int,
        image_position: int,
        resolution: str,
        upscale: bool,
    ) -> Optional[ConversationEntry]:
        ctx = self.context
        timestamp = conversation.timestamp
        entry = conversation.entries[entry_index]

        if upscale:
            image_index = int(entry.response.image_filenames[image_position])
            image_input = await self.repository.get_image_data_url(timestamp, image_index)
            if image_input is None:
                self.listener.on_error(f"Image {image_index} is missing from storage")
                return None
            prompt = UPSCALE_PROMPT
            history: List[ChatMessage] = []
            seed = entry.message.seed
            resolution = UPSCALE_RESOLUTION
        else:
            image_input = None
            prompt = entry.message.text
            history = history_from_conversation(
                Conversation(timestamp=timestamp, entries=conversation.entries[:entry_index])
            )
            seed = self.seed_factory()

        try:
            result = await self.client.generate_image(
                ctx.api_key,
                prompt,
                ctx.selected_model,
                entry.message.system_prompt,
                history,
                ImageConfig(image_size=resolution, aspect_ratio=ctx.aspect_ratio),
                seed=seed,
                image_input=image_input,
            )
            if not result.has_images:
                raise GenerationError("No images were returned by the model")

            filenames = await self._store_images(timestamp, result)
            if not filenames:
                raise GenerationError("None of the returned images could be saved")
        except REMOTE_ERRORS as e:
            logger.error("[orchestrator] Regeneration failed for %s: %s", timestamp, e)
            self.listener.on_error(_error_message(e))
            return None

        entry.response.image_filenames.extend(filenames)
        entry.response.image_resolutions.extend([resolution] * len(filenames))
        if not await self._save_conversation(conversation):
            self.listener.on_error("Failed to save conversation")
        self.listener.on_entry_finalized(conversation)
        self._schedule_summary_recompute(timestamp)
        return entry

    # =========================================================================
    # Background work
    # =========================================================================

    def _schedule_summary_recompute(self, timestamp: int) -> None:
        self.background.schedule(
            (timestamp, "summary"),
            functools.partial(self._recompute_summary, timestamp),
        )

    def _schedule_balance_refresh(self) -> None:
        self.background.schedule(("balance",), self.refresh_balance)

    async def _recompute_summary(self, timestamp: int) -> Optional[ConversationSummary]:
        summary = await self.summaries.recompute(timestamp)
        if summary is not None:
            self.listener.on_summary_updated(timestamp, summary)
        return summary

    async def _reconcile_new_conversation(
        self,
        timestamp: int,
        prompt: str,
        api_key: str,
    ) -> Optional[ConversationSummary]:
        """Initialize the summary, refresh the list, then patch in a generated title."""
        await self.summaries.initialize(timestamp)
        summary = await self.summaries.recompute(timestamp)
        self.listener.on_conversations_changed(await self.repository.list())

        title = await self._generate_title(prompt, api_key)
        if not title:
            return summary

        summary = await self.summaries.recompute(timestamp, title=title)
        if summary is not None:
            logger.info("[orchestrator] Titled conversation %s: %s", timestamp, title)
            self.listener.on_summary_updated(timestamp, summary)
        return summary

    async def _generate_title(self, prompt: str, api_key: str) -> str:
        if not api_key:
            return ""
        try:
            return await self.client.generate_title(
                api_key, prompt, TITLE_GENERATION_PROMPT, self.config.api.title_model
            )
        except (OpenRouterError, httpx.HTTPError) as e:
            logger.warning("[orchestrator] Error generating title: %s", e)
            return ""

    async def _enrich(
        self,
        timestamp: int,
        entry_index: int,
        generation_id: str,
        api_key: str,
    ) -> bool:
        """Poll usage/cost data and attach it to the persisted entry."""
        retries = self.config.generation.usage_retries
        delay = self.config.generation.usage_retry_delay

        for attempt in range(1, retries + 1):
            await asyncio.sleep(delay)
            try:
                data = await self.client.get_generation_info(api_key, generation_id)
            except (OpenRouterError, httpx.HTTPError) as e:
                logger.debug(
                    "[orchestrator] Usage lookup %d/%d for %s failed: %s",
                    attempt,
                    retries,
                    generation_id,
                    e,
                )
                continue
            return await self._attach_generation_data(timestamp, entry_index, generation_id, data)

        logger.info(
            "[orchestrator] No usage data for %s after %d attempts", generation_id, retries
        )
        return False

    async def _attach_generation_data(
        self,
        timestamp: int,
        entry_index: int,
        generation_id: str,
        data: dict,
    ) -> bool:
        # The in-memory copy is the freshest state when it is the current conversation
        current = self.context.current_conversation
        if current is not None and current.timestamp == timestamp:
            conversation = current
        else:
            conversation = await self.repository.load(timestamp)
        if conversation is None or entry_index >= len(conversation.entries):
            return False

        entry = conversation.entries[entry_index]
        if entry.response.generation_id != generation_id:
            logger.debug(
                "[orchestrator] Entry %s/%d no longer holds generation %s",
                timestamp,
                entry_index,
                generation_id,
            )
            return False

        entry.response.generation_data = data
        return await self._save_conversation(conversation)

    async def refresh_balance(self) -> Optional[Balance]:
        """Fetch the balance; failures only downgrade the display."""
        api_key = self.context.api_key
        if not api_key:
            self.listener.on_balance_updated(None)
            return None
        try:
            balance = await self.client.fetch_balance(api_key)
        except (OpenRouterError, httpx.HTTPError) as e:
            logger.warning("[orchestrator] Error fetching balance: %s", e)
            self.listener.on_balance_updated(None)
            return None
        self.listener.on_balance_updated(balance)
        return balance

    async def wait_for_background(self) -> None:
        """Wait for summary, enrichment and balance tasks to finish."""
        await self.background.drain()
