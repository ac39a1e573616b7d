"""
Inbound update handling - routes chat commands to the generation service
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .exceptions import BotError, QuotaUnavailableError, TransientRemoteError
from .services.generation_providers import GRID_SIZE, IMAGE_PROVIDER_CHOICES
from .services.generation_service import REFINE_ACTIONS, GenerationService
from .services.notifier import Notifier, format_stats_message
from .services.quota_service import QuotaStore
from .services.user_service import UserService

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "👋 Send /image <prompt> to draw a picture or /video <prompt> to make a short clip.\n"
    f"Use /upscale <task id> <1-{GRID_SIZE}> or /variation <task id> <1-{GRID_SIZE}> on a Midjourney grid.\n"
    "Use /provider to pick your image provider and /stats to see how many requests you have left."
)

TEXT_FAILED_REPLY = "⚠️ Sorry, I could not answer right now. Please try again later."

TextResponder = Callable[[int, str], Awaitable[str]]


class UpdateHandler:
    """
    Handles one inbound update

    Generation requests run as background tasks so the webhook can answer
    immediately while the remote job is polled. Blocking storage calls run
    in worker threads.
    """

    def __init__(
        self,
        users: UserService,
        generation: GenerationService,
        quota_store: QuotaStore,
        notifier: Notifier,
        text_responder: Optional[TextResponder] = None,
    ):
        self.users = users
        self.generation = generation
        self.quota_store = quota_store
        self.notifier = notifier
        self.text_responder = text_responder
        self._tasks: Set[asyncio.Task] = set()

    async def __call__(self, update: Dict[str, Any]):
        message = update.get("message") or {}
        sender = message.get("from") or {}
        user_id = sender.get("id")
        text = (message.get("text") or "").strip()

        if not user_id or not text:
            logger.debug(f"Ignoring update {update.get('update_id')} without text")
            return

        await asyncio.to_thread(self.users.find_or_create, user_id)

        command, _, argument = text.partition(" ")
        command = command.split("@")[0].lower()
        argument = argument.strip()

        if command in ("/start", "/help"):
            await self._reply(user_id, HELP_TEXT)
        elif command in ("/image", "/video"):
            category = command[1:]
            if not argument:
                await self._reply(user_id, f"Usage: /{category} <prompt>")
                return
            self._spawn(self.generation.generate(user_id, category, argument))
        elif command[1:] in REFINE_ACTIONS:
            await self._handle_refine(user_id, command[1:], argument)
        elif command == "/provider":
            await self._handle_provider(user_id, argument.lower())
        elif command == "/stats":
            await self._send_stats(user_id)
        elif command.startswith("/"):
            await self._reply(user_id, HELP_TEXT)
        else:
            await self._handle_text(user_id, text)

    async def _handle_refine(self, user_id: int, action: str, argument: str):
        parts = argument.split()
        if len(parts) != 2 or not parts[1].isdigit():
            await self._reply(user_id, f"Usage: /{action} <task id> <1-{GRID_SIZE}>")
            return
        task_id, index = parts[0], int(parts[1])
        self._spawn(self.generation.refine(user_id, action, task_id, index))

    async def _handle_provider(self, user_id: int, choice: str):
        if not choice:
            user = await asyncio.to_thread(self.users.find_user, user_id)
            current = (user.image_provider if user is not None else None) or "default"
            options = ", ".join(IMAGE_PROVIDER_CHOICES)
            await self._reply(user_id, f"🎨 Image provider: {current}\nSwitch with /provider <{options}|default>")
            return

        if choice != "default" and choice not in IMAGE_PROVIDER_CHOICES:
            await self._reply(user_id, f"Unknown provider. Choose one of: {', '.join(IMAGE_PROVIDER_CHOICES)}, default")
            return

        await asyncio.to_thread(self.users.set_image_provider, user_id, None if choice == "default" else choice)
        await self._reply(user_id, f"✅ Image provider set to {choice}")

    async def _handle_text(self, user_id: int, text: str):
        if self.text_responder is None:
            await self._reply(user_id, HELP_TEXT)
            return

        outcome = await self.generation.consume_text(user_id)
        if not outcome.accepted:
            return

        try:
            answer = await self.text_responder(user_id, text)
        except BotError as e:
            logger.error(f"Text reply for user {user_id} failed: {e}")
            answer = TEXT_FAILED_REPLY
        await self._reply(user_id, answer)

    async def _send_stats(self, user_id: int):
        try:
            snapshot = await asyncio.to_thread(self.quota_store.get_user_stats, user_id)
        except QuotaUnavailableError as e:
            logger.error(f"Stats unavailable for user {user_id}: {e}")
            await self._reply(user_id, "⚠️ Usage information is temporarily unavailable.")
            return
        await self._reply(user_id, format_stats_message(snapshot.remaining, snapshot.is_premium, snapshot.period.end))

    async def _reply(self, user_id: int, text: str):
        try:
            await self.notifier.send_status(user_id, text)
        except TransientRemoteError as e:
            logger.warning(f"Reply to user {user_id} failed: {e}")

    def _spawn(self, coro: Awaitable):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background generation failed: {error}", exc_info=error)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for all background generations (used at shutdown)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
