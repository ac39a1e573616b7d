"""
Generation Service - quota-governed orchestration of generation requests

Control flow for image/video: admission gate -> quota check -> submit and poll
-> consume on success -> deliver. The gate is released on every exit path.
Storage calls are blocking SQLAlchemy sessions, so they run in worker threads.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import logging

from .admission_gate import AdmissionGate
from .generation_providers import GoApiImageProvider, RemoteGenerationAPI
from .metrics import increment_counter
from .notifier import Notifier, format_busy_message, format_quota_message, format_status_message
from .quota_service import QuotaSnapshot, QuotaStore
from .task_poller import GenerationTask, PollOptions, StatusResponse, TaskPoller, TerminalResult
from .usage_store import ResourceKind
from .user_service import UserService
from ..exceptions import (
    AdmissionConflict,
    BotError,
    ConfigurationError,
    QuotaExhausted,
    QuotaUnavailableError,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)

DECLINED_QUOTA = "quota"
DECLINED_BUSY = "busy"

# Midjourney follow-ups on a finished grid
REFINE_ACTIONS = ("upscale", "variation")


@dataclass
class GenerationOutcome:
    """What happened to one request"""
    category: str
    accepted: bool
    result: Optional[TerminalResult] = None
    declined_reason: Optional[str] = None
    snapshot: Optional[QuotaSnapshot] = None
    remaining: Optional[int] = None
    error: Optional[BotError] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.succeeded


class GenerationService:
    """Orchestrates quota, single-flight admission and task polling per request"""

    def __init__(
        self,
        quota_store: QuotaStore,
        gate: AdmissionGate,
        poller: TaskPoller,
        providers: Dict[str, RemoteGenerationAPI],
        poll_options: Dict[str, PollOptions],
        notifier: Optional[Notifier] = None,
        users: Optional[UserService] = None,
        image_providers: Optional[Dict[str, RemoteGenerationAPI]] = None,
    ):
        """
        Initialize GenerationService

        Args:
            quota_store: Usage limits and counters
            gate: Single-flight guard shared by every request
            poller: Task state machine
            providers: Default provider per category ("image", "video")
            poll_options: Polling budget per category
            notifier: Delivery channel for status and results
            users: Source of per-user provider preferences
            image_providers: Image providers a user may choose, by name
        """
        self.quota_store = quota_store
        self.gate = gate
        self.poller = poller
        self.providers = providers
        self.poll_options = poll_options
        self.notifier = notifier
        self.users = users
        self.image_providers = image_providers or {}

    async def _snapshot(self, user_id: int) -> Optional[QuotaSnapshot]:
        try:
            return await asyncio.to_thread(self.quota_store.get_user_stats, user_id)
        except QuotaUnavailableError as e:
            logger.error(f"Could not load quota snapshot for user {user_id}: {e}")
            return None

    async def _send_status(self, user_id: int, text: str):
        if self.notifier is None:
            return
        try:
            await self.notifier.send_status(user_id, text)
        except TransientRemoteError as e:
            logger.warning(f"Could not notify user {user_id}: {e}")

    async def _decline_quota(self, user_id: int, resource: ResourceKind) -> GenerationOutcome:
        snapshot = await self._snapshot(user_id)
        increment_counter("generation_declined_total", labels={"category": resource.value, "reason": DECLINED_QUOTA})
        logger.info(f"Declined {resource.value} request for user {user_id}: quota exhausted")

        if snapshot is not None:
            await self._send_status(
                user_id, format_quota_message(resource.value, snapshot.remaining, snapshot.is_premium)
            )
        return GenerationOutcome(
            category=resource.value,
            accepted=False,
            declined_reason=DECLINED_QUOTA,
            snapshot=snapshot,
            error=QuotaExhausted(resource.value, snapshot.remaining if snapshot is not None else {}),
        )

    def _charge(self, user_id: int, resource: ResourceKind) -> Optional[int]:
        """Consume one unit after a successful task. Storage failures are logged, not raised."""
        try:
            return self.quota_store.consume(user_id, resource)
        except QuotaUnavailableError as e:
            logger.error(f"Failed to record {resource.value} usage for user {user_id}: {e}")
            return None

    async def _provider_for(self, user_id: int, resource: ResourceKind) -> Optional[RemoteGenerationAPI]:
        """The user's chosen image provider if it is available, else the category default"""
        if resource == ResourceKind.IMAGE and self.users is not None and self.image_providers:
            user = await asyncio.to_thread(self.users.find_user, user_id)
            choice = user.image_provider if user is not None else None
            if choice:
                provider = self.image_providers.get(choice)
                if provider is not None:
                    return provider
                logger.warning(f"User {user_id} prefers unavailable image provider {choice}, using default")
        return self.providers.get(resource.value)

    def _midjourney_provider(self) -> Optional[GoApiImageProvider]:
        for candidate in (self.image_providers.get("goapi"), self.providers.get(ResourceKind.IMAGE.value)):
            if isinstance(candidate, GoApiImageProvider):
                return candidate
        return None

    async def generate(
        self,
        user_id: int,
        category: str,
        prompt: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> GenerationOutcome:
        """
        Run an image or video request end to end

        Args:
            user_id: Telegram user ID
            category: "image" or "video"
            prompt: User prompt
            params: Provider-specific options

        Returns:
            GenerationOutcome (declines are outcomes, not exceptions)
        """
        resource = ResourceKind(category)
        provider = await self._provider_for(user_id, resource)
        if provider is None:
            raise ConfigurationError(f"No provider configured for category: {category}")

        return await self._run(user_id, resource, provider, lambda: provider.submit(prompt, params))

    async def refine(self, user_id: int, action: str, origin_task_id: str, index: int) -> GenerationOutcome:
        """
        Upscale or vary one image of a finished Midjourney grid

        Refinements are image requests: they share the image gate and
        consume one image unit on success.

        Args:
            user_id: Telegram user ID
            action: "upscale" or "variation"
            origin_task_id: Remote id of the imagine task
            index: Grid position, 1-4
        """
        if action not in REFINE_ACTIONS:
            raise ValueError(f"Unknown refine action: {action}")

        provider = self._midjourney_provider()
        if provider is None:
            raise ConfigurationError("Upscale and variation need the GoAPI Midjourney provider")

        submit = provider.upscale if action == "upscale" else provider.variation
        return await self._run(user_id, ResourceKind.IMAGE, provider, lambda: submit(origin_task_id, index))

    async def _run(
        self,
        user_id: int,
        resource: ResourceKind,
        provider: RemoteGenerationAPI,
        submit: Callable[[], Awaitable[str]],
    ) -> GenerationOutcome:
        options = self.poll_options.get(resource.value)
        if options is None:
            raise ConfigurationError(f"No polling configuration for category: {resource.value}")

        if not self.gate.try_acquire(user_id, resource.value):
            increment_counter("generation_declined_total", labels={"category": resource.value, "reason": DECLINED_BUSY})
            logger.info(f"Declined {resource.value} request for user {user_id}: task already in flight")
            await self._send_status(user_id, format_busy_message(resource.value))
            return GenerationOutcome(
                category=resource.value,
                accepted=False,
                declined_reason=DECLINED_BUSY,
                error=AdmissionConflict(user_id, resource.value),
            )

        try:
            if not await asyncio.to_thread(self.quota_store.can_consume, user_id, resource):
                return await self._decline_quota(user_id, resource)

            charged: Dict[str, Optional[int]] = {}

            async def on_status(task: GenerationTask, response: StatusResponse):
                await self._send_status(
                    task.owning_user_id, format_status_message(response.status.value, response.progress)
                )

            async def on_terminal(result: TerminalResult):
                if result.succeeded:
                    charged["remaining"] = await asyncio.to_thread(self._charge, user_id, resource)
                if self.notifier is not None:
                    await self.notifier.send_result(user_id, result)

            result = await self.poller.run(
                submit,
                provider.check_status,
                options,
                user_id,
                resource.value,
                on_status=on_status,
                on_terminal=on_terminal,
            )
            return GenerationOutcome(
                category=resource.value,
                accepted=True,
                result=result,
                remaining=charged.get("remaining"),
                error=result.error,
            )
        finally:
            self.gate.release(user_id, resource.value)

    async def consume_text(self, user_id: int) -> GenerationOutcome:
        """Check and charge one text request"""
        if not await asyncio.to_thread(self.quota_store.can_consume, user_id, ResourceKind.TEXT):
            return await self._decline_quota(user_id, ResourceKind.TEXT)

        remaining = await asyncio.to_thread(self._charge, user_id, ResourceKind.TEXT)
        return GenerationOutcome(category=ResourceKind.TEXT.value, accepted=True, remaining=remaining)
