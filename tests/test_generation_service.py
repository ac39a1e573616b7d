"""
Tests for quota-governed generation orchestration
"""
import asyncio
import threading

import pytest
from unittest.mock import AsyncMock, Mock

from brainai_bot.exceptions import (
    AdmissionConflict,
    ConfigurationError,
    QuotaExhausted,
    TaskTimeoutError,
    TerminalRemoteError,
)
from brainai_bot.services.admission_gate import AdmissionGate
from brainai_bot.services.generation_providers import GoApiImageProvider
from brainai_bot.services.generation_service import GenerationService
from brainai_bot.services.metrics import get_metrics_collector
from brainai_bot.services.notifier import Notifier
from brainai_bot.services.task_poller import (
    PollOptions,
    RemoteStatus,
    StatusResponse,
    TaskPoller,
    TaskState,
)
from brainai_bot.services.usage_store import ResourceKind

USER_ID = 31337


def make_provider(*responses, task_id="remote-1"):
    provider = Mock()
    provider.submit = AsyncMock(return_value=task_id)
    provider.check_status = AsyncMock(side_effect=list(responses))
    return provider


@pytest.fixture
def gate():
    return AdmissionGate()


@pytest.fixture
def notifier():
    return AsyncMock(spec=Notifier)


@pytest.fixture
def user(user_service):
    return user_service.find_or_create(USER_ID)


@pytest.fixture
def build_service(quota_store, gate, notifier, no_sleep):
    def _build(image_provider=None, video_provider=None, sleep=None):
        return GenerationService(
            quota_store=quota_store,
            gate=gate,
            poller=TaskPoller(sleep=sleep or no_sleep),
            providers={
                "image": image_provider or make_provider(),
                "video": video_provider or make_provider(),
            },
            poll_options={
                "image": PollOptions(interval=10, max_attempts=3),
                "video": PollOptions(interval=5, max_attempts=3),
            },
            notifier=notifier,
        )
    return _build


class TestGenerate:
    """Test the image/video flow"""

    @pytest.mark.asyncio
    async def test_success_consumes_quota_and_delivers(self, build_service, quota_store, gate, notifier, user):
        provider = make_provider(
            StatusResponse(RemoteStatus.PROCESSING, progress=40),
            StatusResponse(RemoteStatus.COMPLETED, output="https://img/cat.png"),
        )
        service = build_service(image_provider=provider)

        outcome = await service.generate(USER_ID, "image", "a cat in a hat", {"aspect_ratio": "1:1"})

        assert outcome.accepted is True
        assert outcome.succeeded is True
        assert outcome.result.output == "https://img/cat.png"
        assert outcome.remaining == 9
        assert quota_store.remaining(USER_ID, ResourceKind.IMAGE) == 9
        assert not gate.is_busy(USER_ID, "image")

        provider.submit.assert_awaited_once_with("a cat in a hat", {"aspect_ratio": "1:1"})
        notifier.send_result.assert_awaited_once_with(USER_ID, outcome.result)
        status_texts = [call.args[1] for call in notifier.send_status.await_args_list]
        assert any("40%" in text for text in status_texts)

    @pytest.mark.asyncio
    async def test_failure_does_not_consume(self, build_service, quota_store, gate, user):
        provider = make_provider(StatusResponse(RemoteStatus.FAILED, error="rejected"))
        service = build_service(video_provider=provider)

        outcome = await service.generate(USER_ID, "video", "a storm at sea")

        assert outcome.accepted is True
        assert outcome.result.state == TaskState.FAILED
        assert outcome.remaining is None
        assert quota_store.remaining(USER_ID, ResourceKind.VIDEO) == 5
        assert not gate.is_busy(USER_ID, "video")

    @pytest.mark.asyncio
    async def test_timeout_does_not_consume(self, build_service, quota_store, user):
        provider = make_provider(*[StatusResponse(RemoteStatus.PROCESSING)] * 3)
        service = build_service(image_provider=provider)

        outcome = await service.generate(USER_ID, "image", "slow render")

        assert outcome.result.state == TaskState.TIMED_OUT
        assert isinstance(outcome.error, TaskTimeoutError)
        assert quota_store.remaining(USER_ID, ResourceKind.IMAGE) == 10

    @pytest.mark.asyncio
    async def test_submit_failure_releases_gate(self, build_service, gate, user):
        provider = make_provider()
        provider.submit.side_effect = TerminalRemoteError("no task id")
        service = build_service(image_provider=provider)

        outcome = await service.generate(USER_ID, "image", "a cat")

        assert outcome.result.state == TaskState.FAILED
        provider.check_status.assert_not_awaited()
        assert not gate.is_busy(USER_ID, "image")

    @pytest.mark.asyncio
    async def test_adapter_bug_fails_task_and_delivers(self, build_service, quota_store, gate, notifier, user):
        provider = make_provider()
        provider.check_status.side_effect = RuntimeError("bug in provider")
        service = build_service(image_provider=provider)

        outcome = await service.generate(USER_ID, "image", "a cat")

        assert outcome.result.state == TaskState.FAILED
        notifier.send_result.assert_awaited_once_with(USER_ID, outcome.result)
        assert quota_store.remaining(USER_ID, ResourceKind.IMAGE) == 10
        assert not gate.is_busy(USER_ID, "image")

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_gate(self, build_service, quota_store, gate, user, monkeypatch):
        monkeypatch.setattr(quota_store, "can_consume", Mock(side_effect=RuntimeError("storage driver bug")))
        service = build_service()

        with pytest.raises(RuntimeError):
            await service.generate(USER_ID, "image", "a cat")

        assert not gate.is_busy(USER_ID, "image")

    @pytest.mark.asyncio
    async def test_quota_calls_run_off_the_event_loop(self, build_service, quota_store, user, monkeypatch):
        loop_thread = threading.get_ident()
        seen = {}

        def tracking(name, real):
            def call(*args, **kwargs):
                seen[name] = threading.get_ident()
                return real(*args, **kwargs)
            return call

        monkeypatch.setattr(quota_store, "can_consume", tracking("can_consume", quota_store.can_consume))
        monkeypatch.setattr(quota_store, "consume", tracking("consume", quota_store.consume))
        provider = make_provider(StatusResponse(RemoteStatus.COMPLETED, output="https://img/cat.png"))
        service = build_service(image_provider=provider)

        outcome = await service.generate(USER_ID, "image", "a cat")

        assert outcome.remaining == 9
        assert set(seen) == {"can_consume", "consume"}
        assert loop_thread not in seen.values()


class TestDeclines:
    """Test informative declines"""

    @pytest.mark.asyncio
    async def test_busy_user_declined(self, build_service, gate, notifier, user):
        provider = make_provider()
        service = build_service(image_provider=provider)
        gate.try_acquire(USER_ID, "image")

        outcome = await service.generate(USER_ID, "image", "a cat")

        assert outcome.accepted is False
        assert outcome.declined_reason == "busy"
        assert isinstance(outcome.error, AdmissionConflict)
        provider.submit.assert_not_awaited()
        notifier.send_status.assert_awaited_once()
        # The original holder keeps the slot
        assert gate.is_busy(USER_ID, "image")

    @pytest.mark.asyncio
    async def test_exhausted_quota_declined_with_snapshot(self, build_service, quota_store, gate, notifier, user):
        quota_store.consume(USER_ID, ResourceKind.IMAGE, 10)
        provider = make_provider()
        service = build_service(image_provider=provider)

        outcome = await service.generate(USER_ID, "image", "a cat")

        assert outcome.accepted is False
        assert outcome.declined_reason == "quota"
        assert outcome.snapshot.remaining == {"text": 100, "image": 0, "video": 5}
        assert isinstance(outcome.error, QuotaExhausted)
        assert outcome.error.remaining["image"] == 0
        provider.submit.assert_not_awaited()
        assert not gate.is_busy(USER_ID, "image")

        message = notifier.send_status.await_args.args[1]
        assert "video: 5" in message

        collector = get_metrics_collector()
        assert collector.get_counter("generation_declined_total", {"category": "image", "reason": "quota"}) == 1.0

    @pytest.mark.asyncio
    async def test_unknown_user_declined(self, build_service):
        service = build_service()

        outcome = await service.generate(999, "image", "a cat")

        assert outcome.declined_reason == "quota"
        assert outcome.snapshot is None

    @pytest.mark.asyncio
    async def test_concurrent_request_declined_while_first_polls(self, build_service, quota_store, user):
        release_first = asyncio.Event()

        async def blocking_sleep(seconds):
            await release_first.wait()

        provider = make_provider(StatusResponse(RemoteStatus.COMPLETED, output="https://img/1.png"))
        service = build_service(image_provider=provider, sleep=blocking_sleep)

        first = asyncio.create_task(service.generate(USER_ID, "image", "first prompt"))
        while provider.submit.await_count == 0:
            await asyncio.sleep(0)

        second = await service.generate(USER_ID, "image", "second prompt")
        release_first.set()
        first_outcome = await first

        assert second.declined_reason == "busy"
        assert first_outcome.succeeded
        assert provider.submit.await_count == 1
        assert quota_store.remaining(USER_ID, ResourceKind.IMAGE) == 9

    @pytest.mark.asyncio
    async def test_category_without_provider(self, build_service, user):
        service = build_service()
        with pytest.raises(ConfigurationError):
            await service.generate(USER_ID, "text", "hello there")


class TestConsumeText:
    @pytest.mark.asyncio
    async def test_charges_one_text_request(self, build_service, quota_store, user):
        service = build_service()

        outcome = await service.consume_text(USER_ID)

        assert outcome.accepted is True
        assert outcome.remaining == 99

    @pytest.mark.asyncio
    async def test_exhausted_text_declined(self, build_service, quota_store, user):
        quota_store.consume(USER_ID, ResourceKind.TEXT, 100)
        service = build_service()

        outcome = await service.consume_text(USER_ID)

        assert outcome.accepted is False
        assert outcome.declined_reason == "quota"
        assert quota_store.remaining(USER_ID, ResourceKind.TEXT) == 0


class TestImageProviderChoice:
    """Test the per-user image provider preference"""

    @pytest.fixture
    def providers(self):
        return {"goapi": make_provider(task_id="mj-1"), "fal-image": make_provider(task_id="fal-1")}

    @pytest.fixture
    def choosing_service(self, quota_store, gate, notifier, no_sleep, user_service, providers):
        return GenerationService(
            quota_store=quota_store,
            gate=gate,
            poller=TaskPoller(sleep=no_sleep),
            providers={"image": providers["goapi"], "video": make_provider()},
            poll_options={"image": PollOptions(interval=10, max_attempts=3)},
            notifier=notifier,
            users=user_service,
            image_providers=providers,
        )

    @pytest.mark.asyncio
    async def test_default_provider_without_preference(self, choosing_service, providers, user):
        providers["goapi"].check_status.side_effect = [StatusResponse(RemoteStatus.COMPLETED, output="https://img/mj.png")]

        outcome = await choosing_service.generate(USER_ID, "image", "a red fox")

        assert outcome.result.remote_task_id == "mj-1"
        providers["fal-image"].submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_chosen_provider_is_used(self, choosing_service, providers, user_service, quota_store, user):
        user_service.set_image_provider(USER_ID, "fal-image")
        providers["fal-image"].check_status.side_effect = [StatusResponse(RemoteStatus.COMPLETED, output="https://img/fal.png")]

        outcome = await choosing_service.generate(USER_ID, "image", "a red fox")

        assert outcome.result.output == "https://img/fal.png"
        providers["goapi"].submit.assert_not_awaited()
        assert quota_store.remaining(USER_ID, ResourceKind.IMAGE) == 9

    @pytest.mark.asyncio
    async def test_unavailable_choice_falls_back_to_default(self, quota_store, gate, no_sleep, user_service, providers, user):
        user_service.set_image_provider(USER_ID, "fal-image")
        providers["goapi"].check_status.side_effect = [StatusResponse(RemoteStatus.COMPLETED, output="https://img/mj.png")]
        service = GenerationService(
            quota_store=quota_store,
            gate=gate,
            poller=TaskPoller(sleep=no_sleep),
            providers={"image": providers["goapi"]},
            poll_options={"image": PollOptions(interval=10, max_attempts=3)},
            users=user_service,
            image_providers={"goapi": providers["goapi"]},
        )

        outcome = await service.generate(USER_ID, "image", "a red fox")

        assert outcome.succeeded
        providers["fal-image"].submit.assert_not_awaited()


class TestRefine:
    """Test Midjourney upscale and variation requests"""

    @pytest.fixture
    def midjourney(self):
        provider = Mock(spec=GoApiImageProvider)
        provider.upscale = AsyncMock(return_value="up-1")
        provider.variation = AsyncMock(return_value="var-1")
        provider.check_status = AsyncMock(
            return_value=StatusResponse(RemoteStatus.COMPLETED, output="https://img/up.png")
        )
        return provider

    @pytest.mark.asyncio
    async def test_upscale_consumes_image_quota(self, build_service, midjourney, quota_store, gate, notifier, user):
        service = build_service(image_provider=midjourney)

        outcome = await service.refine(USER_ID, "upscale", "mj-1", 2)

        midjourney.upscale.assert_awaited_once_with("mj-1", 2)
        midjourney.check_status.assert_awaited_with("up-1")
        assert outcome.succeeded
        assert outcome.category == "image"
        assert quota_store.remaining(USER_ID, ResourceKind.IMAGE) == 9
        notifier.send_result.assert_awaited_once_with(USER_ID, outcome.result)
        assert not gate.is_busy(USER_ID, "image")

    @pytest.mark.asyncio
    async def test_variation(self, build_service, midjourney, user):
        service = build_service(image_provider=midjourney)

        outcome = await service.refine(USER_ID, "variation", "mj-1", 4)

        midjourney.variation.assert_awaited_once_with("mj-1", 4)
        assert outcome.result.remote_task_id == "var-1"

    @pytest.mark.asyncio
    async def test_refine_shares_the_image_gate(self, build_service, midjourney, gate, user):
        service = build_service(image_provider=midjourney)
        gate.try_acquire(USER_ID, "image")

        outcome = await service.refine(USER_ID, "upscale", "mj-1", 1)

        assert outcome.declined_reason == "busy"
        midjourney.upscale.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_index_fails_without_charge(self, build_service, midjourney, quota_store, user):
        midjourney.upscale.side_effect = TerminalRemoteError("Image index must be between 1 and 4")
        service = build_service(image_provider=midjourney)

        outcome = await service.refine(USER_ID, "upscale", "mj-1", 7)

        assert outcome.result.state == TaskState.FAILED
        assert quota_store.remaining(USER_ID, ResourceKind.IMAGE) == 10

    @pytest.mark.asyncio
    async def test_needs_midjourney_provider(self, build_service, user):
        service = build_service()
        with pytest.raises(ConfigurationError):
            await service.refine(USER_ID, "upscale", "mj-1", 1)

    @pytest.mark.asyncio
    async def test_unknown_action(self, build_service, midjourney, user):
        service = build_service(image_provider=midjourney)
        with pytest.raises(ValueError):
            await service.refine(USER_ID, "reroll", "mj-1", 1)
