"""
Notifier - delivers status updates and terminal results back to the user
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

import httpx

from .task_poller import TaskState, TerminalResult
from ..config import config
from ..exceptions import TransientRemoteError

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

STATUS_EMOJIS = {
    "pending": "⏳",
    "queued": "⏳",
    "processing": "🎨",
    "completed": "✅",
    "failed": "❌",
    "staged": "📋",
}

PROGRESS_CELLS = 10


def format_status_message(status: str, progress: Optional[int] = None) -> str:
    """
    Render an intermediate status line

    Args:
        status: Provider-agnostic status value
        progress: Optional completion percentage

    Returns:
        "<emoji> Status: <status>" plus a progress bar while 0 < progress < 100
    """
    emoji = STATUS_EMOJIS.get(status, "🤖")
    message = f"{emoji} Status: {status}"
    if progress is not None and 0 < progress < 100:
        filled = progress // PROGRESS_CELLS
        bar = "█" * filled + "░" * (PROGRESS_CELLS - filled)
        message += f"\n[{bar}] {progress}%"
    return message


def format_terminal_message(result: TerminalResult) -> str:
    if result.state == TaskState.SUCCEEDED:
        message = f"✅ Your {result.category} is ready"
        if result.category == "image" and result.remote_task_id:
            # Upscale and variation refer back to the task by this id
            message += f"\nTask id: {result.remote_task_id}"
        return message
    if result.state == TaskState.TIMED_OUT:
        return f"⌛ Your {result.category} is taking too long. Please try again later."
    return f"❌ {result.category.capitalize()} generation failed: {result.reason or 'unknown error'}"


def format_quota_message(resource: str, remaining: Dict[str, int], is_premium: bool = False) -> str:
    """Decline message listing every remaining balance"""
    tier = "premium" if is_premium else "free"
    lines = [f"🚫 You have no {resource} requests left in this {tier} period.", "", "Remaining:"]
    for name in ("text", "image", "video"):
        lines.append(f"  • {name}: {remaining.get(name, 0)}")
    return "\n".join(lines)


def format_stats_message(remaining: Dict[str, int], is_premium: bool, period_end) -> str:
    tier = "Premium" if is_premium else "Free"
    lines = [f"📊 {tier} plan, current period ends {period_end.isoformat()}", ""]
    for name in ("text", "image", "video"):
        lines.append(f"  • {name}: {remaining.get(name, 0)} left")
    return "\n".join(lines)


def format_busy_message(category: str) -> str:
    return f"⏳ Your previous {category} request is still in progress. Please wait for it to finish."


class Notifier(ABC):
    """Abstract base class for user notification transports"""

    @abstractmethod
    async def send_status(self, user_id: int, text: str):
        """Send an intermediate status text"""
        pass

    @abstractmethod
    async def send_result(self, user_id: int, result: TerminalResult):
        """Send the terminal result of a generation task"""
        pass


class TelegramNotifier(Notifier):
    """Delivers messages through the Telegram Bot API"""

    def __init__(self, bot_token: str = None, base_url: str = TELEGRAM_API_URL, timeout: float = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.bot_token = bot_token if bot_token is not None else config.BOT_TOKEN
        self.base_url = base_url
        self.timeout = timeout if timeout is not None else config.PROVIDER_HTTP_TIMEOUT
        self._client = client

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/bot{self.bot_token}/{method}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Telegram {method} failed: {e}")
            raise TransientRemoteError(f"Telegram {method} failed") from e
        return response.json()

    async def send_status(self, user_id: int, text: str):
        await self._call("sendMessage", {"chat_id": user_id, "text": text})

    async def send_result(self, user_id: int, result: TerminalResult):
        caption = format_terminal_message(result)
        if result.succeeded and result.output:
            method, field = ("sendVideo", "video") if result.category == "video" else ("sendPhoto", "photo")
            await self._call(method, {"chat_id": user_id, field: result.output, "caption": caption})
        else:
            await self._call("sendMessage", {"chat_id": user_id, "text": caption})
