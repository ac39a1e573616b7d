"""
Text Responder - answers plain chat messages through an OpenAI-compatible
chat completions API, keeping a short conversation per user in memory
"""
from collections import defaultdict
from typing import Dict, List, Optional
import logging

import httpx

from ..config import config
from ..exceptions import TerminalRemoteError, TransientRemoteError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Be conversational and helpful. "
    "Keep each answer under 3500 characters."
)

Message = Dict[str, str]


class ChatCompletionResponder:
    """
    Callable text responder: await responder(user_id, text) -> reply

    History holds the system prompt plus the most recent turns; it lives in
    process memory and is lost on restart.
    """

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        base_url: str = None,
        history_size: int = None,
        max_tokens: int = None,
        timeout: float = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.model = model or config.TEXT_MODEL
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.history_size = history_size or config.TEXT_HISTORY_MESSAGES
        self.max_tokens = max_tokens or config.TEXT_MAX_TOKENS
        self.timeout = timeout if timeout is not None else config.PROVIDER_HTTP_TIMEOUT
        self._client = client
        self._history: Dict[int, List[Message]] = defaultdict(list)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def history(self, user_id: int) -> List[Message]:
        """Conversation sent with the next request, system prompt first"""
        recent = self._history.get(user_id, [])[-(self.history_size - 1):]
        return [{"role": "system", "content": SYSTEM_PROMPT}] + recent

    def reset(self, user_id: int):
        self._history.pop(user_id, None)

    async def _post(self, body: Dict) -> Dict:
        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key or ''}", "Content-Type": "application/json"}
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, headers=headers, json=body)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientRemoteError(f"{type(e).__name__}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(f"Chat API returned status {response.status_code}")
        if response.status_code >= 400:
            raise TerminalRemoteError(f"Chat API rejected request with status {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise TerminalRemoteError("Chat API returned a non-JSON body") from e

    async def __call__(self, user_id: int, text: str) -> str:
        """
        Answer one message in the context of the user's recent conversation

        Raises:
            TransientRemoteError: Network failures, 429 and 5xx
            TerminalRemoteError: Missing credentials, other 4xx, empty answers
        """
        if not self.is_configured():
            raise TerminalRemoteError("Text responder is not configured")

        user_message = {"role": "user", "content": text}
        payload = await self._post({
            "model": self.model,
            "messages": self.history(user_id) + [user_message],
            "max_completion_tokens": self.max_tokens,
        })

        choices = payload.get("choices") if isinstance(payload, dict) else None
        first = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
        message = first.get("message")
        answer = str((message.get("content") if isinstance(message, dict) else None) or "").strip()
        if not answer:
            raise TerminalRemoteError("Chat API returned an empty answer")

        turns = self._history[user_id]
        turns.extend([user_message, {"role": "assistant", "content": answer}])
        del turns[:-(self.history_size - 1)]
        logger.info(f"Answered text message for user {user_id} ({len(answer)} chars)")
        return answer
