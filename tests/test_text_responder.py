"""
Tests for the chat completions text responder
"""
import json

import httpx
import pytest

from brainai_bot.exceptions import TerminalRemoteError, TransientRemoteError
from brainai_bot.services.text_responder import SYSTEM_PROMPT, ChatCompletionResponder


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestChatCompletionResponder:
    """Test request shape, history and error mapping"""

    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def client(self, requests):
        def handler(request):
            body = json.loads(request.content)
            requests.append((request, body))
            return httpx.Response(200, json=completion(f"echo: {body['messages'][-1]['content']}"))
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_answers_with_system_prompt_first(self, client, requests):
        responder = ChatCompletionResponder(api_key="sk-test", model="test-model", client=client)

        answer = await responder(7, "hello")

        assert answer == "echo: hello"
        request, body = requests[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert body["model"] == "test-model"
        assert body["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "hello"},
        ]

    @pytest.mark.asyncio
    async def test_history_is_per_user_and_bounded(self, client, requests):
        responder = ChatCompletionResponder(api_key="sk-test", history_size=4, client=client)

        for text in ("one", "two", "three"):
            await responder(7, text)
        await responder(8, "other user")

        history = responder.history(7)
        assert len(history) == 4
        assert history[0]["role"] == "system"
        assert [m["content"] for m in history[1:]] == ["echo: two", "three", "echo: three"]
        assert [m["content"] for m in requests[-1][1]["messages"]] == [SYSTEM_PROMPT, "other user"]

    @pytest.mark.asyncio
    async def test_reset_clears_history(self, client):
        responder = ChatCompletionResponder(api_key="sk-test", client=client)
        await responder(7, "hello")

        responder.reset(7)

        assert responder.history(7) == [{"role": "system", "content": SYSTEM_PROMPT}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500])
    async def test_overload_is_transient(self, status_code):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code)))
        responder = ChatCompletionResponder(api_key="sk-test", client=client)
        with pytest.raises(TransientRemoteError):
            await responder(7, "hello")
        assert responder.history(7) == [{"role": "system", "content": SYSTEM_PROMPT}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"choices": []}, completion("  "), {"choices": ["text"]}, {"choices": [{"message": "hi"}]}])
    async def test_empty_or_malformed_answer_is_terminal(self, body):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
        responder = ChatCompletionResponder(api_key="sk-test", client=client)
        with pytest.raises(TerminalRemoteError):
            await responder(7, "hello")

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        responder = ChatCompletionResponder(api_key="")
        assert responder.is_configured() is False
        with pytest.raises(TerminalRemoteError):
            await responder(7, "hello")
