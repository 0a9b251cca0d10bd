from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from src.clients.model_client import OpenAIModelClient, image_data_url, stringify_arguments, to_openai_messages
from src.core.errors import ModelError


class FakeCompletions:
    def __init__(self, response) -> None:
        self.response = response
        self.requests: list[dict] = []

    async def create(self, **request):
        self.requests.append(request)
        return self.response


def _fake_openai(message, usage=None):
    completions = FakeCompletions(SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage))
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def _tool_call(call_id: str, name: str, arguments: str):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def test_stringify_arguments() -> None:
    assert stringify_arguments('{"x": 10, "text": "hi", "opts": {"a": true}}') == {
        "x": "10", "text": "hi", "opts": '{"a": true}',
    }
    assert stringify_arguments("") == {}
    with pytest.raises(ValueError):
        stringify_arguments("[1, 2]")


def test_image_data_url_detects_png() -> None:
    assert image_data_url(b"\x89PNGrest").startswith("data:image/png;base64,")
    assert image_data_url(b"\xff\xd8jpeg").startswith("data:image/jpeg;base64,")


def test_conversation_conversion() -> None:
    conversation = [
        {"role": "user", "content": "open mail"},
        {"role": "user", "content": "look", "images": [b"\x89PNG"]},
        {"role": "assistant", "content": "clicking", "tool_calls": [{"id": "c1", "name": "click", "input": {"x": "1"}}]},
        {"role": "user", "content": "[click] ok",
         "tool_results": [{"call_id": "c1", "name": "click", "content": "ok", "is_error": False}]},
        {"role": "assistant", "content": ""},
    ]
    messages = to_openai_messages(conversation, "SYS")

    assert messages[0] == {"role": "system", "content": "SYS"}
    assert messages[1] == {"role": "user", "content": "open mail"}
    assert messages[2]["content"][0] == {"type": "text", "text": "look"}
    assert messages[2]["content"][1]["type"] == "image_url"
    assert messages[3]["tool_calls"][0]["function"] == {"name": "click", "arguments": '{"x": "1"}'}
    assert messages[4] == {"role": "tool", "tool_call_id": "c1", "content": "ok"}
    assert len(messages) == 5


def test_tool_results_without_known_ids_stay_user_text() -> None:
    conversation = [{"role": "user", "content": "[click] ok",
                     "tool_results": [{"call_id": None, "name": "click", "content": "ok", "is_error": False}]}]
    assert to_openai_messages(conversation, "SYS")[1] == {"role": "user", "content": "[click] ok"}


def test_send_message_parses_tool_calls_and_usage() -> None:
    message = SimpleNamespace(content="Clicking", tool_calls=[_tool_call("c1", "click", '{"x": 5}')])
    client, completions = _fake_openai(message, SimpleNamespace(prompt_tokens=12, completion_tokens=3))
    response = asyncio.run(OpenAIModelClient(client=client).send_message(
        [{"role": "user", "content": "go"}], "SYS", [{"type": "function"}], "gpt-4o", 256,
    ))

    assert response.text_content == "Clicking"
    assert response.tool_calls[0].name == "click"
    assert response.tool_calls[0].input == {"x": "5"}
    assert response.tool_calls[0].call_id == "c1"
    assert (response.input_tokens, response.output_tokens) == (12, 3)
    request = completions.requests[0]
    assert request["max_completion_tokens"] == 256
    assert request["tool_choice"] == "auto"


def test_send_message_without_tools_omits_tool_fields() -> None:
    client, completions = _fake_openai(SimpleNamespace(content="RISK: safe", tool_calls=None))
    response = asyncio.run(OpenAIModelClient(client=client).send_message([], "SYS", [], "m", 10))
    assert response.text_content == "RISK: safe"
    assert response.input_tokens == 0
    assert "tools" not in completions.requests[0]


def test_malformed_arguments_raise_model_error() -> None:
    message = SimpleNamespace(content="", tool_calls=[_tool_call("c1", "click", "{not json")])
    client, _ = _fake_openai(message)
    with pytest.raises(ModelError):
        asyncio.run(OpenAIModelClient(client=client).send_message([], "SYS", [], "m", 10))
