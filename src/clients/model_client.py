"""
OpenAI-compatible model collaborator.

Translates the core's provider-neutral conversation (plain role/content dicts, with
optional "images", "tool_calls" and "tool_results" keys) into Chat Completions
requests, and the response back into a ModelResponse.
"""

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from src.core.errors import ModelError
from src.shared.dataclasses import ModelResponse, ModelToolCall

logger = logging.getLogger("vigilant.model_client")

PNG_MAGIC = b"\x89PNG"


def image_data_url(data: bytes) -> str:
    mime = "image/png" if data.startswith(PNG_MAGIC) else "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def stringify_arguments(arguments: Any) -> Dict[str, str]:
    """Tool inputs are always str -> str; nested values are re-encoded as JSON."""
    if isinstance(arguments, str):
        arguments = json.loads(arguments) if arguments.strip() else {}
    if not isinstance(arguments, dict):
        raise ValueError(f"Tool arguments must be an object, got {type(arguments).__name__}")
    return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in arguments.items()}


def to_openai_messages(conversation: List[Dict[str, Any]], system_prompt: str) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    known_ids = set()

    for message in conversation:
        role = message.get("role", "user")
        content = message.get("content", "")

        if role == "assistant":
            calls = [c for c in message.get("tool_calls") or [] if c.get("id")]
            out: Dict[str, Any] = {"role": "assistant", "content": content or None}
            if calls:
                out["tool_calls"] = [
                    {
                        "id": c["id"],
                        "type": "function",
                        "function": {"name": c["name"], "arguments": json.dumps(c.get("input") or {})},
                    }
                    for c in calls
                ]
                known_ids.update(c["id"] for c in calls)
            elif not content:
                continue
            messages.append(out)
            continue

        results = message.get("tool_results") or []
        if results and all(r.get("call_id") in known_ids for r in results):
            for r in results:
                messages.append({"role": "tool", "tool_call_id": r["call_id"], "content": r["content"]})
            continue

        images = message.get("images") or []
        if images:
            parts: List[Dict[str, Any]] = [{"type": "text", "text": content}]
            for data in images:
                parts.append({"type": "image_url", "image_url": {"url": image_data_url(data)}})
            messages.append({"role": "user", "content": parts})
        else:
            messages.append({"role": "user", "content": content})

    return messages


class OpenAIModelClient:
    """
    Implements the core's ModelClient protocol on top of AsyncOpenAI.
    Retries are left to the SDK (max_retries); anything it gives up on becomes ModelError.
    """

    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        max_retries: int = 2,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key or None, base_url=base_url, max_retries=max_retries)

    async def send_message(
        self,
        conversation: List[Dict[str, Any]],
        system_prompt: str,
        tool_schemas: List[Dict[str, Any]],
        model: str,
        max_tokens: int,
    ) -> ModelResponse:
        request: Dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(conversation, system_prompt),
            "max_completion_tokens": max_tokens,
        }
        if tool_schemas:
            request["tools"] = tool_schemas
            request["tool_choice"] = "auto"

        try:
            response = await self.client.chat.completions.create(**request)
        except OpenAIError as e:
            raise ModelError(f"{type(e).__name__}: {e}") from e

        if not response.choices:
            raise ModelError("Model returned no choices")
        msg = response.choices[0].message

        tool_calls: List[ModelToolCall] = []
        for tc in msg.tool_calls or []:
            try:
                args = stringify_arguments(tc.function.arguments)
            except (ValueError, json.JSONDecodeError) as e:
                raise ModelError(f"Malformed arguments for tool {tc.function.name}: {e}") from e
            tool_calls.append(ModelToolCall(name=tc.function.name, input=args, call_id=tc.id))

        usage = response.usage
        return ModelResponse(
            text_content=msg.content or "",
            tool_calls=tool_calls,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
