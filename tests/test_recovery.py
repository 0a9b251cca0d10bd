from __future__ import annotations

import asyncio

from src.core.recovery import STRATEGY_LABELS, RecoveryStrategyChain, clamp_strategy
from src.shared.dataclasses import ModelResponse

PROMPTS = {
    "rephrase": "REPHRASE",
    "suggestion_system_prompt": "suggest",
    "suggestion_prompt": "stuck on {command}: {reason}",
    "backtrack": "BACKTRACK",
    "advisor_system_prompt": "advise",
    "advisor_prompt": "{command} / {reason} / {iteration}",
    "force_complete": "FORCE",
}


class FakeClient:
    def __init__(self, text: str = "try the menu bar", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[dict] = []

    async def send_message(self, conversation, system_prompt, tool_schemas, model, max_tokens):
        self.calls.append({"conversation": conversation, "model": model, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return ModelResponse(text_content=self.text, input_tokens=10, output_tokens=5)


def _run(chain: RecoveryStrategyChain, index: int, screenshot: bytes = b""):
    return asyncio.run(chain.run(index, "open settings", "screen unchanged", 7, screenshot))


def test_strategies_escalate_in_order_and_clamp() -> None:
    chain = RecoveryStrategyChain(FakeClient(), "fast", "brain", PROMPTS)
    labels = [_run(chain, i).label for i in range(7)]
    assert labels == STRATEGY_LABELS + ["Force complete", "Force complete"]
    assert clamp_strategy(-1) == 0


def test_canned_strategies() -> None:
    chain = RecoveryStrategyChain(FakeClient(), "fast", "brain", PROMPTS)
    assert _run(chain, 0).guidance == "REPHRASE"
    assert _run(chain, 2).guidance == "BACKTRACK"
    assert _run(chain, 4).guidance == "FORCE"


def test_suggestion_uses_fast_model() -> None:
    client = FakeClient()
    outcome = _run(RecoveryStrategyChain(client, "fast", "brain", PROMPTS), 1)
    assert outcome.guidance == "Alternative approach: try the menu bar"
    assert (outcome.input_tokens, outcome.output_tokens) == (10, 5)
    assert client.calls[0]["model"] == "fast"
    assert client.calls[0]["conversation"][0]["content"] == "stuck on open settings: screen unchanged"


def test_suggestion_falls_back_to_rephrase() -> None:
    failing = RecoveryStrategyChain(FakeClient(error=RuntimeError("down")), "fast", "brain", PROMPTS)
    empty = RecoveryStrategyChain(FakeClient(text="  "), "fast", "brain", PROMPTS)
    assert _run(failing, 1).guidance == "REPHRASE"
    assert _run(empty, 1).guidance == "REPHRASE"


def test_consultation_escalates_with_screenshot() -> None:
    client = FakeClient(text="Close the dialog first")
    outcome = _run(RecoveryStrategyChain(client, "fast", "brain", PROMPTS), 3, screenshot=b"png")
    assert outcome.escalated
    assert outcome.guidance == "Advisor guidance:\nClose the dialog first"
    message = client.calls[0]["conversation"][0]
    assert message["images"] == [b"png"]
    assert message["content"] == "open settings / screen unchanged / 7"
    assert client.calls[0]["model"] == "brain"


def test_consultation_failure_gives_no_guidance_but_still_escalates() -> None:
    chain = RecoveryStrategyChain(FakeClient(error=RuntimeError("down")), "fast", "brain", PROMPTS)
    outcome = _run(chain, 3)
    assert outcome.escalated
    assert outcome.guidance == ""


def test_default_prompts_load_from_yaml() -> None:
    chain = RecoveryStrategyChain(FakeClient(), "fast", "brain")
    assert "<task_complete/>" in _run(chain, 4).guidance
