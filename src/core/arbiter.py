"""
arbiter.py

LLM fallback for calls the heuristics cannot settle.

Contract:
- evaluate(call, context, hint) -> RiskVerdict
- never raises, never hangs: the model call races a fixed timeout and any failure,
  timeout or unparseable answer returns `hint` unchanged
- the model answers with one line: "RISK: safe|moderate|high|critical -- <reason>"
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from src.shared.dataclasses import ModelResponse
from src.shared.utils import load_prompt_file

from .state import ActionContext, RiskLevel, RiskVerdict, ToolCall

logger = logging.getLogger("vigilant.arbiter")

REDACTED_KEYS = ("password", "secret", "token", "api_key", "credit_card")
INPUT_VALUE_LIMIT = 100
DEFAULT_TIMEOUT_S = 10.0


class ModelClient(Protocol):
    async def send_message(
        self,
        conversation: List[Dict[str, Any]],
        system_prompt: str,
        tool_schemas: List[Dict[str, Any]],
        model: str,
        max_tokens: int,
    ) -> ModelResponse: ...


def redact_input(tool_input: Dict[str, str]) -> str:
    """Mask credential-like keys and shorten values before they reach a prompt."""
    parts = []
    for key, value in tool_input.items():
        shown = "[REDACTED]" if key in REDACTED_KEYS else str(value)[:INPUT_VALUE_LIMIT]
        parts.append(f"{key}={shown}")
    return ", ".join(parts)


def build_evaluation_prompt(call: ToolCall, context: ActionContext) -> str:
    recent = ", ".join(f"{name}: {summary}" for name, summary in context.recent_tool_calls)
    return (
        "Evaluate this tool call for risk:\n"
        f"Tool: {call.name}\n"
        f"Input: {redact_input(call.input)}\n"
        "Context:\n"
        f"- Active App: {context.active_app_name or 'unknown'}\n"
        f"- Window Title: {context.window_title or 'unknown'}\n"
        f"- Focused Element: {context.focused_element_role or 'none'} -- \"{context.focused_element_label or 'none'}\"\n"
        f"- Browser URL: {context.current_url or 'N/A'}\n"
        f"- Recent Actions: {recent}\n"
        "What is the risk level?"
    )


def parse_risk_response(text: str, tool: str) -> Optional[RiskVerdict]:
    """
    Line-oriented, case-insensitive. The first line that parses wins; lines with an
    unknown level are skipped. Returns None when nothing parses.
    """
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.upper().startswith("RISK:"):
            continue
        parts = [p.strip() for p in stripped[5:].strip().split("--")]
        level = RiskLevel.parse(parts[0].lower()) if parts[0] else None
        if level is None:
            continue
        reason = parts[1] if len(parts) > 1 and parts[1] else "LLM classified"
        needs_approval = level >= RiskLevel.HIGH
        return RiskVerdict(
            level=level,
            reason=reason,
            tool=tool,
            requires_approval=needs_approval,
            approval_prompt=f"{reason}\n\nTool: {tool}" if needs_approval else None,
        )
    return None


class LLMArbiter:
    def __init__(
        self,
        client: ModelClient,
        model: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        system_prompt: Optional[str] = None,
        max_tokens: int = 256,
    ) -> None:
        self._client = client
        self._model = model
        self._timeout_s = timeout_s
        self._max_tokens = max_tokens
        self._system_prompt = system_prompt or load_prompt_file("safety.yaml")["classifier_system_prompt"]

    async def evaluate(self, call: ToolCall, context: ActionContext, hint: RiskVerdict) -> RiskVerdict:
        try:
            verdict = await asyncio.wait_for(self._ask(call, context), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            logger.warning("LLM risk evaluation timed out after %.1fs for %s; using heuristic hint",
                           self._timeout_s, call.name)
            return hint
        except Exception as e:
            logger.warning("LLM risk evaluation failed for %s: %s; using heuristic hint", call.name, e)
            return hint

        if verdict is None:
            logger.info("LLM risk response for %s did not parse; using heuristic hint", call.name)
            return hint
        return verdict

    async def _ask(self, call: ToolCall, context: ActionContext) -> Optional[RiskVerdict]:
        response = await self._client.send_message(
            [{"role": "user", "content": build_evaluation_prompt(call, context)}],
            self._system_prompt,
            [],
            self._model,
            self._max_tokens,
        )
        return parse_risk_response(response.text_content, call.name)
