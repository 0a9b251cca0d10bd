"""
recovery.py

RecoveryStrategyChain: five escalating interventions for a stuck run.

  0 Rephrase                 canned text, free
  1 Cheap-model suggestion   fast model, falls back to the rephrase text
  2 Backtrack                canned text, free
  3 Deep-model consultation  brain model + screenshot, no guidance on failure
  4 Force complete           canned text, guaranteed exit

The chain only produces guidance. Counters, the strategy index and detector
clearing belong to the RECOVER node.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from src.shared.utils import load_prompt_file

from .arbiter import ModelClient

logger = logging.getLogger("vigilant.recovery")

STRATEGY_LABELS: List[str] = [
    "Rephrase",
    "Cheap-model suggestion",
    "Backtrack",
    "Deep-model consultation",
    "Force complete",
]
MAX_STRATEGY_INDEX = len(STRATEGY_LABELS) - 1

SUGGESTION_MAX_TOKENS = 512
ADVISOR_MAX_TOKENS = 1024


@dataclass
class RecoveryOutcome:
    strategy: int
    label: str
    guidance: str
    escalated: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


def clamp_strategy(index: int) -> int:
    return max(0, min(index, MAX_STRATEGY_INDEX))


class RecoveryStrategyChain:
    def __init__(
        self,
        client: ModelClient,
        fast_model: str,
        brain_model: str,
        prompts: Optional[Dict[str, str]] = None,
    ) -> None:
        self._client = client
        self._fast_model = fast_model
        self._brain_model = brain_model
        self._prompts = prompts or load_prompt_file("recovery.yaml")

    async def run(
        self,
        strategy_index: int,
        command: str,
        reason: str,
        iteration: int,
        screenshot: bytes = b"",
    ) -> RecoveryOutcome:
        strategy = clamp_strategy(strategy_index)
        outcome = RecoveryOutcome(strategy=strategy, label=STRATEGY_LABELS[strategy], guidance="")

        if strategy == 0:
            outcome.guidance = self._prompts["rephrase"]
        elif strategy == 1:
            await self._suggest(outcome, command, reason)
        elif strategy == 2:
            outcome.guidance = self._prompts["backtrack"]
        elif strategy == 3:
            await self._consult(outcome, command, reason, iteration, screenshot)
        else:
            outcome.guidance = self._prompts["force_complete"]

        logger.info("Recovery strategy %d (%s) produced %d chars of guidance",
                    strategy, outcome.label, len(outcome.guidance))
        return outcome

    # --- model-backed strategies

    async def _suggest(self, outcome: RecoveryOutcome, command: str, reason: str) -> None:
        prompt = self._prompts["suggestion_prompt"].format(command=command, reason=reason)
        try:
            response = await self._client.send_message(
                [{"role": "user", "content": prompt}],
                self._prompts["suggestion_system_prompt"],
                [],
                self._fast_model,
                SUGGESTION_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Cheap-model suggestion failed: %s; falling back to rephrase", e)
            outcome.guidance = self._prompts["rephrase"]
            return

        outcome.input_tokens = response.input_tokens
        outcome.output_tokens = response.output_tokens
        suggestion = response.text_content.strip()
        outcome.guidance = f"Alternative approach: {suggestion}" if suggestion else self._prompts["rephrase"]

    async def _consult(
        self,
        outcome: RecoveryOutcome,
        command: str,
        reason: str,
        iteration: int,
        screenshot: bytes,
    ) -> None:
        outcome.escalated = True
        message: Dict[str, Any] = {
            "role": "user",
            "content": self._prompts["advisor_prompt"].format(command=command, reason=reason, iteration=iteration),
        }
        if screenshot:
            message["images"] = [screenshot]
        try:
            response = await self._client.send_message(
                [message],
                self._prompts["advisor_system_prompt"],
                [],
                self._brain_model,
                ADVISOR_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Deep-model consultation failed: %s", e)
            return

        outcome.input_tokens = response.input_tokens
        outcome.output_tokens = response.output_tokens
        advice = response.text_content.strip()
        if advice:
            outcome.guidance = f"Advisor guidance:\n{advice}"
