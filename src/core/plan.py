"""
plan.py

Optional step-driven execution: an ExecutionPlan of PlanSteps and the StepStateMachine
that tracks which step is active, validates outcomes heuristically (no model calls)
and renders the per-step instruction appended to the planner prompt.

Design goals:
- Outcome validation is a cheap text heuristic: succeeded >= 0.8, failed <= 0.3
- Plan text may come from another model, so it is sanitized before reaching a prompt
- A plan never changes routing; it only narrows what the planner is asked to do
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("vigilant.plan")

SUCCESS_SCORE = 0.8
FAILURE_SCORE = 0.3
INSTRUCTION_TEXT_LIMIT = 2000

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will",
    "would", "could", "should", "may", "might", "shall", "can",
    "to", "of", "in", "for", "on", "with", "at", "by", "from",
    "and", "or", "not", "no", "but", "if", "then", "than",
    "that", "this", "it", "its",
})

ERROR_WORDS = ("error", "failed", "not found", "denied", "timeout")

CRITICAL_ACTION_KEYWORDS = (
    "type", "enter", "fill", "input", "email", "address",
    "recipient", "compose", "write", "paste", "type_text",
    "send", "submit", "password", "username", "login", "sign in",
)

FILTERED_MARKERS = (
    "<system>", "</system>", "<tool_use>", "</tool_use>",
    "<tool_result>", "</tool_result>", "<function_calls>", "</function_calls>",
    "```applescript", "```shell", "```bash",
)
_FILTERED = re.compile("|".join(re.escape(m) for m in FILTERED_MARKERS), re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def contains_completion_token(text: str) -> bool:
    """Matches <task_complete/> or <task_complete> ignoring case and whitespace."""
    normalized = text.lower()
    for ch in (" ", "\n", "\r", "\t"):
        normalized = normalized.replace(ch, "")
    return "<task_complete/>" in normalized or "<task_complete>" in normalized


def sanitize_plan_text(text: str) -> str:
    sanitized = _FILTERED.sub("[filtered]", text)
    if len(sanitized) > INSTRUCTION_TEXT_LIMIT:
        sanitized = sanitized[:INSTRUCTION_TEXT_LIMIT] + "... [truncated]"
    return sanitized


def extract_keywords(text: str) -> List[str]:
    return [w for w in _NON_ALNUM.split(text.lower()) if len(w) > 2 and w not in STOP_WORDS]



# Plan model


class StepCriticality(str, Enum):
    CRITICAL = "critical"   # failure aborts the plan
    NORMAL = "normal"       # failure is logged, execution continues
    OPTIONAL = "optional"   # failure is ignored


@dataclass(frozen=True)
class PlanStep:
    id: int
    title: str
    action: str
    expected_outcome: str
    requires_confirmation: bool = False
    max_iterations: int = 3
    criticality: StepCriticality = StepCriticality.NORMAL
    target_app: Optional[str] = None
    expected_tools: Tuple[str, ...] = ()
    depends_on: Tuple[int, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int) -> "PlanStep":
        return cls(
            id=int(data.get("id", index)),
            title=str(data.get("title", f"Step {index + 1}")),
            action=str(data.get("action", "")),
            expected_outcome=str(data.get("expected_outcome", "")),
            requires_confirmation=bool(data.get("requires_confirmation", False)),
            max_iterations=int(data.get("max_iterations", 3)),
            criticality=StepCriticality(data.get("criticality", "normal")),
            target_app=data.get("target_app"),
            expected_tools=tuple(data.get("expected_tools") or ()),
            depends_on=tuple(int(d) for d in data.get("depends_on") or ()),
        )


@dataclass
class ExecutionPlan:
    command: str
    steps: List[PlanStep] = field(default_factory=list)
    summary: str = ""

    @property
    def estimated_total_iterations(self) -> int:
        return sum(s.max_iterations for s in self.steps)

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @classmethod
    def from_dict(cls, data: Dict[str, Any], command: str = "") -> "ExecutionPlan":
        steps = [PlanStep.from_dict(s, i) for i, s in enumerate(data.get("steps") or [])]
        return cls(command=data.get("command", command), steps=steps, summary=data.get("summary", ""))


@dataclass(frozen=True)
class StepOutcome:
    """kind is one of succeeded / uncertain / failed / skipped."""
    kind: str
    confidence: float = 0.0
    detail: str = ""

    @classmethod
    def succeeded(cls, confidence: float, evidence: str) -> "StepOutcome":
        return cls("succeeded", confidence, evidence)

    @classmethod
    def uncertain(cls, confidence: float, evidence: str) -> "StepOutcome":
        return cls("uncertain", confidence, evidence)

    @classmethod
    def failed(cls, reason: str) -> "StepOutcome":
        return cls("failed", 0.0, reason)

    @classmethod
    def skipped(cls, reason: str) -> "StepOutcome":
        return cls("skipped", 0.0, reason)

    def describe(self) -> str:
        if self.kind in ("succeeded", "uncertain"):
            return f"{self.kind.capitalize()} (confidence: {self.confidence:.2f}, {self.detail})"
        return f"{self.kind.capitalize()} ({self.detail})"



# Step state machine


class StepStateMachine:
    def __init__(self, plan: Optional[ExecutionPlan] = None) -> None:
        self.plan: Optional[ExecutionPlan] = None
        self.current_step_index = 0
        self.current_step_iterations = 0
        self.step_outcomes: List[Tuple[int, StepOutcome]] = []
        self.aborted_reason = ""
        if plan is not None:
            self.load(plan)

    def load(self, plan: Optional[ExecutionPlan]) -> None:
        self.plan = plan if plan is not None and not plan.is_empty else None
        self.current_step_index = 0
        self.current_step_iterations = 0
        self.step_outcomes = []
        self.aborted_reason = ""
        self._pass_blocked_steps()

    @property
    def has_plan(self) -> bool:
        return self.plan is not None

    @property
    def current_step(self) -> Optional[PlanStep]:
        if self.plan is None or self.aborted_reason:
            return None
        if self.current_step_index >= len(self.plan.steps):
            return None
        return self.plan.steps[self.current_step_index]

    def outcome_for(self, step_id: int) -> Optional[StepOutcome]:
        for sid, outcome in self.step_outcomes:
            if sid == step_id:
                return outcome
        return None

    # --- progression

    def record_outcome(self, step: PlanStep, outcome: StepOutcome) -> None:
        self.step_outcomes.append((step.id, outcome))
        logger.info("Step %d (%s): %s", step.id + 1, step.title, outcome.describe())

    def advance(self) -> Optional[PlanStep]:
        self.current_step_index += 1
        self.current_step_iterations = 0
        self._pass_blocked_steps()
        return self.current_step

    def _pass_blocked_steps(self) -> None:
        """Skip non-critical steps whose dependencies are unmet; abort on a blocked critical step."""
        step = self.current_step
        while step is not None:
            reason = self.can_proceed_to_step(step)
            if reason is None:
                return
            if self.effective_criticality(step) is StepCriticality.CRITICAL:
                self.abort(f"Critical step {step.id + 1} ({step.title}) blocked by dependency: {reason}")
                return
            self.record_outcome(step, StepOutcome.skipped(f"Dependency not met: {reason}"))
            self.current_step_index += 1
            step = self.current_step

    def abort(self, reason: str) -> None:
        self.aborted_reason = reason
        logger.warning("Plan aborted: %s", reason)

    def observe_iteration(self, text_content: str) -> Optional[StepOutcome]:
        """
        Validate the active step against this iteration's model text. A succeeded step
        advances; a step that exhausts its iteration allowance is recorded as failed and
        either advances or aborts the plan depending on its effective criticality.
        """
        step = self.current_step
        if step is None:
            return None
        self.current_step_iterations += 1

        outcome = self.validate_step_outcome(step, text_content)
        if outcome.kind == "succeeded":
            self.record_outcome(step, outcome)
            self.advance()
            return outcome

        if self.current_step_iterations < step.max_iterations:
            return outcome

        if outcome.kind == "uncertain":
            self.record_outcome(step, outcome)
            self.advance()
            return outcome

        self.record_outcome(step, outcome)
        if self.effective_criticality(step) is StepCriticality.CRITICAL:
            self.abort(f"Critical step {step.id + 1} failed: {outcome.detail}")
        else:
            self.advance()
        return outcome

    # --- validation

    def compute_heuristic_score(self, step: PlanStep, text_content: str) -> float:
        score = 0.0
        factors = 0
        lowered = text_content.lower()

        keywords = extract_keywords(step.expected_outcome)
        if keywords:
            score += sum(1 for k in keywords if k in lowered) / len(keywords)
            factors += 1

        score += 0.0 if any(w in lowered for w in ERROR_WORDS) else 0.8
        factors += 1

        if step.expected_tools:
            used = any(t.lower() in lowered for t in step.expected_tools)
            score += 0.9 if used else 0.3
            factors += 1

        if contains_completion_token(text_content):
            score += 0.9
            factors += 1

        return score / factors if factors else 0.5

    def validate_step_outcome(self, step: PlanStep, text_content: str) -> StepOutcome:
        score = self.compute_heuristic_score(step, text_content)
        if score >= SUCCESS_SCORE:
            return StepOutcome.succeeded(score, f"Heuristic score {score:.2f}: text matches expected outcome")
        if score <= FAILURE_SCORE:
            return StepOutcome.failed(f"Heuristic score {score:.2f}: outcome does not match expected")
        return StepOutcome.uncertain(score, f"Heuristic score {score:.2f}: uncertain match")

    def can_proceed_to_step(self, step: PlanStep) -> Optional[str]:
        """
        None when every dependency succeeded (or is uncertain); otherwise the blocking reason.
        Step numbers in messages are 1-based (id + 1), as in the planner prompt.
        """
        for dep in step.depends_on:
            outcome = self.outcome_for(dep)
            if outcome is None:
                return f"Dependency step {dep + 1} has not been executed yet"
            if outcome.kind == "failed":
                return f"Dependency step {dep + 1} failed: {outcome.detail}"
            if outcome.kind == "skipped":
                return f"Dependency step {dep + 1} was skipped: {outcome.detail}"
        return None

    @staticmethod
    def effective_criticality(step: PlanStep) -> StepCriticality:
        if step.criticality is not StepCriticality.NORMAL:
            return step.criticality
        action = step.action.lower()
        if any(k in action for k in CRITICAL_ACTION_KEYWORDS):
            return StepCriticality.CRITICAL
        return StepCriticality.NORMAL

    # --- prompt text

    def build_step_instruction(self, step: PlanStep, plan: Optional[ExecutionPlan] = None) -> str:
        plan = plan or self.plan
        total = len(plan.steps) if plan is not None else 1
        parts = [
            f"Step {step.id + 1} of {total}: {sanitize_plan_text(step.title)}",
            sanitize_plan_text(step.action),
        ]
        if step.target_app:
            parts.append(f"TARGET APP: {sanitize_plan_text(step.target_app)}")
        parts.append(f"EXPECTED RESULT: {sanitize_plan_text(step.expected_outcome)}")

        if step.id > 0 and plan is not None:
            previous = ", ".join(s.title for s in plan.steps[: step.id])
            parts.append(f"Previous steps completed: {previous}")

        failed = [sid for sid, o in self.step_outcomes if o.kind == "failed"]
        if failed:
            described = ", ".join(f"Step {sid + 1}" for sid in failed)
            parts.append(f"WARNING: Previous steps failed: {described}. Verify preconditions before acting.")

        return "\n\n".join(parts)

    def current_instruction(self) -> str:
        step = self.current_step
        return self.build_step_instruction(step) if step is not None else ""
