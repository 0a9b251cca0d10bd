"""
state.py

Shared state + core data contracts for the Vigilant action-safety and run-control core.

This file is intentionally framework-agnostic:
- No LangGraph imports here.
- No collaborator implementations here.
- Only: risk vocabulary, tool-call/context/verdict/audit records, the iteration-scoped
  GraphState threaded through the graph, telemetry and the final RunResult.

Other files:
- gate.py: ActionSafetyGate (risk.py + arbiter.py + audit log + approval cache)
- nodes.py: node functions that mutate GraphState (perceive/plan/act/observe/evaluate/recover/complete)
- edges.py: ordered first-match-wins routing tables (state -> next node key)
- workflow.py: graph wiring + RunOrchestrator

Design goals:
- Risk levels are totally ordered and never downgraded inside one evaluation
- Verdicts and contexts are immutable snapshots
- GraphState fields never hold None so graph updates always propagate
- Observability: events + spans
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Literal, Optional, Tuple


  
# Basic Types
  

EvaluationMethod = Literal["heuristic", "llm"]

PermissionMode = Literal["standard", "autonomous", "yolo"]

ErrorClassName = Literal["transient", "permanent", "stuck", "resource", "none"]


class RiskLevel(IntEnum):
    """Totally ordered risk scale: safe < moderate < high < critical."""
    SAFE = 0
    MODERATE = 1
    HIGH = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, text: str) -> Optional["RiskLevel"]:
        try:
            return cls[text.strip().upper()]
        except KeyError:
            return None


  
# Completion sources (centralized)
  

class CompletionSource:
    TOKEN_MATCH = "token match"
    MODEL_DONE = "model indicated done"
    RESOURCE_ERROR = "resource limit error detected"
    MAX_ITERATIONS = "max iterations reached"
    TIME_LIMIT = "time limit reached"
    TOKEN_BUDGET = "token budget exceeded"
    RECOVERY_EXHAUSTED = "max recovery attempts exceeded"

    @staticmethod
    def total_recovery_exceeded(count: int) -> str:
        return f"max total recovery attempts exceeded ({count})"

    # Sources that end the run without the task being achieved.
    FORCED_PREFIXES = (
        RESOURCE_ERROR,
        MAX_ITERATIONS,
        TIME_LIMIT,
        TOKEN_BUDGET,
        "max total recovery attempts",
        RECOVERY_EXHAUSTED,
    )


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


  
# Telemetry (events + spans)
  

@dataclass
class Span:
    name: str
    start_ms: int
    end_ms: Optional[int] = None
    attrs: Dict[str, Any] = field(default_factory=dict)

    def close(self) -> None:
        self.end_ms = now_ms()


@dataclass
class Telemetry:
    """
    - events: structured logs (append-only)
    - spans: trace-like timing blocks (append-only)
    """
    events: List[Dict[str, Any]] = field(default_factory=list)
    spans: List[Span] = field(default_factory=list)

    def event(self, type_: str, **kwargs: Any) -> None:
        self.events.append({"ts_ms": now_ms(), "type": type_, **kwargs})

    def span(self, name: str, **attrs: Any) -> Span:
        sp = Span(name=name, start_ms=now_ms(), attrs=dict(attrs))
        self.spans.append(sp)
        return sp

    def events_of(self, type_: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == type_]


  
# Tool call + evaluation context
  

@dataclass(frozen=True)
class ToolCall:
    """
    One proposed action, built once by the plan step.
    input values are always strings (model arguments are stringified by the client).
    """
    name: str
    input: Dict[str, str] = field(default_factory=dict)
    iteration: int = 0
    step_instruction: Optional[str] = None
    call_id: Optional[str] = None

    def get(self, key: str, default: str = "") -> str:
        return self.input.get(key, default)


@dataclass(frozen=True)
class ActionContext:
    """
    Snapshot of the desktop around an evaluation. Re-captured every iteration.
    recent_tool_calls: ordered (tool name, summary) pairs, oldest first.
    """
    active_app_name: Optional[str] = None
    active_app_bundle_id: Optional[str] = None
    window_title: Optional[str] = None
    focused_element_role: Optional[str] = None
    focused_element_label: Optional[str] = None
    current_url: Optional[str] = None
    recent_tool_calls: Tuple[Tuple[str, str], ...] = ()

    def with_recent(self, recent: List[Tuple[str, str]]) -> "ActionContext":
        return ActionContext(
            active_app_name=self.active_app_name,
            active_app_bundle_id=self.active_app_bundle_id,
            window_title=self.window_title,
            focused_element_role=self.focused_element_role,
            focused_element_label=self.focused_element_label,
            current_url=self.current_url,
            recent_tool_calls=tuple(recent),
        )


  
# Verdicts + audit
  

@dataclass(frozen=True)
class RiskVerdict:
    level: RiskLevel
    reason: str
    tool: str
    requires_approval: bool = False
    approval_prompt: Optional[str] = None
    session_cache_key: Optional[str] = None


@dataclass
class AuditEntry:
    """
    One gated decision. approved stays None until a confirmation outcome is recorded
    (or forever, for auto-proceed verdicts).
    """
    timestamp: float
    run_id: str
    tool: str
    input_summary: str
    risk_level: RiskLevel
    reason: str
    method: EvaluationMethod
    app_context: str
    approved: Optional[bool] = None


  
# Per-iteration tool bookkeeping
  

@dataclass
class ToolCallSummary:
    tool_name: str
    result_text: str
    is_error: bool = False
    skipped: bool = False


  
# Graph State (single source of truth for one run)
  

@dataclass
class GraphState:
    """
    The only mutable object flowing through the graph for one run.

    Identity:
    - run_id / command / max_iterations / iteration

    Observation:
    - pre/post action screenshots (b"" = none) + ui_tree_summary

    Model response:
    - text_content / pending_tool_calls / has_tool_calls / has_more_work

    Control:
    - completion + stuck flags with their source/reason
    - recovery counters (per stuck episode and run-total) + strategy index
    - error + cancellation flags

    Transient fields are reset at the top of every PERCEIVE; everything else persists
    across iterations of the run.
    """
    run_id: str = ""
    command: str = ""
    max_iterations: int = 50
    iteration: int = 0

    memory_context: str = ""
    last_memory_refresh_iteration: int = 0

    # Observation
    pre_action_screenshot: bytes = b""
    post_action_screenshot: bytes = b""
    ui_tree_summary: str = ""
    screenshot_available: bool = True

    # Conversation + model response
    messages: List[Dict[str, Any]] = field(default_factory=list)
    text_content: str = ""
    pending_tool_calls: List[ToolCall] = field(default_factory=list)
    has_tool_calls: bool = False
    has_more_work: bool = False

    # Action tracking
    last_tool_name: str = ""
    consecutive_screenshots_without_action: int = 0
    adaptive_skipped_screenshot: bool = False
    visual_diff_description: str = ""
    screenshots_identical: bool = False
    ax_verification_succeeded: bool = False

    # Tool results
    tool_call_summaries: List[ToolCallSummary] = field(default_factory=list)
    recent_tool_calls: List[Tuple[str, str]] = field(default_factory=list)
    has_visual_tool_calls: bool = False
    any_tool_calls_executed: bool = False
    any_tool_calls_succeeded: bool = False
    any_visual_tool_calls_executed: bool = False
    failed_tool_count: int = 0

    # Completion / stuck
    task_complete: bool = False
    completion_source: str = ""
    is_stuck: bool = False
    stuck_reason: str = ""
    has_escalated_to_brain: bool = False

    # Tokens
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    # Errors
    has_error: bool = False
    error_message: str = ""
    is_cancelled: bool = False

    # Recovery
    recovery_attempts: int = 0
    total_recovery_attempts: int = 0
    max_recovery_attempts: int = 5
    max_total_recovery_attempts: int = 8
    recovery_strategy_index: int = 0
    last_error_class: ErrorClassName = "none"

    telemetry: Telemetry = field(default_factory=Telemetry)

    def ensure_run_id(self) -> None:
        if not self.run_id:
            self.run_id = new_id("run")

    def reset_for_new_iteration(self) -> None:
        # last_tool_name and the consecutive-screenshot counter deliberately survive
        self.text_content = ""
        self.pending_tool_calls = []
        self.has_tool_calls = False
        self.has_more_work = False
        self.tool_call_summaries = []
        self.failed_tool_count = 0
        self.has_visual_tool_calls = False
        self.post_action_screenshot = b""
        self.ui_tree_summary = ""
        self.adaptive_skipped_screenshot = False
        self.visual_diff_description = ""
        self.screenshots_identical = False
        self.ax_verification_succeeded = False

    def mark_complete(self, source: str) -> None:
        self.task_complete = True
        self.completion_source = source
        self.telemetry.event("completion", source=source, iteration=self.iteration)

    def mark_stuck(self, reason: str) -> None:
        self.is_stuck = True
        self.stuck_reason = reason
        self.telemetry.event("stuck_detected", reason=reason, iteration=self.iteration)

    def clear_stuck(self) -> None:
        self.is_stuck = False
        self.stuck_reason = ""

    def mark_error(self, message: str) -> None:
        self.has_error = True
        self.error_message = message
        self.telemetry.event("error", message=message, iteration=self.iteration)

    def add_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    def reset_recovery_strategies(self) -> None:
        self.recovery_strategy_index = 0
        self.recovery_attempts = 0

    def remember_tool_call(self, name: str, summary: str, keep: int = 10) -> None:
        self.recent_tool_calls.append((name, summary))
        if len(self.recent_tool_calls) > keep:
            del self.recent_tool_calls[: len(self.recent_tool_calls) - keep]


  
# Run result
  

@dataclass
class RunResult:
    run_id: str
    success: bool
    summary: str
    iterations: int
    input_tokens: int = 0
    output_tokens: int = 0
    completion_source: str = ""
    cancelled: bool = False
    audit_entries: List[AuditEntry] = field(default_factory=list)
