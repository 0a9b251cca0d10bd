"""
nodes.py

Node implementations for the Vigilant iteration loop.

Loop:
  PERCEIVE -> PLAN -> ACT -> OBSERVE -> EVALUATE -> {PERCEIVE | RECOVER | COMPLETE}

Design goals:
- Keep nodes framework-agnostic: no LangGraph imports.
- Collaborators (capture, model, executor, confirmation UI, memory) are injected as
  protocols by workflow.py; nodes only sequence calls and record results.
- Every node checks the run's cancellation token first and raises RunCancelled.
- PLAN is the only node whose collaborator failure ends the run; every other
  collaborator failure degrades (no screenshot, error summary, canned guidance).

Files:
- state.py: GraphState + records
- gate.py: ActionSafetyGate consulted by ACT
- stuck.py / recovery.py / plan.py: helpers owned by the per-run RunContext
- edges.py: routing
- workflow.py: wiring + RunOrchestrator
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from src.shared.agent_config import AgentSettings
from src.shared.dataclasses import FocusedElementDetail, ModelResponse, ToolExecutionResult
from src.shared.utils import truncate

from .arbiter import ModelClient
from .confirmation import CancellationToken, ConfirmationUI, PendingConfirmation, await_confirmation
from .errors import CaptureError, ErrorClassifier, ModelError
from .gate import ActionSafetyGate
from .plan import StepStateMachine, contains_completion_token
from .recovery import RecoveryStrategyChain
from .state import ActionContext, CompletionSource, ErrorClassName, GraphState, ToolCall, ToolCallSummary
from .stuck import StuckDetector, classify_visual_diff, hamming_distance, perceptual_hash

logger = logging.getLogger("vigilant.nodes")



# Constants


SCREEN_MAX_DIMENSION = 1280
SCREEN_QUALITY = 0.85
TOOL_SUMMARY_LIMIT = 500
ADAPTIVE_SKIP_MIN_ITERATION = 2
MAX_CONSECUTIVE_SCREENSHOTS = 2

# Tools whose effect is not visible in a screenshot.
NON_VISUAL_TOOLS = frozenset({
    "remember", "recall",
    "vault_read", "vault_write", "vault_search", "vault_list", "vault_append",
    "task_create", "task_update", "task_list", "task_complete",
    "take_screenshot", "read_screen",
    "shell_exec", "run_shell_command",
})

# After one of these, PERCEIVE may reuse the previous screenshot.
ADAPTIVE_SKIP_TOOLS = NON_VISUAL_TOOLS | {"type_text"}

TEXT_INPUT_ROLES = frozenset({"AXTextField", "AXTextArea", "AXComboBox", "AXSearchField"})

SCREENSHOT_UNAVAILABLE_NOTICE = (
    "\n\n[NOTICE: Screenshot is currently unavailable. Rely on the accessibility tree "
    "for UI state. Use keyboard navigation (Tab, arrow keys, Enter) when possible "
    "instead of mouse coordinates.]"
)



# Collaborator protocols


class CaptureProvider(Protocol):
    async def capture_screen(self, target: Optional[int], max_dimension: int, quality: float) -> bytes: ...
    async def get_ui_tree_summary(self, target: Optional[int]) -> str: ...
    async def get_focused_element_detail(self, target: Optional[int]) -> Optional[FocusedElementDetail]: ...


class ContextProvider(Protocol):
    async def current_context(self) -> ActionContext: ...


class ToolExecutor(Protocol):
    async def execute(self, call: ToolCall) -> ToolExecutionResult: ...


class MemoryProvider(Protocol):
    async def build_context(self, command: str) -> str: ...



# Per-run runtime


@dataclass
class RunContext:
    """
    Mutable helpers scoped to one run. Lives outside GraphState so the graph only
    carries plain data; workflow.py creates one per run.
    """
    token: CancellationToken = field(default_factory=CancellationToken)
    detector: StuckDetector = field(default_factory=StuckDetector)
    steps: StepStateMachine = field(default_factory=StepStateMachine)
    target: Optional[int] = None
    started_at: float = field(default_factory=time.monotonic)
    on_pending: Optional[Callable[[Optional[PendingConfirmation]], None]] = None
    last_state: Optional[GraphState] = None



# Internal helpers


def _enter(state: GraphState, ctx: RunContext, name: str):
    ctx.last_state = state
    ctx.token.raise_if_cancelled()
    return state.telemetry.span(name, iteration=state.iteration)


def _safe_err(e: BaseException) -> str:
    return f"{type(e).__name__}: {e}"


def _budget_exhausted(state: GraphState, ctx: RunContext, settings: AgentSettings) -> Optional[str]:
    if state.iteration >= state.max_iterations:
        return CompletionSource.MAX_ITERATIONS
    if settings.max_run_seconds and time.monotonic() - ctx.started_at > settings.max_run_seconds:
        return CompletionSource.TIME_LIMIT
    if settings.max_total_tokens and state.total_tokens > settings.max_total_tokens:
        return CompletionSource.TOKEN_BUDGET
    return None


def should_skip_screenshot(state: GraphState) -> bool:
    if state.iteration <= ADAPTIVE_SKIP_MIN_ITERATION:
        return False
    if state.last_tool_name in ADAPTIVE_SKIP_TOOLS:
        return True
    return state.consecutive_screenshots_without_action >= MAX_CONSECUTIVE_SCREENSHOTS


async def _capture(capture: CaptureProvider, ctx: RunContext) -> bytes:
    try:
        return await capture.capture_screen(ctx.target, SCREEN_MAX_DIMENSION, SCREEN_QUALITY)
    except CaptureError as e:
        logger.warning("Screenshot capture failed, continuing with accessibility tree only: %s", e)
        return b""


def _tool_results_message(summaries: List[ToolCallSummary], calls: List[ToolCall]) -> Dict[str, Any]:
    results = []
    for call, summary in zip(calls, summaries):
        results.append({
            "call_id": call.call_id,
            "name": summary.tool_name,
            "content": summary.result_text,
            "is_error": summary.is_error,
        })
    text = "\n".join(
        f"[{r['name']}] {'ERROR: ' if r['is_error'] else ''}{r['content']}" for r in results
    )
    return {"role": "user", "content": text, "tool_results": results}



# Nodes


async def node_perceive(
    state: GraphState,
    capture: CaptureProvider,
    ctx: RunContext,
    *,
    settings: AgentSettings,
    memory: Optional[MemoryProvider] = None,
) -> GraphState:
    sp = _enter(state, ctx, "node_perceive")
    try:
        exhausted = _budget_exhausted(state, ctx, settings)
        if exhausted:
            state.mark_complete(exhausted)
            logger.info("Run %s force-completing before iteration %d: %s", state.run_id, state.iteration + 1, exhausted)
            return state

        state.reset_for_new_iteration()
        state.iteration += 1

        if should_skip_screenshot(state):
            state.ui_tree_summary = await capture.get_ui_tree_summary(ctx.target)
            state.adaptive_skipped_screenshot = True
            state.screenshot_available = False
            state.telemetry.event("screenshot_skipped", last_tool=state.last_tool_name,
                                  consecutive=state.consecutive_screenshots_without_action)
        else:
            shot = await _capture(capture, ctx)
            state.consecutive_screenshots_without_action += 1
            state.screenshot_available = bool(shot)
            state.ui_tree_summary = await capture.get_ui_tree_summary(ctx.target)
            state.pre_action_screenshot = shot

        if memory is not None and (
            not state.memory_context
            or state.iteration - state.last_memory_refresh_iteration >= settings.memory_refresh_interval
        ):
            state.memory_context = await memory.build_context(state.command)
            state.last_memory_refresh_iteration = state.iteration

        state.telemetry.event(
            "perceived",
            iteration=state.iteration,
            screenshot=state.screenshot_available,
            adaptive_skip=state.adaptive_skipped_screenshot,
            ui_tree_chars=len(state.ui_tree_summary),
        )
        return state
    finally:
        sp.close()


async def node_plan(
    state: GraphState,
    client: ModelClient,
    ctx: RunContext,
    *,
    system_prompt: str,
    tool_schemas: List[Dict[str, Any]],
    model: str,
    max_tokens: int,
) -> GraphState:
    sp = _enter(state, ctx, "node_plan")
    try:
        prompt = system_prompt
        if state.memory_context:
            prompt += f"\n\n{state.memory_context}"
        step_instruction = ctx.steps.current_instruction()
        if step_instruction:
            prompt += f"\n\nCURRENT STEP:\n{step_instruction}"
        if not state.screenshot_available:
            prompt += SCREENSHOT_UNAVAILABLE_NOTICE

        if not state.messages:
            state.messages.append({"role": "user", "content": state.command})
        observation: Dict[str, Any] = {
            "role": "user",
            "content": f"Iteration {state.iteration}. Accessibility tree:\n{state.ui_tree_summary or '(empty)'}",
        }
        state.messages.append(observation)

        # Screenshots ride only on the outgoing request, never in stored history.
        request = list(state.messages)
        if state.screenshot_available and state.pre_action_screenshot:
            request[-1] = {**observation, "images": [state.pre_action_screenshot]}

        try:
            response: ModelResponse = await client.send_message(request, prompt, tool_schemas, model, max_tokens)
        except Exception as e:
            state.mark_error(f"Model call failed: {_safe_err(e)}")
            logger.error("Plan failed at iteration %d: %s", state.iteration, e)
            if isinstance(e, ModelError):
                raise
            raise ModelError(str(e)) from e

        state.text_content = response.text_content
        state.pending_tool_calls = [
            ToolCall(
                name=tc.name,
                input=dict(tc.input),
                iteration=state.iteration,
                step_instruction=step_instruction or None,
                call_id=tc.call_id,
            )
            for tc in response.tool_calls
        ]
        state.has_tool_calls = bool(state.pending_tool_calls)
        state.has_more_work = state.has_tool_calls
        state.add_tokens(response.input_tokens, response.output_tokens)
        state.messages.append({
            "role": "assistant",
            "content": response.text_content,
            "tool_calls": [
                {"id": c.call_id, "name": c.name, "input": dict(c.input)} for c in state.pending_tool_calls
            ],
        })

        state.telemetry.event("planned", iteration=state.iteration,
                              tool_calls=[c.name for c in state.pending_tool_calls],
                              input_tokens=response.input_tokens, output_tokens=response.output_tokens)
        return state
    finally:
        sp.close()


async def _execute_with_retry(
    executor: ToolExecutor,
    call: ToolCall,
    retry_delay_s: float,
) -> ToolCallSummary:
    """One retry after `retry_delay_s` when the failure classifies as transient."""
    summary, error_class = await _execute_once(executor, call)
    if error_class == "transient":
        logger.warning("Tool %s failed transiently, retrying in %.1fs: %s",
                       call.name, retry_delay_s, summary.result_text[:100])
        await asyncio.sleep(retry_delay_s)
        summary, _ = await _execute_once(executor, call)
    return summary


async def _execute_once(executor: ToolExecutor, call: ToolCall) -> Tuple[ToolCallSummary, ErrorClassName]:
    try:
        result = await executor.execute(call)
    except Exception as e:
        # Executor exceptions become error summaries, classified by type before message.
        summary = ToolCallSummary(call.name, truncate(f"Exception: {e}", TOOL_SUMMARY_LIMIT), is_error=True)
        return summary, ErrorClassifier.classify_exception(e)
    summary = ToolCallSummary(call.name, truncate(result.summary, TOOL_SUMMARY_LIMIT), is_error=result.is_error)
    if not summary.is_error:
        return summary, "none"
    return summary, ErrorClassifier.classify_message(summary.result_text)


async def node_act(
    state: GraphState,
    gate: ActionSafetyGate,
    executor: ToolExecutor,
    context_provider: ContextProvider,
    ctx: RunContext,
    *,
    confirmation_ui: Optional[ConfirmationUI] = None,
    confirmation_timeout_s: float = 60.0,
    retry_delay_s: float = 1.0,
) -> GraphState:
    sp = _enter(state, ctx, "node_act")
    try:
        calls = list(state.pending_tool_calls)
        if not calls:
            return state

        summaries: List[ToolCallSummary] = []
        for call in calls:
            ctx.token.raise_if_cancelled()
            if call.name not in NON_VISUAL_TOOLS:
                state.has_visual_tool_calls = True

            context = (await context_provider.current_context()).with_recent(state.recent_tool_calls)
            verdict = await gate.evaluate(call, context)
            state.telemetry.event("gate_verdict", tool=call.name, level=verdict.level.label,
                                  requires_approval=verdict.requires_approval, reason=verdict.reason)

            if verdict.requires_approval:
                pending = await await_confirmation(
                    confirmation_ui,
                    call.name,
                    verdict.approval_prompt or f"{verdict.reason}\n\nTool: {call.name}",
                    verdict.level,
                    ctx.token,
                    timeout_s=confirmation_timeout_s,
                    on_pending=ctx.on_pending,
                )
                approved = bool(pending.outcome)
                gate.record_approval_outcome(call.name, approved)
                if verdict.session_cache_key:
                    gate.record_session_approval(verdict.session_cache_key, approved)
                ctx.token.raise_if_cancelled()

                if not approved:
                    summary = ToolCallSummary(
                        call.name,
                        f"Skipped: user denied {call.name} ({pending.source})",
                        is_error=False,
                        skipped=True,
                    )
                    summaries.append(summary)
                    state.remember_tool_call(call.name, summary.result_text)
                    state.telemetry.event("tool_skipped", tool=call.name, source=pending.source)
                    continue

            summary = await _execute_with_retry(executor, call, retry_delay_s)
            summaries.append(summary)
            state.any_tool_calls_executed = True
            if call.name not in NON_VISUAL_TOOLS:
                state.any_visual_tool_calls_executed = True
            if summary.is_error:
                state.failed_tool_count += 1
            else:
                state.any_tool_calls_succeeded = True
            state.remember_tool_call(call.name, summary.result_text)
            state.telemetry.event("tool_executed", tool=call.name, is_error=summary.is_error)

        state.tool_call_summaries = summaries
        state.last_tool_name = calls[-1].name
        state.consecutive_screenshots_without_action = 0
        state.messages.append(_tool_results_message(summaries, calls))

        logger.info("Iteration %d executed %d tool calls (%d failed)",
                    state.iteration, len(summaries), state.failed_tool_count)
        return state
    finally:
        sp.close()


def _ax_verified(last_tool: str, detail: Optional[FocusedElementDetail]) -> bool:
    if detail is None:
        return False
    if last_tool == "type_text":
        return detail.role in TEXT_INPUT_ROLES and bool(detail.value)
    if last_tool in ("click", "right_click"):
        return detail.selected_child_count > 0
    return False


async def node_observe(state: GraphState, capture: CaptureProvider, ctx: RunContext) -> GraphState:
    sp = _enter(state, ctx, "node_observe")
    try:
        if state.adaptive_skipped_screenshot:
            state.ui_tree_summary = await capture.get_ui_tree_summary(ctx.target)
            ctx.detector.track_ax(state.ui_tree_summary)
            ctx.steps.observe_iteration(state.text_content)
            return state

        if state.last_tool_name in ("type_text", "click", "right_click"):
            detail = await capture.get_focused_element_detail(ctx.target)
            if _ax_verified(state.last_tool_name, detail):
                state.ui_tree_summary = await capture.get_ui_tree_summary(ctx.target)
                state.ax_verification_succeeded = True
                ctx.detector.track_ax(state.ui_tree_summary)
                ctx.steps.observe_iteration(state.text_content)
                state.telemetry.event("ax_verified", tool=state.last_tool_name)
                return state

        post = await _capture(capture, ctx)
        state.post_action_screenshot = post
        state.ui_tree_summary = await capture.get_ui_tree_summary(ctx.target)

        if state.pre_action_screenshot and post:
            pre_hash = perceptual_hash(state.pre_action_screenshot)
            post_hash = perceptual_hash(post)
            if pre_hash is not None and post_hash is not None:
                description, identical = classify_visual_diff(hamming_distance(pre_hash, post_hash))
                state.visual_diff_description = description
                state.screenshots_identical = identical

        if post:
            ctx.detector.track_hash(post)
        ctx.detector.track_ax(state.ui_tree_summary)
        ctx.detector.track_text(state.text_content)
        ctx.steps.observe_iteration(state.text_content)

        state.telemetry.event("observed", iteration=state.iteration, screenshot=bool(post),
                              identical=state.screenshots_identical, diff=state.visual_diff_description)
        return state
    finally:
        sp.close()


async def node_evaluate(
    state: GraphState,
    ctx: RunContext,
    *,
    stuck_min_iteration: int = 2,
) -> GraphState:
    sp = _enter(state, ctx, "node_evaluate")
    try:
        token_found = contains_completion_token(state.text_content)
        if token_found or not state.has_tool_calls:
            state.mark_complete(CompletionSource.TOKEN_MATCH if token_found else CompletionSource.MODEL_DONE)
            return state

        summaries = state.tool_call_summaries
        failed = state.failed_tool_count
        error_class = ErrorClassifier.classify_summaries(summaries)
        state.last_error_class = error_class
        if error_class != "none":
            logger.info("Iteration %d error class=%s, failed=%d/%d", state.iteration, error_class, failed, len(summaries))

        if error_class == "resource":
            state.mark_complete(CompletionSource.RESOURCE_ERROR)
            return state

        all_failed = bool(summaries) and failed == len(summaries)
        transient_only = error_class == "transient" and failed > 0
        if state.iteration >= stuck_min_iteration and (not state.has_more_work or all_failed) and not transient_only:
            reason = ctx.detector.detect_stuck()
            if reason:
                state.mark_stuck(reason)
                return state

        if state.total_recovery_attempts >= state.max_total_recovery_attempts:
            state.mark_complete(CompletionSource.total_recovery_exceeded(state.total_recovery_attempts))
            return state

        if state.recovery_strategy_index > 0:
            state.reset_recovery_strategies()
            state.telemetry.event("recovery_reset", iteration=state.iteration)
        return state
    finally:
        sp.close()


async def node_recover(state: GraphState, recovery: RecoveryStrategyChain, ctx: RunContext) -> GraphState:
    sp = _enter(state, ctx, "node_recover")
    try:
        state.recovery_attempts += 1
        state.total_recovery_attempts += 1

        shot = state.post_action_screenshot or state.pre_action_screenshot
        outcome = await recovery.run(
            state.recovery_strategy_index,
            state.command,
            state.stuck_reason,
            state.iteration,
            shot,
        )
        state.add_tokens(outcome.input_tokens, outcome.output_tokens)
        if outcome.escalated:
            state.has_escalated_to_brain = True
        if outcome.guidance:
            state.messages.append({"role": "user", "content": outcome.guidance})

        state.telemetry.event("recovery_strategy", strategy=outcome.strategy, label=outcome.label,
                              reason=state.stuck_reason, attempt=state.recovery_attempts)
        logger.info("Recovery attempt %d used strategy %d (%s) for: %s",
                    state.recovery_attempts, outcome.strategy, outcome.label, state.stuck_reason)

        state.recovery_strategy_index += 1
        state.clear_stuck()
        ctx.detector.clear_tracking()
        return state
    finally:
        sp.close()


async def node_complete(state: GraphState, ctx: RunContext) -> GraphState:
    # Terminal: no cancellation check, the run is already unwinding.
    ctx.last_state = state
    sp = state.telemetry.span("node_complete", iteration=state.iteration)
    try:
        if not state.task_complete:
            state.mark_complete(CompletionSource.RECOVERY_EXHAUSTED)
        logger.info("Run %s complete after %d iterations (%s)",
                    state.run_id, state.iteration, state.completion_source)
        return state
    finally:
        sp.close()


def summarize_run(state: GraphState) -> Tuple[bool, str]:
    """(success, summary) for a finished state."""
    if state.has_error:
        return False, f"Run failed: {state.error_message}"
    forced = state.completion_source.startswith(CompletionSource.FORCED_PREFIXES)
    text = state.text_content.strip() or state.completion_source
    if forced:
        return False, f"Stopped ({state.completion_source}). {text}".strip()
    return True, text
