from __future__ import annotations

import asyncio
import io

import pytest
from PIL import Image

from src.core import nodes as N
from src.core.confirmation import CancellationToken
from src.core.errors import CaptureError, ModelError, RunCancelled
from src.core.gate import ActionSafetyGate
from src.core.plan import ExecutionPlan, PlanStep, StepStateMachine
from src.core.recovery import RecoveryStrategyChain
from src.core.state import ActionContext, CompletionSource, GraphState, RiskLevel, ToolCall, ToolCallSummary
from src.shared.agent_config import AgentSettings
from src.shared.dataclasses import FocusedElementDetail, ModelResponse, ModelToolCall, ToolExecutionResult


def _png(shade: int = 0) -> bytes:
    img = Image.new("L", (32, 32))
    for x in range(32):
        for y in range(32):
            img.putpixel((x, y), (x * 8 + shade) % 256)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class FakeCapture:
    def __init__(self, shot: bytes = b"", tree: str = "window: Finder", fail: bool = False,
                 detail: FocusedElementDetail | None = None) -> None:
        self.shot = shot or _png()
        self.tree = tree
        self.fail = fail
        self.detail = detail
        self.captures = 0

    async def capture_screen(self, target, max_dimension, quality):
        self.captures += 1
        if self.fail:
            raise CaptureError("screenshot capture failed")
        return self.shot

    async def get_ui_tree_summary(self, target):
        return self.tree

    async def get_focused_element_detail(self, target):
        return self.detail


class FakeContext:
    def __init__(self, context: ActionContext | None = None) -> None:
        self.context = context or ActionContext(active_app_name="Finder")

    async def current_context(self) -> ActionContext:
        return self.context


class FakeExecutor:
    def __init__(self, *results: ToolExecutionResult | Exception) -> None:
        self.results = list(results)
        self.calls: list[ToolCall] = []

    async def execute(self, call: ToolCall) -> ToolExecutionResult:
        self.calls.append(call)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ToolExecutionResult("ok")


class FakeModel:
    def __init__(self, response: ModelResponse | None = None, error: Exception | None = None) -> None:
        self.response = response or ModelResponse(text_content="thinking")
        self.error = error
        self.requests: list[dict] = []

    async def send_message(self, conversation, system_prompt, tool_schemas, model, max_tokens):
        self.requests.append({"conversation": conversation, "system_prompt": system_prompt})
        if self.error is not None:
            raise self.error
        return self.response


class FakeUI:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.levels: list[RiskLevel] = []

    async def request_confirmation(self, prompt: str, level: RiskLevel) -> bool:
        self.levels.append(level)
        return self.answer


class FakeMemory:
    def __init__(self) -> None:
        self.calls = 0

    async def build_context(self, command: str) -> str:
        self.calls += 1
        return f"memory #{self.calls}"


def _gate(mode: str = "standard") -> ActionSafetyGate:
    gate = ActionSafetyGate(permission_mode=mode)
    gate.start_run("run_nodes")
    return gate


# --- perceive


def test_perceive_force_completes_when_iterations_are_used_up() -> None:
    capture = FakeCapture()
    state = GraphState(iteration=5, max_iterations=5)
    asyncio.run(N.node_perceive(state, capture, N.RunContext(), settings=AgentSettings()))
    assert state.task_complete
    assert state.completion_source == CompletionSource.MAX_ITERATIONS
    assert capture.captures == 0


def test_perceive_force_completes_on_token_budget() -> None:
    state = GraphState(total_input_tokens=900, total_output_tokens=200)
    asyncio.run(N.node_perceive(state, FakeCapture(), N.RunContext(), settings=AgentSettings(max_total_tokens=1000)))
    assert state.completion_source == CompletionSource.TOKEN_BUDGET


def test_perceive_captures_and_resets_transient_fields() -> None:
    state = GraphState(text_content="old", failed_tool_count=2)
    asyncio.run(N.node_perceive(state, FakeCapture(), N.RunContext(), settings=AgentSettings()))
    assert state.iteration == 1
    assert state.text_content == ""
    assert state.failed_tool_count == 0
    assert state.pre_action_screenshot
    assert state.screenshot_available
    assert state.ui_tree_summary == "window: Finder"


def test_perceive_skips_screenshot_after_non_visual_tool() -> None:
    capture = FakeCapture()
    state = GraphState(iteration=2, last_tool_name="run_shell_command")
    asyncio.run(N.node_perceive(state, capture, N.RunContext(), settings=AgentSettings()))
    assert capture.captures == 0
    assert state.adaptive_skipped_screenshot
    assert not state.screenshot_available


def test_perceive_never_skips_in_early_iterations() -> None:
    capture = FakeCapture()
    state = GraphState(iteration=1, last_tool_name="run_shell_command")
    asyncio.run(N.node_perceive(state, capture, N.RunContext(), settings=AgentSettings()))
    assert capture.captures == 1


def test_perceive_survives_capture_failure() -> None:
    state = GraphState()
    asyncio.run(N.node_perceive(state, FakeCapture(fail=True), N.RunContext(), settings=AgentSettings()))
    assert not state.screenshot_available
    assert state.pre_action_screenshot == b""


def test_perceive_refreshes_memory_on_interval() -> None:
    memory = FakeMemory()
    settings = AgentSettings(memory_refresh_interval=2)
    state = GraphState()
    for _ in range(3):
        asyncio.run(N.node_perceive(state, FakeCapture(), N.RunContext(), settings=settings, memory=memory))
    assert memory.calls == 2
    assert state.memory_context == "memory #2"


def test_cancelled_token_stops_node_entry() -> None:
    ctx = N.RunContext(token=CancellationToken())
    ctx.token.cancel()
    with pytest.raises(RunCancelled):
        asyncio.run(N.node_perceive(GraphState(), FakeCapture(), ctx, settings=AgentSettings()))


# --- plan


def _plan(state: GraphState, model: FakeModel, ctx: N.RunContext | None = None) -> GraphState:
    return asyncio.run(N.node_plan(state, model, ctx or N.RunContext(), system_prompt="SYSTEM",
                                   tool_schemas=[], model="m", max_tokens=100))


def test_plan_sends_screenshot_without_storing_it() -> None:
    response = ModelResponse(
        text_content="Clicking OK",
        tool_calls=[ModelToolCall("click", {"element_description": "OK"}, "call_1")],
        input_tokens=100,
        output_tokens=20,
    )
    model = FakeModel(response)
    state = GraphState(command="press ok", iteration=1, pre_action_screenshot=b"png", ui_tree_summary="tree")
    _plan(state, model)

    sent = model.requests[0]["conversation"]
    assert sent[0] == {"role": "user", "content": "press ok"}
    assert sent[-1]["images"] == [b"png"]
    assert all("images" not in m for m in state.messages)

    assert state.has_tool_calls and state.has_more_work
    assert state.pending_tool_calls[0] == ToolCall("click", {"element_description": "OK"}, 1, None, "call_1")
    assert state.messages[-1]["tool_calls"] == [{"id": "call_1", "name": "click", "input": {"element_description": "OK"}}]
    assert state.total_tokens == 120


def test_plan_prompt_carries_step_and_unavailable_notice() -> None:
    step = PlanStep(id=0, title="Open Mail", action="open the mail app", expected_outcome="mail open")
    ctx = N.RunContext(steps=StepStateMachine(ExecutionPlan(command="x", steps=[step])))
    model = FakeModel()
    state = GraphState(command="x", iteration=1, screenshot_available=False)
    _plan(state, model, ctx)

    prompt = model.requests[0]["system_prompt"]
    assert "CURRENT STEP:\nStep 1 of 1: Open Mail" in prompt
    assert prompt.endswith(N.SCREENSHOT_UNAVAILABLE_NOTICE)
    assert not state.has_tool_calls


def test_plan_failure_marks_error_and_raises() -> None:
    state = GraphState(command="x", iteration=1)
    with pytest.raises(ModelError):
        _plan(state, FakeModel(error=RuntimeError("503 upstream")))
    assert state.has_error
    assert "503 upstream" in state.error_message


# --- act


def _act(state: GraphState, gate: ActionSafetyGate, executor: FakeExecutor, ui=None) -> GraphState:
    return asyncio.run(N.node_act(state, gate, executor, FakeContext(), N.RunContext(),
                                  confirmation_ui=ui, confirmation_timeout_s=1.0, retry_delay_s=0.0))


def test_act_executes_safe_calls() -> None:
    executor = FakeExecutor(ToolExecutionResult("clicked"))
    state = GraphState(iteration=1, pending_tool_calls=[ToolCall("click", {"element_description": "OK"}, call_id="c1")])
    _act(state, _gate(), executor)

    assert [c.name for c in executor.calls] == ["click"]
    assert state.tool_call_summaries == [ToolCallSummary("click", "clicked")]
    assert state.any_tool_calls_succeeded and state.any_visual_tool_calls_executed
    assert state.last_tool_name == "click"
    assert state.recent_tool_calls == [("click", "clicked")]
    results = state.messages[-1]["tool_results"]
    assert results == [{"call_id": "c1", "name": "click", "content": "clicked", "is_error": False}]


def test_act_denied_call_is_skipped_not_executed() -> None:
    gate = _gate()
    executor = FakeExecutor()
    ui = FakeUI(answer=False)
    state = GraphState(iteration=1, pending_tool_calls=[ToolCall("run_shell_command", {"command": "rm notes.txt"})])
    _act(state, gate, executor, ui)

    assert executor.calls == []
    summary = state.tool_call_summaries[0]
    assert summary.skipped and not summary.is_error
    assert summary.result_text == "Skipped: user denied run_shell_command (ui)"
    assert ui.levels == [RiskLevel.CRITICAL]
    assert gate.audit_log[0].approved is False
    assert not state.any_tool_calls_executed


def test_act_approval_is_cached_for_the_category() -> None:
    gate = _gate("autonomous")
    executor = FakeExecutor()
    ui = FakeUI(answer=True)
    calls = [ToolCall("run_shell_command", {"command": "mkdir a"}), ToolCall("run_shell_command", {"command": "touch b"})]
    state = GraphState(iteration=1, pending_tool_calls=calls)
    _act(state, gate, executor, ui)

    assert len(executor.calls) == 2
    assert len(ui.levels) == 1
    assert gate.is_session_approved("shell:file_writes")


def test_act_retries_transient_failures_once() -> None:
    executor = FakeExecutor(ToolExecutionResult("Connection reset", is_error=True), ToolExecutionResult("done"))
    state = GraphState(iteration=1, pending_tool_calls=[ToolCall("open_app", {"name": "Mail"})])
    _act(state, _gate(), executor)
    assert len(executor.calls) == 2
    assert state.failed_tool_count == 0


def test_act_does_not_retry_permanent_failures() -> None:
    executor = FakeExecutor(ToolExecutionResult("Error: Tool 'open_app' not found.", is_error=True))
    state = GraphState(iteration=1, pending_tool_calls=[ToolCall("open_app", {"name": "Mail"})])
    _act(state, _gate(), executor)
    assert len(executor.calls) == 1
    assert state.failed_tool_count == 1


def test_act_retries_executor_timeouts() -> None:
    executor = FakeExecutor(TimeoutError("tool server slow"), ToolExecutionResult("done"))
    state = GraphState(iteration=1, pending_tool_calls=[ToolCall("open_app", {"name": "Mail"})])
    _act(state, _gate(), executor)
    assert len(executor.calls) == 2
    assert state.failed_tool_count == 0


def test_act_does_not_retry_permission_errors_from_the_executor() -> None:
    executor = FakeExecutor(PermissionError("sandbox refused"))
    state = GraphState(iteration=1, pending_tool_calls=[ToolCall("open_app", {"name": "Mail"})])
    _act(state, _gate(), executor)
    assert len(executor.calls) == 1
    assert state.failed_tool_count == 1


# --- observe


def test_observe_uses_accessibility_verification_after_typing() -> None:
    capture = FakeCapture(detail=FocusedElementDetail(role="AXTextField", value="hello"))
    ctx = N.RunContext()
    state = GraphState(iteration=1, last_tool_name="type_text", pre_action_screenshot=_png())
    asyncio.run(N.node_observe(state, capture, ctx))
    assert state.ax_verification_succeeded
    assert capture.captures == 0


def test_observe_computes_visual_diff() -> None:
    capture = FakeCapture(shot=_png())
    state = GraphState(iteration=1, last_tool_name="scroll", pre_action_screenshot=_png(), text_content="scrolling")
    asyncio.run(N.node_observe(state, capture, N.RunContext()))
    assert state.post_action_screenshot
    assert state.visual_diff_description == "No visual change detected"
    assert state.screenshots_identical


# --- evaluate


def _evaluate(state: GraphState, ctx: N.RunContext | None = None) -> GraphState:
    return asyncio.run(N.node_evaluate(state, ctx or N.RunContext()))


def test_evaluate_completion_token_wins() -> None:
    state = _evaluate(GraphState(iteration=1, has_tool_calls=True, text_content="done <task_complete/>"))
    assert state.completion_source == CompletionSource.TOKEN_MATCH


def test_evaluate_no_tool_calls_means_done() -> None:
    state = _evaluate(GraphState(iteration=1, text_content="All finished."))
    assert state.completion_source == CompletionSource.MODEL_DONE


def test_evaluate_resource_error_ends_run() -> None:
    state = GraphState(iteration=1, has_tool_calls=True, has_more_work=True, failed_tool_count=1,
                       tool_call_summaries=[ToolCallSummary("x", "context length exceeded", is_error=True)])
    assert _evaluate(state).completion_source == CompletionSource.RESOURCE_ERROR


def _stuck_ctx() -> N.RunContext:
    ctx = N.RunContext()
    for _ in range(3):
        ctx.detector.track_text("trying again")
    return ctx


def test_evaluate_detects_stuck_when_every_tool_failed() -> None:
    state = GraphState(iteration=3, has_tool_calls=True, has_more_work=True, failed_tool_count=1,
                       tool_call_summaries=[ToolCallSummary("click", "Permission denied", is_error=True)])
    _evaluate(state, _stuck_ctx())
    assert state.is_stuck
    assert state.stuck_reason == "Last 3 text responses are repeating"
    assert state.last_error_class == "permanent"


def test_evaluate_transient_failures_are_not_stuck() -> None:
    state = GraphState(iteration=3, has_tool_calls=True, has_more_work=True, failed_tool_count=1,
                       tool_call_summaries=[ToolCallSummary("click", "timeout", is_error=True)])
    _evaluate(state, _stuck_ctx())
    assert not state.is_stuck


def test_evaluate_total_recovery_cap() -> None:
    state = GraphState(iteration=3, has_tool_calls=True, has_more_work=True,
                       total_recovery_attempts=8, max_total_recovery_attempts=8,
                       tool_call_summaries=[ToolCallSummary("click", "ok")])
    _evaluate(state)
    assert state.completion_source == "max total recovery attempts exceeded (8)"


def test_evaluate_progress_resets_recovery_chain() -> None:
    state = GraphState(iteration=3, has_tool_calls=True, has_more_work=True,
                       recovery_strategy_index=2, recovery_attempts=2,
                       tool_call_summaries=[ToolCallSummary("click", "ok")])
    _evaluate(state)
    assert state.recovery_strategy_index == 0
    assert state.recovery_attempts == 0
    assert not state.task_complete


# --- recover / complete


class FakeChainClient:
    async def send_message(self, conversation, system_prompt, tool_schemas, model, max_tokens):
        return ModelResponse(text_content="use the menu bar", input_tokens=3, output_tokens=2)


def test_recover_applies_strategy_and_clears_tracking() -> None:
    ctx = _stuck_ctx()
    chain = RecoveryStrategyChain(FakeChainClient(), "fast", "brain")
    state = GraphState(command="x", iteration=3, is_stuck=True, stuck_reason="repeating", recovery_strategy_index=1)
    asyncio.run(N.node_recover(state, chain, ctx))

    assert state.messages[-1] == {"role": "user", "content": "Alternative approach: use the menu bar"}
    assert state.recovery_strategy_index == 2
    assert (state.recovery_attempts, state.total_recovery_attempts) == (1, 1)
    assert not state.is_stuck
    assert state.total_tokens == 5
    assert ctx.detector.detect_stuck() is None


def test_complete_marks_exhausted_recovery_when_nothing_else_finished_the_run() -> None:
    state = GraphState(iteration=9)
    asyncio.run(N.node_complete(state, N.RunContext()))
    assert state.completion_source == CompletionSource.RECOVERY_EXHAUSTED


def test_summarize_run() -> None:
    assert N.summarize_run(GraphState(completion_source="token match", text_content="Done.")) == (True, "Done.")
    forced = GraphState(completion_source=CompletionSource.MAX_ITERATIONS, text_content="halfway")
    assert N.summarize_run(forced) == (False, "Stopped (max iterations reached). halfway")
    failed = GraphState(has_error=True, error_message="boom")
    assert N.summarize_run(failed) == (False, "Run failed: boom")
