"""
workflow.py

LangGraph integration layer + run orchestration.

- RuntimeDeps: the collaborator bundle injected into every node
- build_workflow(deps, ctx, settings): StateGraph wiring for one run
- RunOrchestrator: run(command) -> RunResult, cancel(), pending_confirmation

Nodes are bound to deps with small closures; routing comes from edges.py. One
compiled graph per run, so the per-run RunContext (cancellation token, stuck
detector, step machine) is captured by the closures and never shared.

Files:
- state.py: schemas
- nodes.py: node logic
- edges.py: routing
- gate.py: action safety gate
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph

from src.clients.model_client import OpenAIModelClient
from src.shared.agent_config import AgentSettings
from src.shared.utils import load_system_prompt, setup_logger

from . import edges as E
from . import nodes as N
from .arbiter import LLMArbiter, ModelClient
from .confirmation import ConfirmationUI, PendingConfirmation
from .errors import ModelError, RunCancelled
from .gate import ActionSafetyGate, AuditSink, MarkdownAuditSink
from .plan import ExecutionPlan, StepStateMachine
from .recovery import RecoveryStrategyChain
from .state import CompletionSource, GraphState, RunResult, new_id
from .stuck import StuckDetector

logger = logging.getLogger("vigilant.workflow")

# PERCEIVE, PLAN, ACT, OBSERVE, EVALUATE and possibly RECOVER per iteration.
NODES_PER_ITERATION = 6
RECURSION_HEADROOM = 10



# Dependency bundle


@dataclass(frozen=True)
class RuntimeDeps:
    capture: N.CaptureProvider
    model_client: ModelClient
    executor: N.ToolExecutor
    context_provider: N.ContextProvider
    gate: ActionSafetyGate
    recovery: RecoveryStrategyChain

    confirmation_ui: Optional[ConfirmationUI] = None
    memory: Optional[N.MemoryProvider] = None
    system_prompt: str = ""
    tool_schemas: List[Dict[str, Any]] = field(default_factory=list)
    target: Optional[int] = None
    retry_delay_s: float = 1.0


def build_runtime_deps(
    settings: AgentSettings,
    *,
    capture: N.CaptureProvider,
    executor: N.ToolExecutor,
    context_provider: N.ContextProvider,
    model_client: Optional[ModelClient] = None,
    confirmation_ui: Optional[ConfirmationUI] = None,
    memory: Optional[N.MemoryProvider] = None,
    audit_sink: Optional[AuditSink] = None,
    tool_schemas: Optional[List[Dict[str, Any]]] = None,
    target: Optional[int] = None,
) -> RuntimeDeps:
    """Default wiring: OpenAI-compatible client, fast-model arbiter, markdown audit trail."""
    client = model_client or OpenAIModelClient(api_key=settings.api_key, base_url=settings.base_url or None)
    sink = audit_sink if audit_sink is not None else (MarkdownAuditSink() if settings.audit_enabled else None)
    gate = ActionSafetyGate(
        permission_mode=settings.permission_mode,
        arbiter=LLMArbiter(client, settings.fast_model, timeout_s=settings.arbiter_timeout_s),
        audit_sink=sink,
    )
    return RuntimeDeps(
        capture=capture,
        model_client=client,
        executor=executor,
        context_provider=context_provider,
        gate=gate,
        recovery=RecoveryStrategyChain(client, settings.fast_model, settings.brain_model),
        confirmation_ui=confirmation_ui,
        memory=memory,
        system_prompt=load_system_prompt(),
        tool_schemas=list(tool_schemas or []),
        target=target,
    )



# Graph builder


def build_workflow(deps: RuntimeDeps, ctx: N.RunContext, settings: AgentSettings):
    g = StateGraph(GraphState)
    system_prompt = deps.system_prompt or load_system_prompt()

    async def _perceive(state: GraphState) -> GraphState:
        return await N.node_perceive(state, deps.capture, ctx, settings=settings, memory=deps.memory)

    async def _plan(state: GraphState) -> GraphState:
        return await N.node_plan(
            state,
            deps.model_client,
            ctx,
            system_prompt=system_prompt,
            tool_schemas=deps.tool_schemas,
            model=settings.executor_model,
            max_tokens=settings.max_tokens,
        )

    async def _act(state: GraphState) -> GraphState:
        return await N.node_act(
            state,
            deps.gate,
            deps.executor,
            deps.context_provider,
            ctx,
            confirmation_ui=deps.confirmation_ui,
            confirmation_timeout_s=settings.confirmation_timeout_s,
            retry_delay_s=deps.retry_delay_s,
        )

    async def _observe(state: GraphState) -> GraphState:
        return await N.node_observe(state, deps.capture, ctx)

    async def _evaluate(state: GraphState) -> GraphState:
        return await N.node_evaluate(state, ctx, stuck_min_iteration=settings.stuck_min_iteration)

    async def _recover(state: GraphState) -> GraphState:
        return await N.node_recover(state, deps.recovery, ctx)

    async def _complete(state: GraphState) -> GraphState:
        return await N.node_complete(state, ctx)

    # Register nodes
    g.add_node(E.NODE_PERCEIVE, _perceive)
    g.add_node(E.NODE_PLAN, _plan)
    g.add_node(E.NODE_ACT, _act)
    g.add_node(E.NODE_OBSERVE, _observe)
    g.add_node(E.NODE_EVALUATE, _evaluate)
    g.add_node(E.NODE_RECOVER, _recover)
    g.add_node(E.NODE_COMPLETE, _complete)

    g.set_entry_point(E.NODE_PERCEIVE)

    # Fixed edges
    g.add_edge(E.NODE_ACT, E.NODE_OBSERVE)
    g.add_edge(E.NODE_OBSERVE, E.NODE_EVALUATE)
    g.add_edge(E.NODE_COMPLETE, END)

    # Conditional edges; each branch map lists exactly the targets in the routing table
    for source, router in (
        (E.NODE_PERCEIVE, E.route_from_perceive),
        (E.NODE_PLAN, E.route_from_plan),
        (E.NODE_EVALUATE, E.route_from_evaluate),
        (E.NODE_RECOVER, E.route_from_recover),
    ):
        g.add_conditional_edges(source, router, {t: t for t in E.targets_of(source)})

    return g.compile()


def recursion_limit_for(max_iterations: int) -> int:
    return (max_iterations + 1) * NODES_PER_ITERATION + RECURSION_HEADROOM



# Orchestrator


class RunOrchestrator:
    """
    Runs one command at a time against a desktop session.

    The UI layer may call cancel() from any coroutine on the same loop, and may
    answer a pending confirmation directly through `pending_confirmation`.
    """

    def __init__(self, deps: RuntimeDeps, settings: Optional[AgentSettings] = None) -> None:
        self.deps = deps
        self.settings = settings or AgentSettings.from_env()
        self._ctx: Optional[N.RunContext] = None
        self._pending: Optional[PendingConfirmation] = None
        setup_logger("vigilant")

    @property
    def pending_confirmation(self) -> Optional[PendingConfirmation]:
        return self._pending

    @property
    def is_running(self) -> bool:
        return self._ctx is not None

    def cancel(self) -> None:
        if self._ctx is None:
            return
        logger.info("Cancellation requested")
        self._ctx.token.cancel()

    def _set_pending(self, pending: Optional[PendingConfirmation]) -> None:
        self._pending = pending

    async def run(
        self,
        command: str,
        run_id: Optional[str] = None,
        plan: Optional[ExecutionPlan] = None,
    ) -> RunResult:
        if self.is_running:
            raise RuntimeError("A run is already in progress")

        s = self.settings
        ctx = N.RunContext(
            detector=StuckDetector(s.stuck_threshold, s.hash_tolerance),
            steps=StepStateMachine(plan),
            target=self.deps.target,
            on_pending=self._set_pending,
        )
        state = GraphState(
            run_id=run_id or new_id("run"),
            command=command,
            max_iterations=s.max_iterations,
            max_recovery_attempts=s.max_recovery_attempts,
            max_total_recovery_attempts=s.max_total_recovery_attempts,
        )
        state.telemetry.event("run_started", run_id=state.run_id, command=command)
        ctx.last_state = state
        self._ctx = ctx

        gate = self.deps.gate
        gate.start_run(state.run_id)
        logger.info("Run %s started: %s", state.run_id, command)

        final = state
        try:
            graph = build_workflow(self.deps, ctx, s)
            out = await graph.ainvoke(state, config={"recursion_limit": recursion_limit_for(s.max_iterations)})
            final = GraphState(**out) if isinstance(out, dict) else out
        except RunCancelled:
            final = ctx.last_state or state
            final.is_cancelled = True
            final.telemetry.event("cancelled", iteration=final.iteration)
        except ModelError as e:
            final = ctx.last_state or state
            if not final.has_error:
                final.mark_error(str(e))
        except GraphRecursionError:
            final = ctx.last_state or state
            final.mark_complete(CompletionSource.MAX_ITERATIONS)
        finally:
            await gate.end_run()
            self._ctx = None
            self._pending = None

        result = self._build_result(final, gate.audit_log)
        logger.info("Run %s finished: success=%s iterations=%d source=%s",
                    result.run_id, result.success, result.iterations, result.completion_source or "-")
        return result

    @staticmethod
    def _build_result(state: GraphState, audit_entries) -> RunResult:
        if state.is_cancelled:
            success, summary = False, f"Run cancelled after {state.iteration} iterations"
        else:
            success, summary = N.summarize_run(state)
        return RunResult(
            run_id=state.run_id,
            success=success,
            summary=summary,
            iterations=state.iteration,
            input_tokens=state.total_input_tokens,
            output_tokens=state.total_output_tokens,
            completion_source=state.completion_source,
            cancelled=state.is_cancelled,
            audit_entries=audit_entries,
        )
