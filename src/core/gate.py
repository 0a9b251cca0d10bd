"""
gate.py

ActionSafetyGate: the single choke point every proposed action passes through.

File responsibilities:
- evaluate(call, context) -> RiskVerdict (short-circuit lists -> heuristics -> LLM arbiter)
- run lifecycle: start_run(run_id) / end_run()
- session approval cache (category key -> bool), scoped to one run
- append-only audit log of every verdict at moderate or above, flushed as markdown

Concurrency:
- all gate state is written only here
- an asyncio.Lock serialises audit appends; it is never held across the LLM call,
  so concurrent heuristic evaluations are never blocked behind a slow model
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol

from src.shared.agent_config import AUDIT_DIR

from .arbiter import LLMArbiter
from .risk import RiskClassifier
from .state import (
    ActionContext,
    AuditEntry,
    EvaluationMethod,
    PermissionMode,
    RiskLevel,
    RiskVerdict,
    ToolCall,
)

logger = logging.getLogger("vigilant.gate")


ALWAYS_SAFE_TOOLS: FrozenSet[str] = frozenset({
    "take_screenshot", "read_screen",
    "vault_read", "vault_search", "vault_list",
    "task_list",
    "recall",
    "openclaw_check",
    "move_mouse", "scroll",
})

LOW_RISK_MUTATION_TOOLS: FrozenSet[str] = frozenset({
    "vault_write", "vault_append",
    "task_create", "task_update", "task_complete",
    "remember",
})

AUDIT_REASON_LIMIT = 60



# Audit sink


class AuditSink(Protocol):
    async def append(self, text: str, path: str) -> None: ...


class MarkdownAuditSink:
    """Appends audit segments to dated markdown files under `base_dir`."""

    def __init__(self, base_dir: Path = AUDIT_DIR) -> None:
        self.base_dir = Path(base_dir)

    async def append(self, text: str, path: str) -> None:
        await asyncio.to_thread(self._write, text, path)

    def _write(self, text: str, path: str) -> None:
        target = self.base_dir / path
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "a", encoding="utf-8") as f:
            f.write(text)


def audit_path_for(now: datetime) -> str:
    return f"{now.strftime('%Y-%m-%d')}.md"


def format_audit_markdown(run_id: str, entries: List[AuditEntry], now: datetime) -> str:
    lines = [
        f"\n## Run: {run_id} ({now.isoformat(timespec='seconds')})\n",
        "| Time | Tool | Risk | Method | Reason | App | Approved |",
        "|------|------|------|--------|--------|-----|----------|",
    ]
    for entry in entries:
        when = datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S")
        approved = "N/A" if entry.approved is None else ("Yes" if entry.approved else "No")
        reason = entry.reason[:AUDIT_REASON_LIMIT].replace("|", "\\|").replace("\n", " ")
        lines.append(
            f"| {when} | {entry.tool} | {entry.risk_level.label} | {entry.method} "
            f"| {reason} | {entry.app_context} | {approved} |"
        )
    return "\n".join(lines) + "\n"



# Gate


class ActionSafetyGate:
    def __init__(
        self,
        *,
        permission_mode: PermissionMode = "standard",
        arbiter: Optional[LLMArbiter] = None,
        audit_sink: Optional[AuditSink] = None,
        classifier: Optional[RiskClassifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.permission_mode = permission_mode
        self._arbiter = arbiter
        self._sink = audit_sink
        self._classifier = classifier or RiskClassifier(permission_mode)
        self._clock = clock

        self._lock = asyncio.Lock()
        self._run_id: Optional[str] = None
        self._approvals: Dict[str, bool] = {}
        self._audit: List[AuditEntry] = []

    # --- lifecycle

    @property
    def current_run_id(self) -> Optional[str]:
        return self._run_id

    @property
    def audit_log(self) -> List[AuditEntry]:
        return list(self._audit)

    def start_run(self, run_id: str) -> None:
        self._run_id = run_id
        self._approvals = {}
        self._audit = []
        logger.info("Safety gate started run %s (mode=%s)", run_id, self.permission_mode)

    async def end_run(self) -> None:
        try:
            await self.flush_audit_log()
        finally:
            logger.info("Safety gate ended run %s (%d audit entries)", self._run_id, len(self._audit))
            self._run_id = None

    async def flush_audit_log(self) -> None:
        if not self._audit or self._sink is None:
            return
        now = datetime.now()
        content = format_audit_markdown(self._run_id or "unknown", self._audit, now)
        try:
            await self._sink.append(content, audit_path_for(now))
        except OSError as e:
            logger.error("Failed to flush audit log for run %s: %s", self._run_id, e)

    # --- session approvals

    def is_session_approved(self, category: str) -> bool:
        return self._approvals.get(category) is True

    def record_session_approval(self, category: str, approved: bool) -> None:
        self._approvals[category] = approved
        logger.info("Session approval recorded: %s=%s", category, approved)

    def record_approval_outcome(self, tool: str, approved: bool) -> None:
        """Stamp the newest still-unanswered audit entry for `tool` with the user's answer."""
        for entry in reversed(self._audit):
            if entry.tool == tool and entry.approved is None:
                entry.approved = approved
                return

    # --- evaluation

    async def evaluate(self, call: ToolCall, context: ActionContext) -> RiskVerdict:
        if call.name in ALWAYS_SAFE_TOOLS:
            return RiskVerdict(level=RiskLevel.SAFE, reason="Always-safe tool", tool=call.name)

        if call.name in LOW_RISK_MUTATION_TOOLS:
            verdict = RiskVerdict(level=RiskLevel.MODERATE, reason="Internal mutation tool", tool=call.name)
            await self._log(verdict, context, "heuristic")
            return verdict

        result = self._classifier.classify(call, context, self._approvals)
        if result.definite:
            await self._log(result.verdict, context, "heuristic")
            return result.verdict

        if self._arbiter is None:
            await self._log(result.verdict, context, "heuristic")
            return result.verdict

        verdict = await self._arbiter.evaluate(call, context, result.verdict)
        await self._log(verdict, context, "llm")
        return verdict

    async def _log(self, verdict: RiskVerdict, context: ActionContext, method: EvaluationMethod) -> None:
        if verdict.level < RiskLevel.MODERATE:
            return
        entry = AuditEntry(
            timestamp=self._clock(),
            run_id=self._run_id or "unknown",
            tool=verdict.tool,
            input_summary=f"{verdict.tool}: {verdict.reason}",
            risk_level=verdict.level,
            reason=verdict.reason,
            method=method,
            app_context=f"{context.active_app_name or '?'} -- {context.window_title or '?'}",
        )
        async with self._lock:
            self._audit.append(entry)
        logger.info("Gate verdict %s for %s (%s): %s", verdict.level.label, verdict.tool, method, verdict.reason)
