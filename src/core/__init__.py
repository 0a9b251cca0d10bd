# Vigilant Core
#
# state.py      : data contracts (GraphState, ToolCall, RiskVerdict, AuditEntry, RunResult)
# gate.py       : ActionSafetyGate (risk.py heuristics, arbiter.py LLM fallback, audit log)
# nodes.py      : iteration loop nodes (perceive/plan/act/observe/evaluate/recover/complete)
# edges.py      : first-match routing between nodes
# workflow.py   : LangGraph wiring + RunOrchestrator
