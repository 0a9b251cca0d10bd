from __future__ import annotations

from dataclasses import replace

from src.core.plan import (
    ExecutionPlan,
    PlanStep,
    StepCriticality,
    StepOutcome,
    StepStateMachine,
    contains_completion_token,
    extract_keywords,
    sanitize_plan_text,
)


def _plan(*steps: PlanStep) -> ExecutionPlan:
    return ExecutionPlan(command="configure settings", steps=list(steps))


OPEN = PlanStep(id=0, title="Open Settings", action="open the settings app", expected_outcome="Settings window open")
TOGGLE = PlanStep(id=1, title="Enable Wi-Fi", action="click the wifi toggle", expected_outcome="wifi enabled",
                  max_iterations=2, depends_on=(0,))
CLOSE = PlanStep(id=2, title="Close Settings", action="close the window", expected_outcome="window closed",
                 max_iterations=2)


def test_completion_token_ignores_case_and_whitespace() -> None:
    assert contains_completion_token("All done < TASK_COMPLETE / >")
    assert contains_completion_token("<task_complete>")
    assert not contains_completion_token("task complete")


def test_sanitize_filters_markers_and_truncates() -> None:
    assert sanitize_plan_text("<SYSTEM>hi</system>") == "[filtered]hi[filtered]"
    long_text = sanitize_plan_text("x" * 2500)
    assert long_text == "x" * 2000 + "... [truncated]"


def test_extract_keywords_drops_stop_words_and_short_tokens() -> None:
    assert extract_keywords("The Settings window is open, ok") == ["settings", "window", "open"]


def test_plan_from_dict() -> None:
    plan = ExecutionPlan.from_dict({
        "steps": [
            {"title": "Open", "action": "open", "expected_outcome": "open", "criticality": "optional"},
            {"title": "Type", "action": "type", "expected_outcome": "typed", "depends_on": [0], "max_iterations": 4},
        ],
    }, command="do it")
    assert plan.command == "do it"
    assert plan.steps[0].criticality is StepCriticality.OPTIONAL
    assert plan.steps[1].id == 1
    assert plan.steps[1].depends_on == (0,)
    assert plan.estimated_total_iterations == 7


def test_empty_plan_is_not_loaded() -> None:
    machine = StepStateMachine(ExecutionPlan(command="x"))
    assert not machine.has_plan
    assert machine.current_instruction() == ""
    assert machine.observe_iteration("anything") is None


def test_heuristic_validation_bands() -> None:
    machine = StepStateMachine(_plan(OPEN))
    assert machine.validate_step_outcome(OPEN, "The Settings window is now open").kind == "succeeded"
    assert machine.validate_step_outcome(OPEN, "Clicked an icon").kind == "uncertain"
    assert machine.validate_step_outcome(OPEN, "Error: app not found").kind == "failed"


def test_expected_tools_count_toward_the_score() -> None:
    step = PlanStep(id=0, title="t", action="a", expected_outcome="", expected_tools=("open_app",))
    machine = StepStateMachine(_plan(step))
    assert machine.compute_heuristic_score(step, "used open_app") == (0.8 + 0.9) / 2


def test_success_advances_to_next_step() -> None:
    machine = StepStateMachine(_plan(OPEN, TOGGLE))
    outcome = machine.observe_iteration("Settings window open now")
    assert outcome.kind == "succeeded"
    assert machine.current_step == TOGGLE
    assert machine.outcome_for(0).kind == "succeeded"


def test_uncertain_step_advances_only_after_its_allowance() -> None:
    machine = StepStateMachine(_plan(CLOSE, OPEN))
    machine.observe_iteration("clicked something")
    assert machine.current_step == CLOSE
    machine.observe_iteration("clicked something again")
    assert machine.current_step == OPEN


def test_failed_normal_step_advances() -> None:
    step = PlanStep(id=0, title="Open", action="open the menu", expected_outcome="menu shown", max_iterations=1)
    machine = StepStateMachine(_plan(step, CLOSE))
    assert machine.observe_iteration("error everywhere").kind == "failed"
    assert machine.current_step == CLOSE
    assert not machine.aborted_reason


def test_failed_step_with_input_action_aborts() -> None:
    step = PlanStep(id=0, title="Fill", action="Type the recipient email", expected_outcome="recipient filled",
                    max_iterations=1)
    assert StepStateMachine.effective_criticality(step) is StepCriticality.CRITICAL
    machine = StepStateMachine(_plan(step, TOGGLE))
    machine.observe_iteration("failed: field not found")
    assert machine.aborted_reason.startswith("Critical step 1 failed")
    assert machine.current_step is None


def test_optional_criticality_is_kept_even_for_input_actions() -> None:
    step = PlanStep(id=0, title="t", action="type something", expected_outcome="x",
                    criticality=StepCriticality.OPTIONAL)
    assert StepStateMachine.effective_criticality(step) is StepCriticality.OPTIONAL


def test_dependencies() -> None:
    machine = StepStateMachine(_plan(OPEN, TOGGLE))
    assert machine.can_proceed_to_step(TOGGLE) == "Dependency step 1 has not been executed yet"
    machine.record_outcome(OPEN, StepOutcome.skipped("not needed"))
    assert machine.can_proceed_to_step(TOGGLE) == "Dependency step 1 was skipped: not needed"
    assert machine.can_proceed_to_step(OPEN) is None


def test_step_after_failed_dependency_is_skipped() -> None:
    optional_open = replace(OPEN, criticality=StepCriticality.OPTIONAL, max_iterations=1)
    machine = StepStateMachine(_plan(optional_open, TOGGLE, CLOSE))
    assert machine.observe_iteration("error: settings not found").kind == "failed"
    assert machine.current_step == CLOSE
    skipped = machine.outcome_for(1)
    assert skipped.kind == "skipped"
    assert skipped.detail == "Dependency not met: Dependency step 1 failed: " + machine.outcome_for(0).detail
    assert not machine.aborted_reason


def test_critical_step_blocked_by_dependency_aborts() -> None:
    login = PlanStep(id=1, title="Log in", action="type the password", expected_outcome="signed in",
                     depends_on=(0,))
    machine = StepStateMachine(_plan(replace(OPEN, max_iterations=1), login, CLOSE))
    machine.observe_iteration("error: settings not found")
    assert machine.aborted_reason.startswith("Critical step 2 (Log in) blocked by dependency: Dependency step 1 failed")
    assert machine.current_step is None


def test_first_step_with_unmet_dependency_is_skipped_on_load() -> None:
    machine = StepStateMachine(_plan(TOGGLE, CLOSE))
    assert machine.current_step == CLOSE
    assert machine.outcome_for(1).detail == "Dependency not met: Dependency step 1 has not been executed yet"


def test_step_instruction_lists_previous_and_failed_steps() -> None:
    machine = StepStateMachine(_plan(OPEN, replace(TOGGLE, depends_on=())))
    machine.record_outcome(OPEN, StepOutcome.failed("window never appeared"))
    machine.advance()
    text = machine.current_instruction()
    parts = text.split("\n\n")
    assert parts[0] == "Step 2 of 2: Enable Wi-Fi"
    assert parts[1] == "click the wifi toggle"
    assert "EXPECTED RESULT: wifi enabled" in parts
    assert "Previous steps completed: Open Settings" in parts
    assert parts[-1].startswith("WARNING: Previous steps failed: Step 1.")


def test_outcome_descriptions() -> None:
    assert StepOutcome.succeeded(0.9, "ok").describe() == "Succeeded (confidence: 0.90, ok)"
    assert StepOutcome.failed("nope").describe() == "Failed (nope)"
