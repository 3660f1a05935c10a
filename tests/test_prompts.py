from forgeline.features import Feature, PlanSpec
from forgeline.prompts import (
    PLAN_MARKER,
    build_continuation_prompt,
    build_implementation_prompt,
    build_plan_prompt,
    extract_plan,
)


def feature(**fields):
    return Feature(id="feature-1", title="Add verbose flag", description="Print more.", **fields)


def test_plan_prompt_asks_for_the_marker():
    prompt = build_plan_prompt(feature(planning_mode="spec"))
    assert PLAN_MARKER in prompt
    assert "## Feature: Add verbose flag" in prompt
    assert "Previous Plan" not in prompt


def test_plan_prompt_carries_feedback_and_previous_version():
    plan = PlanSpec(status="rejected", content="1. Do it", version=2, feedback="Add tests")
    prompt = build_plan_prompt(feature(planning_mode="lite", plan=plan))
    assert "## Previous Plan (v2)\n1. Do it" in prompt
    assert "## Reviewer Feedback\nAdd tests" in prompt


def test_extract_plan_cuts_at_marker():
    assert extract_plan(f"1. Step\n{PLAN_MARKER}\ntrailing") == "1. Step"
    assert extract_plan("  no marker  ") == "no marker"


def test_implementation_prompt_uses_approved_plan():
    approved = feature(plan=PlanSpec(status="approved", content="1. Step"))
    assert "## Approved Plan\n1. Step" in build_implementation_prompt(approved)

    generated = feature(plan=PlanSpec(status="generated", content="1. Step"))
    assert "Approved Plan" not in build_implementation_prompt(generated)


def test_skip_tests_drops_the_test_instruction():
    assert "tests" in build_implementation_prompt(feature())
    assert "Add or update tests" not in build_implementation_prompt(feature(skip_tests=True))


def test_continuation_prompt_mentions_interruption():
    assert "interrupted" in build_continuation_prompt(feature())
