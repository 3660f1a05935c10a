"""
FORGELINE Prompt Templates

Plain strings, no templating engine. The agent is told what to build
and where; it is never told how the scheduler works.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from forgeline.features import Feature


PLAN_MARKER = "[PLAN_GENERATED]"

SYSTEM_PROMPT = """You are a senior engineer working inside an isolated git worktree.
Only modify files inside the current working directory.
Keep changes focused on the requested feature. Do not commit; the orchestrator commits for you."""


PLANNING_PROMPTS = {
    "lite": """Write a short implementation outline for the feature below.

Format:
1. Goal (one sentence)
2. Approach (3-7 bullet points)
3. Files likely touched

Do NOT write any code yet.""",

    "spec": """Write a specification for the feature below before any code is written.

Include:
- Problem statement and acceptance criteria
- Files to create or modify, with the change for each
- A ```tasks block listing numbered implementation tasks
- Risks and how the change will be verified

Do NOT write any code yet.""",

    "full": """Produce a full technical design for the feature below.

Include:
- Problem statement, user-facing behavior and acceptance criteria
- Architecture: components affected, data model changes, interfaces
- A ```tasks block, grouped into phases, each task naming its files
- Test strategy (unit, integration, manual checks)
- Risks, rollout and rollback notes

Do NOT write any code yet.""",
}


def _feature_block(feature: "Feature") -> str:
    parts = [f"## Feature: {feature.title}"]
    if feature.category and feature.category != "general":
        parts.append(f"Category: {feature.category}")
    if feature.description:
        parts.append(feature.description)
    return "\n\n".join(parts)


def build_plan_prompt(feature: "Feature") -> str:
    mode = feature.planning_mode if feature.planning_mode in PLANNING_PROMPTS else "lite"
    sections = [PLANNING_PROMPTS[mode]]

    if feature.plan.feedback and feature.plan.content:
        sections.append(
            f"## Previous Plan (v{feature.plan.version})\n{feature.plan.content}\n\n"
            f"## Reviewer Feedback\n{feature.plan.feedback}\n\n"
            "Revise the plan to address the feedback. Keep the same format."
        )

    sections.append(_feature_block(feature))
    sections.append(f'When the plan is complete, finish with the line "{PLAN_MARKER}".')
    return "\n\n---\n\n".join(sections)


def extract_plan(text: str) -> str:
    """Plan text up to the completion marker."""
    idx = text.find(PLAN_MARKER)
    return (text[:idx] if idx >= 0 else text).strip()


def build_implementation_prompt(feature: "Feature") -> str:
    sections = [_feature_block(feature)]

    if feature.plan.status == "approved" and feature.plan.content:
        sections.append(f"## Approved Plan\n{feature.plan.content}\n\nImplement the plan above.")
    else:
        sections.append("Implement this feature.")

    if not feature.skip_tests:
        sections.append("Add or update tests that cover the change, and make sure they pass.")

    sections.append("When you are done, reply with a short summary of what changed.")
    return "\n\n---\n\n".join(sections)


def build_continuation_prompt(feature: "Feature") -> str:
    return (
        f"The previous run on \"{feature.title}\" was interrupted before it finished.\n"
        "Inspect the working directory, then continue from where you left off. "
        "Do not redo work that is already present.\n\n"
        "When you are done, reply with a short summary of what changed."
    )
