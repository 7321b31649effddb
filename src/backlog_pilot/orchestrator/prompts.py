"""Prompt templates for each transformation phase."""

from __future__ import annotations

from backlog_pilot.orchestrator.models import ExecutionContext, TransformationType

RESPONSE_CONTRACT = """\
Respond with a single JSON object and nothing else:
{
  "outcome": "completed" | "blocked" | "needs_context" | "failed",
  "summary": "<what was accomplished, or why progress stopped>",
  "modified_files": ["<relative/path>", "..."],
  "questions": ["<question that must be answered before continuing>"]
}"""

_BASE_SYSTEM_PROMPT = """\
You are an autonomous software engineer working through a backlog one item at a time.
Keep a clear record of what you did and change only what the task requires.

Working directory: {working_directory}

{response_contract}
"""

PHASE_INSTRUCTIONS: dict[TransformationType, str] = {
    TransformationType.INTERPRET: """\
PHASE: Interpret
Work out what the item actually asks for.
- State the core objective in your own words.
- List the assumptions you are making.
- Point out ambiguities; if any block progress, report them as questions.
Understand what has to be done before deciding how.""",
    TransformationType.PLAN: """\
PHASE: Plan
Produce an implementation plan.
- Break the work into small, ordered steps.
- Name the files to create or modify.
- Note prerequisites and risky steps.
The plan must be executable step by step in a later session.""",
    TransformationType.EXECUTE: """\
PHASE: Execute
Implement the plan recorded in previous sessions.
- Create or modify the files the plan names.
- Follow the conventions already used in the working directory.
- Report every file you changed in modified_files.""",
    TransformationType.REFINE: """\
PHASE: Refine
The previous attempt failed or left problems behind.
- Review the earlier sessions and find what went wrong.
- Fix defects and rerun checks where the project has them.
Leave the implementation in a state ready for final review.""",
    TransformationType.ASK_CLARIFICATION: """\
PHASE: Ask Clarification
Progress is blocked on missing information.
- Review what is blocking the item.
- Ask specific, answerable questions, most important first.
- Explain briefly why each answer is needed.
If the answered questions below already resolve the block, report completed.""",
    TransformationType.FINALIZE: """\
PHASE: Finalize
Verify the work and wrap it up.
- Check every requirement of the item against what was done.
- Make sure the result is clean and documented.
- Summarize the final state in the summary field.""",
}


def render_system_prompt(phase: TransformationType, working_directory: str) -> str:
    """System prompt for one phase: shared contract plus phase instructions."""

    base = _BASE_SYSTEM_PROMPT.format(
        working_directory=working_directory,
        response_contract=RESPONSE_CONTRACT,
    )
    return f"{base}\n{PHASE_INSTRUCTIONS[phase]}\n"


def render_user_prompt(context: ExecutionContext) -> str:
    """User prompt describing the item and everything learned about it so far."""

    item = context.item
    lines = [f"# Work item: {item.title}", "", "## Description", item.description or "-", ""]

    if item.labels:
        lines.extend([f"## Labels: {', '.join(item.labels)}", ""])
    if item.external_url:
        lines.extend([f"## Reference: {item.external_url}", ""])

    if context.sessions:
        lines.append("## Previous sessions")
        for session in context.sessions:
            lines.append(
                f"- [{session.started_at:%Y-%m-%d %H:%M}] {session.transformation.value} "
                f"-> {session.outcome.value}: {session.summary or session.error_message or '-'}",
            )
            if session.modified_files:
                lines.append(f"  Modified: {', '.join(session.modified_files)}")
        lines.append("")

    if context.answered_questions:
        lines.append("## Answered questions")
        for question in context.answered_questions:
            lines.extend([f"Q: {question.question}", f"A: {question.answer}", ""])

    if context.additional_instructions:
        lines.extend(["## Additional instructions", context.additional_instructions, ""])

    return "\n".join(lines)
