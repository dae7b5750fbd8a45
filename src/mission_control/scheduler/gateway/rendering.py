"""Render typed briefings into the prompt text sent to a session."""

from __future__ import annotations

from mission_control.scheduler.briefing import Briefing, PhaseBriefing, StoryBriefing


def render_briefing(briefing: Briefing) -> str:
    if isinstance(briefing, PhaseBriefing):
        return _render_phase(briefing)
    return _render_story(briefing)


def _curl(url: str, token: str, payload: str) -> str:
    return (
        f"curl -X POST {url} \\\n"
        f'  -H "Content-Type: application/json" \\\n'
        f'  -H "Authorization: Bearer {token}" \\\n'
        f"  -d '{payload}'"
    )


def _render_phase(briefing: PhaseBriefing) -> str:
    callbacks = briefing.callbacks
    progress = _curl(
        callbacks.progress_url,
        briefing.token,
        '{"progress": 0.5, "message": "Working on..."}',
    )
    complete = _curl(
        callbacks.complete_url,
        briefing.token,
        '{"summary": "Completed...", "artifacts": {}}',
    )
    fail = _curl(
        callbacks.fail_url,
        briefing.token,
        '{"error": "...", "recoverable": true}',
    )
    return (
        "# Phase execution\n"
        "\n"
        "## Mission Control API\n"
        f"Base URL: {briefing.api_base_url}\n"
        "The token below is valid for this phase only; the complete and fail\n"
        "calls consume it.\n"
        "\n"
        f"1. Report progress periodically:\n{progress}\n"
        "\n"
        f"2. Mark the phase complete:\n{complete}\n"
        "\n"
        f"3. Report a blocking failure:\n{fail}\n"
        "\n"
        "## Task\n"
        f"Task ID: {briefing.task_id}\n"
        f"Title: {briefing.task_title}\n"
        f"Description: {briefing.task_description or '-'}\n"
        f"Working directory: {briefing.work_dir or '-'}\n"
        "\n"
        "## Current phase\n"
        f"Phase ID: {briefing.phase_id}\n"
        f"Phase {briefing.phase_sequence} of {briefing.total_phases}: {briefing.phase_title}\n"
        f"Description: {briefing.phase_description or '-'}\n"
        "\n"
        "## Workflow\n"
        "1. Read the phase requirements.\n"
        "2. Do the work in small commits with descriptive messages.\n"
        "3. Report progress while working.\n"
        "4. Run verification and tests.\n"
        "5. Call the complete endpoint with a summary, or the fail endpoint if blocked.\n"
    )


def _render_story(briefing: StoryBriefing) -> str:
    callbacks = briefing.callbacks
    passed = _curl(
        callbacks.pass_url,
        briefing.token,
        '{"commit_sha": "<sha>", "learnings": "<what you learned>"}',
    )
    failed = _curl(
        callbacks.fail_url,
        briefing.token,
        f'{{"error": "<error message>", "iteration": {briefing.iteration}}}',
    )
    learnings = _curl(
        callbacks.progress_text_url,
        briefing.token,
        '{"content": "<learnings from this iteration>"}',
    )
    criteria = "\n".join(f"- {item}" for item in briefing.acceptance_criteria) or "-"
    previous = briefing.learnings.strip() if briefing.learnings else ""
    learnings_section = f"\n## Learnings so far\n{previous}\n" if previous else ""
    return (
        "# Story iteration\n"
        "\n"
        "## Mission Control API\n"
        f"Base URL: {briefing.api_base_url}\n"
        "The token below is valid for this story only; pass and fail consume it.\n"
        "\n"
        f"1. Tests pass:\n{passed}\n"
        "\n"
        f"2. Tests fail:\n{failed}\n"
        "\n"
        f"3. Append learnings:\n{learnings}\n"
        "\n"
        f"## Task: {briefing.task_title}\n"
        f"Task ID: {briefing.task_id}\n"
        f"Working directory: {briefing.work_dir or '-'}\n"
        f"Iteration: {briefing.iteration + 1} of {briefing.max_iterations} "
        f"({briefing.remaining_iterations} remaining after this one)\n"
        "\n"
        "## Current story\n"
        f"Story ID: {briefing.story_id}\n"
        f"Title: {briefing.story_title}\n"
        f"Priority: {briefing.story_priority}\n"
        f"Description: {briefing.story_description or '-'}\n"
        f"Acceptance criteria:\n{criteria}\n"
        f"{learnings_section}"
        "\n"
        "## Workflow\n"
        "Work on this story only. Implement it and run the quality checks.\n"
        "On success commit and call the pass endpoint with the commit SHA.\n"
        "On failure call the fail endpoint and do not commit broken code.\n"
    )
