from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .models import SEVERITY_ORDER, AdversarialLoopResult, ExitReason, Finding
from .state_store import ReviewStateStore

_EXIT_LABELS: dict[ExitReason, str] = {
    ExitReason.CONVERGED: "Converged (no fixable findings)",
    ExitReason.MAX_ITERATIONS: "Max iterations reached",
    ExitReason.STUCK: "Stuck (same findings repeated)",
    ExitReason.TEST_FAILURE: "Tests failing after fixes",
    ExitReason.HUMAN_ABORTED: "Aborted by reviewer",
}


@dataclass(frozen=True)
class ReviewSummary:
    markdown: str
    all_resolved: bool
    saved_path: Path


def severity_table(findings: list[Finding]) -> str:
    counts: dict[str, int] = {}
    for finding in findings:
        counts[finding.severity.value] = counts.get(finding.severity.value, 0) + 1
    if not counts:
        return "No findings.\n"

    lines = ["| Severity | Count |", "| -------- | ----- |"]
    for severity in SEVERITY_ORDER:
        count = counts.get(severity.value)
        if count:
            lines.append(f"| {severity.value} | {count} |")
    lines.append("")
    return "\n".join(lines)


def render_summary(epic_number: int, loop_result: AdversarialLoopResult, *, now: datetime | None = None) -> str:
    """Render the consolidated markdown report for one loop run."""
    generated_at = (now or datetime.now(UTC)).isoformat()
    lines = [
        f"# Epic {epic_number} Adversarial Review Summary",
        "",
        f"**Date:** {generated_at}",
        f"**Iterations:** {len(loop_result.iterations)}",
        f"**Status:** {_EXIT_LABELS.get(loop_result.exit_reason, loop_result.exit_reason.value)}",
        f"**All Resolved:** {'Yes' if loop_result.converged else 'No'}",
        "",
        "## Overview",
        "",
        "| Metric | Count |",
        "| ------ | ----- |",
        f"| Total findings (all iterations) | {loop_result.total_findings} |",
        f"| Auto-fixed | {loop_result.total_fixed} |",
        f"| Deferred (below fix threshold) | {len(loop_result.deferred_findings)} |",
        f"| Discarded (failed verification) | {loop_result.total_discarded} |",
        f"| Unresolved | {len(loop_result.unresolved_findings)} |",
        "",
        "## Iteration Breakdown",
        "",
    ]

    for iteration in loop_result.iterations:
        stats = iteration.verification.stats
        lines.append(f"### Iteration {iteration.iteration}")
        lines.append("")
        lines.append(f"- **Findings:** {len(iteration.all_findings)}")
        lines.append(f"- **Verified:** {stats.verified}")
        lines.append(f"- **Discarded:** {stats.discarded}")
        if iteration.fix_result is not None:
            lines.append(f"- **Fixed:** {len(iteration.fix_result.fixed)}")
            lines.append(f"- **Unfixed:** {len(iteration.fix_result.unfixed)}")
        lines.append(f"- **Tests pass:** {'Yes' if iteration.tests_pass else 'No'}")
        lines.append("")
        for critic in iteration.critic_results:
            status = "completed" if critic.success else "failed"
            lines.append(f"**{critic.role.value}** ({status}): {len(critic.findings)} findings")
        lines.append("")

    fixed_results = [result for result in loop_result.all_fix_results if result.fixed]
    if fixed_results:
        lines.append("## Auto-Fixed Findings")
        lines.append("")
        for result in fixed_results:
            sha = f" ({result.commit_sha[:7]})" if result.commit_sha else ""
            lines.append(f"- **[{result.finding.severity.value.upper()}]** {result.finding.title}{sha}")
            if result.finding.file:
                lines.append(f"  - File: `{result.finding.file}`")
        lines.append("")

    unresolved = loop_result.unresolved_findings
    if unresolved:
        lines.append("## Unresolved Findings")
        lines.append("")
        lines.append(
            f"The following {len(unresolved)} findings could not be auto-fixed "
            f"after {len(loop_result.iterations)} iterations:"
        )
        lines.append("")
        for finding in unresolved:
            lines.append(f"### [{finding.severity.value.upper()}] {finding.title}")
            lines.append("")
            if finding.file:
                lines.append(f"**File:** `{finding.file}`")
            lines.append(f"**Source:** {finding.source.value}")
            lines.append("")
            lines.append(finding.description)
            lines.append("")
            # Last failed attempt carries the most recent error.
            failed = [r for r in loop_result.all_fix_results if r.finding.id == finding.id and not r.fixed]
            if failed and failed[-1].error:
                lines.append(f"**Fix error:** {failed[-1].error}")
                lines.append(f"**Attempts:** {failed[-1].attempts}")
                lines.append("")

        lines.append("### Unresolved by Severity")
        lines.append("")
        lines.append(severity_table(unresolved))

    if loop_result.deferred_findings:
        lines.append("## Deferred Findings (Future Improvements)")
        lines.append("")
        lines.append(
            "The following findings were below the auto-fix severity threshold or were not approved. "
            "They are captured here for future reference but were not auto-fixed."
        )
        lines.append("")
        for finding in loop_result.deferred_findings:
            lines.append(f"- **[{finding.severity.value.upper()}]** {finding.title}")
            if finding.file:
                lines.append(f"  - File: `{finding.file}`")
            lines.append(f"  - {finding.description}")
        lines.append("")

    return "\n".join(lines)


def generate_summary(store: ReviewStateStore, epic_number: int, loop_result: AdversarialLoopResult) -> ReviewSummary:
    """Render the report and save it next to the epic's iteration artifacts."""
    markdown = render_summary(epic_number, loop_result)
    saved_path = store.write_summary(epic_number, markdown)
    return ReviewSummary(markdown=markdown, all_resolved=loop_result.converged, saved_path=saved_path)
