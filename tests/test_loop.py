from __future__ import annotations

import json
from pathlib import Path

from conftest import RecordingRunner, ScriptedFixer, finding_line

from adversarial_review.approval import ApprovalContext
from adversarial_review.critics import FindingProducer
from adversarial_review.loop import AdversarialLoop, is_stuck, partition_by_severity
from adversarial_review.models import (
    ApprovalAction,
    ApprovalDecision,
    CriticRole,
    ExitReason,
    IterationResult,
    RiskTier,
    Severity,
    SnapshotPhase,
    VerificationResult,
)
from adversarial_review.state_store import ReviewStateStore

DIVISION = finding_line("Division by zero", "high", "`compute` divides by `count` without a guard")
PHANTOM = finding_line("Phantom", "high", "`doesNotExist` leaks memory")
STYLE = finding_line("Naming", "low", "`compute` is a vague name")


class ScriptedInvoker:
    """Returns the code-quality report for each successive iteration; other roles report nothing."""

    def __init__(self, *reports: str, failing: set[CriticRole] | None = None) -> None:
        self.reports = list(reports)
        self.failing = failing or set()
        self.quality_calls = 0

    def __call__(self, role: CriticRole, system_prompt: str, user_message: str) -> str:
        if role in self.failing:
            raise TimeoutError("critic timed out")
        if role != CriticRole.CODE_QUALITY:
            return "## Summary\nclean"
        report = self.reports[min(self.quality_calls, len(self.reports) - 1)] if self.reports else ""
        self.quality_calls += 1
        return report


def _loop(project: Path, invoker: ScriptedInvoker, fixer: ScriptedFixer, runner: RecordingRunner, **kwargs):
    return AdversarialLoop(
        project_dir=project,
        producer=FindingProducer(invoker),
        fixer=fixer,
        test_suite_runner=runner,
        store=ReviewStateStore(project),
        model="stub-model",
        **kwargs,
    )


def _iteration(unresolved: list[str]) -> IterationResult:
    return IterationResult(
        iteration=1,
        critic_results=[],
        verification=VerificationResult(verified=[], discarded=[]),
        fix_result=None,
        tests_pass=True,
        unresolved_ids=unresolved,
    )


def test_is_stuck_compares_sets() -> None:
    assert is_stuck(_iteration(["a", "b"]), _iteration(["b", "a"]))
    assert not is_stuck(_iteration([]), _iteration([]))
    assert not is_stuck(_iteration(["a"]), _iteration(["a", "b"]))
    assert not is_stuck(_iteration(["a"]), _iteration(["b"]))


def test_partition_by_severity() -> None:
    from conftest import make_finding

    findings = [make_finding("a", severity=Severity.CRITICAL), make_finding("b", severity=Severity.LOW)]
    fixable, deferred = partition_by_severity(findings, Severity.HIGH)
    assert [finding.id for finding in fixable] == ["a"]
    assert [finding.id for finding in deferred] == ["b"]


def test_zero_findings_converges_in_one_iteration(project: Path) -> None:
    runner = RecordingRunner(True)
    fixer = ScriptedFixer()
    result = _loop(project, ScriptedInvoker(""), fixer, runner).run(1, changed_files=["app.py"])

    assert result.converged is True
    assert result.exit_reason == ExitReason.CONVERGED
    assert len(result.iterations) == 1
    assert fixer.batches == []
    assert runner.calls == 1
    assert result.unresolved_findings == []


def test_discarded_findings_do_not_reach_the_fixer(project: Path) -> None:
    fixer = ScriptedFixer()
    result = _loop(project, ScriptedInvoker(PHANTOM), fixer, RecordingRunner()).run(1, changed_files=["app.py"])

    assert result.exit_reason == ExitReason.CONVERGED
    assert result.total_findings == 1
    assert result.total_discarded == 1
    assert fixer.batches == []


def test_same_unresolved_finding_twice_is_stuck(project: Path) -> None:
    fixer = ScriptedFixer(decide=lambda _: False)
    result = _loop(project, ScriptedInvoker(DIVISION), fixer, RecordingRunner()).run(
        1, max_iterations=5, changed_files=["app.py"]
    )

    assert result.exit_reason == ExitReason.STUCK
    assert len(result.iterations) == 2
    assert [iteration.unresolved_ids for iteration in result.iterations] == [["cod-1"], ["cod-1"]]
    assert [finding.id for finding in result.unresolved_findings] == ["cod-1"]
    assert result.converged is False


def test_failing_tests_stop_the_loop(project: Path) -> None:
    fixer = ScriptedFixer(final_pass=False)
    result = _loop(project, ScriptedInvoker(DIVISION), fixer, RecordingRunner()).run(1, changed_files=["app.py"])

    assert result.exit_reason == ExitReason.TEST_FAILURE
    assert len(result.iterations) == 1
    assert result.iterations[0].tests_pass is False
    assert result.total_fixed == 0


def test_all_fixed_re_reviews_then_converges(project: Path) -> None:
    fixer = ScriptedFixer()
    result = _loop(project, ScriptedInvoker(DIVISION, ""), fixer, RecordingRunner()).run(1, changed_files=["app.py"])

    assert result.exit_reason == ExitReason.CONVERGED
    assert len(result.iterations) == 2
    assert result.total_fixed == 1
    assert [fix.commit_sha for fix in result.all_fix_results] == ["0123456789abcdef"]
    assert result.unresolved_findings == []


def test_iteration_budget_is_enforced(project: Path) -> None:
    fixer = ScriptedFixer()
    result = _loop(project, ScriptedInvoker(DIVISION), fixer, RecordingRunner()).run(
        1, max_iterations=2, changed_files=["app.py"]
    )

    assert result.exit_reason == ExitReason.MAX_ITERATIONS
    assert len(result.iterations) == 2
    assert result.total_fixed == 2
    assert result.total_findings == 2


def test_tier_selects_roles_budget_and_severity_gate(project: Path) -> None:
    invoker = ScriptedInvoker(STYLE)
    fixer = ScriptedFixer()
    tier = RiskTier(
        path_globs=["**"],
        max_iterations=1,
        min_fix_severity=Severity.HIGH,
        roles=[CriticRole.CODE_QUALITY],
    )
    result = _loop(project, invoker, fixer, RecordingRunner()).run(7, tier=tier, changed_files=["app.py"])

    assert result.exit_reason == ExitReason.CONVERGED
    assert [critic.role for critic in result.iterations[0].critic_results] == [CriticRole.CODE_QUALITY]
    assert [finding.title for finding in result.deferred_findings] == ["Naming"]
    assert fixer.batches == []


def test_failing_critic_does_not_abort_iteration(project: Path) -> None:
    invoker = ScriptedInvoker(DIVISION, "", failing={CriticRole.SECURITY})
    result = _loop(project, invoker, ScriptedFixer(), RecordingRunner()).run(1, changed_files=["app.py"])

    assert result.exit_reason == ExitReason.CONVERGED
    security = [critic for critic in result.iterations[0].critic_results if critic.role == CriticRole.SECURITY]
    assert security[0].success is False
    assert security[0].report.startswith("Agent failed:")


def test_artifacts_and_snapshots_are_written(project: Path) -> None:
    progress: list[tuple[int, str, str]] = []
    store = ReviewStateStore(project)
    loop = _loop(
        project,
        ScriptedInvoker(DIVISION, ""),
        ScriptedFixer(),
        RecordingRunner(),
        on_progress=lambda *event: progress.append(event),
    )
    loop.run(3, changed_files=["app.py"])

    first = json.loads(store.iteration_path(3, 1).read_text(encoding="utf-8"))
    assert first["fixResults"] == {"fixed": 1, "unfixed": 0}
    assert first["testsPass"] is True
    assert store.iteration_path(3, 2).is_file()

    snapshots = store.read_all_snapshots(SnapshotPhase.REVIEWING, 3)
    assert [snapshot.review_iteration for snapshot in snapshots] == [1, 2]
    assert snapshots[0].fix_commits == ["0123456789abcdef"]
    assert snapshots[0].files_changed == ["app.py"]
    assert snapshots[0].findings_count == 1

    phases = {phase for _, phase, _ in progress}
    assert {"review", "verify", "fix", "done"} <= phases
    assert progress[0][0] == 1


def test_rerun_of_an_epic_archives_previous_artifacts(project: Path) -> None:
    for _ in range(2):
        _loop(project, ScriptedInvoker(""), ScriptedFixer(), RecordingRunner()).run(1, changed_files=["app.py"])
    history = ReviewStateStore(project).epic_dir(1) / "history"
    assert len(list(history.iterdir())) == 1


def test_approval_abort_stops_the_loop(project: Path) -> None:
    contexts: list[ApprovalContext] = []

    def gate(context: ApprovalContext) -> ApprovalDecision:
        contexts.append(context)
        return ApprovalDecision(action=ApprovalAction.ABORT)

    fixer = ScriptedFixer()
    result = _loop(project, ScriptedInvoker(DIVISION), fixer, RecordingRunner(), approval_gate=gate).run(
        1, changed_files=["app.py"]
    )

    assert result.exit_reason == ExitReason.HUMAN_ABORTED
    assert len(result.iterations) == 1
    assert fixer.batches == []
    assert contexts[0].iteration == 1
    assert [finding.id for finding in contexts[0].fixable] == ["cod-1"]


def test_approval_skip_records_unresolved_and_continues(project: Path) -> None:
    fixer = ScriptedFixer()
    gate = lambda context: ApprovalDecision(action=ApprovalAction.SKIP)  # noqa: E731
    result = _loop(project, ScriptedInvoker(DIVISION), fixer, RecordingRunner(), approval_gate=gate).run(
        1, max_iterations=2, changed_files=["app.py"]
    )

    assert result.exit_reason == ExitReason.MAX_ITERATIONS
    assert [iteration.unresolved_ids for iteration in result.iterations] == [["cod-1"], ["cod-1"]]
    assert fixer.batches == []


def test_approval_filter_defers_rejected_findings(project: Path) -> None:
    report = "\n".join([DIVISION, finding_line("Overflow", "critical", "`total` can overflow")])
    fixer = ScriptedFixer()
    gate = lambda context: ApprovalDecision(action=ApprovalAction.FILTER, approved_ids=("cod-2",))  # noqa: E731
    result = _loop(project, ScriptedInvoker(report, ""), fixer, RecordingRunner(), approval_gate=gate).run(
        1, changed_files=["app.py"]
    )

    # Findings are ordered by severity, so the critical "Overflow" is cod-1.
    assert [finding.title for finding in fixer.batches[0]] == ["Division by zero"]
    assert [finding.title for finding in result.deferred_findings] == ["Overflow"]
    assert result.exit_reason == ExitReason.CONVERGED
