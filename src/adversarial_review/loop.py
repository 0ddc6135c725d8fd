"""Adversarial review loop: review -> verify -> (approve) -> fix -> record -> route.

One loop instance reviews one changeset (an epic). Iterations are strictly
sequential; each one is durably recorded before the router decides whether
to stop, so stuck detection always compares against a persisted iteration.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .approval import ApprovalContext, ApprovalGate
from .critics import FindingProducer, get_changed_files
from .fixer import Fixer, TestSuiteRunner
from .models import (
    ALL_ROLES,
    AdversarialLoopResult,
    ApprovalAction,
    ContextSnapshot,
    CriticResult,
    CriticRole,
    ExitReason,
    Finding,
    FixBatchResult,
    FixResult,
    IterationResult,
    ReviewRule,
    RiskTier,
    Severity,
    SnapshotPhase,
    SnapshotTestResult,
    VerificationResult,
    severity_rank,
)
from .state_store import ReviewStateStore, generate_session_id
from .verifier import verify_findings

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3

ProgressCallback = Callable[[int, str, str], None]


class LoopState(TypedDict, total=False):
    epic_number: int
    max_iterations: int
    roles: list[CriticRole]
    min_fix_severity: Severity
    review_rules: list[ReviewRule]
    changed_files: list[str] | None

    iteration: int
    critic_results: list[CriticResult]
    verification: VerificationResult
    fixable: list[Finding]
    fix_result: FixBatchResult | None
    tests_pass: bool
    approval: ApprovalAction | None

    iterations: list[IterationResult]
    deferred_findings: list[Finding]
    all_fix_results: list[FixResult]
    total_findings: int
    total_fixed: int
    total_discarded: int
    exit_reason: ExitReason


def partition_by_severity(findings: list[Finding], min_severity: Severity) -> tuple[list[Finding], list[Finding]]:
    """Split findings into ``(fixable, deferred)``; fixable are at least as severe as ``min_severity``."""
    threshold = severity_rank(min_severity)
    fixable = [finding for finding in findings if severity_rank(finding.severity) <= threshold]
    deferred = [finding for finding in findings if severity_rank(finding.severity) > threshold]
    return fixable, deferred


def is_stuck(previous: IterationResult, current: IterationResult) -> bool:
    """True when both iterations left the same non-empty set of unresolved IDs."""
    if not previous.unresolved_ids and not current.unresolved_ids:
        return False
    return set(previous.unresolved_ids) == set(current.unresolved_ids)


class AdversarialLoop:
    """Drives review iterations for one project until an exit condition fires."""

    def __init__(
        self,
        *,
        project_dir: Path,
        producer: FindingProducer,
        fixer: Fixer,
        test_suite_runner: TestSuiteRunner,
        store: ReviewStateStore,
        model: str,
        base_branch: str = "main",
        approval_gate: ApprovalGate | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.project_dir = project_dir
        self.producer = producer
        self.fixer = fixer
        self.test_suite_runner = test_suite_runner
        self.store = store
        self.model = model
        self.base_branch = base_branch
        self.approval_gate = approval_gate
        self.on_progress = on_progress
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(LoopState)
        graph.add_node("review", self._review)
        graph.add_node("verify", self._verify)
        graph.add_node("approve", self._approve)
        graph.add_node("fix", self._fix)
        graph.add_node("record", self._record)
        graph.add_node("route", self._route)

        graph.add_edge(START, "review")
        graph.add_edge("review", "verify")
        graph.add_edge("verify", "approve")
        graph.add_edge("fix", "record")
        graph.add_edge("record", "route")
        return graph

    def _progress(self, iteration: int, phase: str, message: str) -> None:
        logger.info("[iteration %d] %s: %s", iteration, phase, message)
        if self.on_progress is not None:
            self.on_progress(iteration, phase, message)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _review(self, state: LoopState) -> dict[str, Any]:
        iteration = int(state.get("iteration", 0)) + 1
        max_iterations = state["max_iterations"]
        self._progress(iteration, "review", f"Starting adversarial review iteration {iteration}/{max_iterations}")

        changed_files = state.get("changed_files")
        if changed_files is None:
            changed_files = get_changed_files(self.project_dir, self.base_branch)

        critic_results = self.producer.run(
            self.project_dir,
            changed_files,
            list(state["roles"]),
            rules=state.get("review_rules") or None,
        )
        finding_count = sum(len(result.findings) for result in critic_results)
        succeeded = sum(1 for result in critic_results if result.success)
        self._progress(iteration, "review", f"Found {finding_count} findings across {succeeded} critics")
        return {
            "iteration": iteration,
            "critic_results": critic_results,
            "fix_result": None,
            "approval": None,
            "total_findings": int(state.get("total_findings", 0)) + finding_count,
        }

    def _verify(self, state: LoopState) -> dict[str, Any]:
        iteration = state["iteration"]
        findings = [finding for result in state["critic_results"] for finding in result.findings]
        verification = verify_findings(self.project_dir, findings)
        stats = verification.stats
        self._progress(iteration, "verify", f"Verified: {stats.verified}, Discarded: {stats.discarded}")

        fixable, deferred = partition_by_severity(verification.verified, state["min_fix_severity"])
        if deferred:
            self._progress(
                iteration,
                "verify",
                f"Deferred {len(deferred)} findings below {state['min_fix_severity'].value} severity",
            )
        return {
            "verification": verification,
            "fixable": fixable,
            "deferred_findings": [*state.get("deferred_findings", []), *deferred],
            "total_discarded": int(state.get("total_discarded", 0)) + stats.discarded,
        }

    def _approve(self, state: LoopState) -> Command[str]:
        fixable = state["fixable"]
        if self.approval_gate is None or not fixable:
            return Command(goto="fix")

        iteration = state["iteration"]
        deferred_this_iteration = [
            finding for finding in state["verification"].verified if finding not in fixable
        ]
        self._progress(iteration, "approval", f"Awaiting approval for {len(fixable)} findings")
        decision = self.approval_gate(
            ApprovalContext(
                iteration=iteration,
                max_iterations=state["max_iterations"],
                fixable=list(fixable),
                deferred=deferred_this_iteration,
            )
        )

        if decision.action == ApprovalAction.ABORT:
            self._progress(iteration, "approval", "Review loop aborted by reviewer")
            return Command(update={"approval": decision.action, "tests_pass": True}, goto="record")

        if decision.action == ApprovalAction.SKIP:
            self._progress(iteration, "approval", "Fixes skipped for this iteration")
            return Command(update={"approval": decision.action, "tests_pass": True}, goto="record")

        if decision.action == ApprovalAction.FILTER:
            approved = set(decision.approved_ids)
            kept = [finding for finding in fixable if finding.id in approved]
            rejected = [finding for finding in fixable if finding.id not in approved]
            self._progress(iteration, "approval", f"Approved {len(kept)} findings, deferred {len(rejected)}")
            return Command(
                update={
                    "approval": decision.action,
                    "fixable": kept,
                    "deferred_findings": [*state.get("deferred_findings", []), *rejected],
                },
                goto="fix",
            )

        return Command(update={"approval": decision.action}, goto="fix")

    def _fix(self, state: LoopState) -> dict[str, Any]:
        iteration = state["iteration"]
        fixable = state["fixable"]
        if not fixable:
            self._progress(iteration, "fix", "No findings to fix")
            tests_pass = self.test_suite_runner(self.project_dir).passed
            return {"fix_result": None, "tests_pass": tests_pass}

        self._progress(iteration, "fix", f"Fixing {len(fixable)} verified findings")
        fix_result = self.fixer.fix(
            list(fixable),
            project_dir=self.project_dir,
            test_suite_runner=self.test_suite_runner,
            model=self.model,
        )
        self._progress(iteration, "fix", f"Fixed: {len(fix_result.fixed)}, Unfixed: {len(fix_result.unfixed)}")
        return {
            "fix_result": fix_result,
            "tests_pass": fix_result.final_test_result.passed,
            "total_fixed": int(state.get("total_fixed", 0)) + len(fix_result.fixed),
            "all_fix_results": [*state.get("all_fix_results", []), *fix_result.results],
        }

    def _record(self, state: LoopState) -> dict[str, Any]:
        iteration = state["iteration"]
        fix_result = state.get("fix_result")
        approval = state.get("approval")

        if approval == ApprovalAction.SKIP:
            unresolved_ids = [finding.id for finding in state["fixable"]]
        elif fix_result is not None:
            unresolved_ids = [finding.id for finding in fix_result.unfixed]
        else:
            unresolved_ids = []

        result = IterationResult(
            iteration=iteration,
            critic_results=state["critic_results"],
            verification=state["verification"],
            fix_result=fix_result,
            tests_pass=bool(state.get("tests_pass", True)),
            unresolved_ids=unresolved_ids,
        )
        self.store.write_iteration(state["epic_number"], result)
        self.store.write_snapshot(self._snapshot(state["epic_number"], result))
        return {"iterations": [*state.get("iterations", []), result]}

    def _snapshot(self, epic_number: int, result: IterationResult) -> ContextSnapshot:
        fix_result = result.fix_result
        fixed_files = (
            [item.finding.file for item in fix_result.results if item.fixed and item.finding.file]
            if fix_result is not None
            else []
        )
        return ContextSnapshot(
            session_id=generate_session_id(),
            timestamp=datetime.now(UTC).isoformat(),
            phase=SnapshotPhase.REVIEWING,
            epic_number=epic_number,
            review_iteration=result.iteration,
            files_changed=list(dict.fromkeys(fixed_files)),
            test_result=SnapshotTestResult(passed=result.tests_pass),
            findings_count=len(result.all_findings),
            fixed_count=len(fix_result.fixed) if fix_result is not None else 0,
            discarded_count=result.verification.stats.discarded,
            unresolved_ids=result.unresolved_ids,
            fix_commits=(
                [item.commit_sha for item in fix_result.results if item.commit_sha] if fix_result is not None else []
            ),
        )

    def _route(self, state: LoopState) -> Command[str]:
        iteration = state["iteration"]
        iterations = state["iterations"]
        current = iterations[-1]
        has_budget = iteration < state["max_iterations"]

        def stop(reason: ExitReason, message: str) -> Command[str]:
            self._progress(iteration, "done", message)
            return Command(update={"exit_reason": reason}, goto=END)

        def next_or_stop() -> Command[str]:
            if has_budget:
                return Command(goto="review")
            return stop(ExitReason.MAX_ITERATIONS, f"Reached the iteration limit ({state['max_iterations']})")

        approval = state.get("approval")
        if approval == ApprovalAction.ABORT:
            return stop(ExitReason.HUMAN_ABORTED, "Aborted by reviewer")
        if approval == ApprovalAction.SKIP:
            return next_or_stop()

        if not state["fixable"]:
            return stop(ExitReason.CONVERGED, "Converged: no fixable findings")
        if not current.tests_pass:
            return stop(ExitReason.TEST_FAILURE, "Tests failing after fixes")
        if current.fix_result is not None and not current.fix_result.unfixed:
            if has_budget:
                self._progress(iteration, "done", "All findings fixed; re-reviewing for regressions")
            return next_or_stop()
        if len(iterations) >= 2 and is_stuck(iterations[-2], current):
            return stop(ExitReason.STUCK, "Stuck: same unresolved findings as the previous iteration")
        return next_or_stop()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        epic_number: int,
        *,
        tier: RiskTier | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        review_rules: list[ReviewRule] | None = None,
        changed_files: list[str] | None = None,
    ) -> AdversarialLoopResult:
        """Run the loop for one epic.

        Args:
            epic_number: Changeset identifier; artifacts go under ``reviews/epic-<n>``.
            tier: Resolved risk tier. Overrides ``max_iterations`` and selects the
                critic roles and the fix severity threshold. Without a tier all
                roles run and every verified finding is fixable.
            max_iterations: Iteration bound used when no tier is given.
            review_rules: Learned rules injected into critic prompts.
            changed_files: Files to review. ``None`` diffs against the base branch
                at the start of every iteration.
        """
        if tier is not None:
            max_iterations = tier.max_iterations
            roles = list(tier.roles)
            min_fix_severity = tier.min_fix_severity
        else:
            roles = list(ALL_ROLES)
            min_fix_severity = Severity.INFO
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")

        self.store.begin_run(epic_number)
        logger.info(
            "Starting review of epic %d: roles=%s max_iterations=%d min_fix_severity=%s",
            epic_number,
            ",".join(role.value for role in roles),
            max_iterations,
            min_fix_severity.value,
        )

        final = self.graph.invoke(
            {
                "epic_number": epic_number,
                "max_iterations": max_iterations,
                "roles": roles,
                "min_fix_severity": min_fix_severity,
                "review_rules": list(review_rules or []),
                "changed_files": changed_files,
                "iteration": 0,
                "iterations": [],
                "deferred_findings": [],
                "all_fix_results": [],
                "total_findings": 0,
                "total_fixed": 0,
                "total_discarded": 0,
            },
            config={"recursion_limit": max_iterations * 8 + 10},
        )

        iterations: list[IterationResult] = final["iterations"]
        exit_reason: ExitReason = final["exit_reason"]
        last_fix = iterations[-1].fix_result if iterations else None
        logger.info("Epic %d review finished after %d iterations: %s", epic_number, len(iterations), exit_reason.value)
        return AdversarialLoopResult(
            iterations=iterations,
            converged=exit_reason == ExitReason.CONVERGED,
            exit_reason=exit_reason,
            total_findings=final.get("total_findings", 0),
            total_fixed=final.get("total_fixed", 0),
            total_discarded=final.get("total_discarded", 0),
            unresolved_findings=list(last_fix.unfixed) if last_fix is not None else [],
            all_fix_results=final.get("all_fix_results", []),
            deferred_findings=final.get("deferred_findings", []),
        )
