from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}

SEVERITY_ORDER: tuple[Severity, ...] = tuple(sorted(SEVERITY_RANK, key=SEVERITY_RANK.__getitem__))


def severity_rank(severity: Severity | str) -> int:
    """Lower is more severe. Unknown values sort after ``info``."""
    try:
        return SEVERITY_RANK[Severity(severity)]
    except ValueError:
        return len(SEVERITY_RANK)


class CriticRole(str, Enum):
    CODE_QUALITY = "code-quality"
    TEST_COVERAGE = "test-coverage"
    SECURITY = "security"

    @property
    def prefix(self) -> str:
        return self.value[:3]


ALL_ROLES: tuple[CriticRole, ...] = (CriticRole.CODE_QUALITY, CriticRole.TEST_COVERAGE, CriticRole.SECURITY)


class ExitReason(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max-iterations"
    STUCK = "stuck"
    TEST_FAILURE = "test-failure"
    HUMAN_ABORTED = "human-aborted"


class SnapshotPhase(str, Enum):
    BUILDING = "BUILDING"
    REVIEWING = "REVIEWING"
    DEPLOYING = "DEPLOYING"


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    FILTER = "filter"
    SKIP = "skip"
    ABORT = "abort"


class CamelModel(BaseModel):
    """Base for persisted models: snake_case in Python, camelCase on disk."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class Finding(CamelModel):
    """One issue reported by a critic role. Immutable once produced."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    source: CriticRole
    severity: Severity
    title: str
    description: str
    file: str | None = None


@dataclass(frozen=True)
class CriticResult:
    role: CriticRole
    findings: list[Finding]
    report: str
    success: bool


@dataclass(frozen=True)
class DiscardedFinding:
    finding: Finding
    reason: str


@dataclass(frozen=True)
class VerificationStats:
    total: int
    verified: int
    discarded: int


@dataclass(frozen=True)
class VerificationResult:
    verified: list[Finding]
    discarded: list[DiscardedFinding]

    @property
    def stats(self) -> VerificationStats:
        return VerificationStats(
            total=len(self.verified) + len(self.discarded),
            verified=len(self.verified),
            discarded=len(self.discarded),
        )


# ---------------------------------------------------------------------------
# Fixer contract
# ---------------------------------------------------------------------------


class TestSuiteResult(BaseModel):
    __test__ = False

    model_config = ConfigDict(frozen=True)

    passed: bool
    output: str = ""


@dataclass(frozen=True)
class FixResult:
    finding: Finding
    fixed: bool
    attempts: int
    commit_sha: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class FixBatchResult:
    """Outcome of one Fixer call.

    A finding is in ``fixed`` only when the test suite passed after its repair;
    every other attempted finding is in ``unfixed``.
    """

    results: list[FixResult]
    fixed: list[Finding]
    unfixed: list[Finding]
    final_test_result: TestSuiteResult


# ---------------------------------------------------------------------------
# Loop results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IterationResult:
    iteration: int
    critic_results: list[CriticResult]
    verification: VerificationResult
    fix_result: FixBatchResult | None
    tests_pass: bool
    unresolved_ids: list[str]

    @property
    def all_findings(self) -> list[Finding]:
        return [finding for result in self.critic_results for finding in result.findings]


@dataclass(frozen=True)
class AdversarialLoopResult:
    iterations: list[IterationResult]
    converged: bool
    exit_reason: ExitReason
    total_findings: int
    total_fixed: int
    total_discarded: int
    unresolved_findings: list[Finding]
    all_fix_results: list[FixResult]
    deferred_findings: list[Finding] = field(default_factory=list)


@dataclass(frozen=True)
class ApprovalDecision:
    action: ApprovalAction
    approved_ids: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Review rules
# ---------------------------------------------------------------------------


class ReviewRule(CamelModel):
    """Cross-project record of a recurring finding, identified by ``key`` forever."""

    key: str
    description: str
    severity: Severity
    source_role: CriticRole
    times_seen: int = Field(ge=1)
    projects: list[str] = Field(default_factory=list)
    first_seen: datetime
    last_seen: datetime


# ---------------------------------------------------------------------------
# Risk policy
# ---------------------------------------------------------------------------


class RiskTier(CamelModel):
    path_globs: list[str] = Field(min_length=1)
    max_iterations: int = Field(ge=1, le=20)
    min_fix_severity: Severity = Severity.HIGH
    roles: list[CriticRole] = Field(min_length=1)
    require_approval: bool = False

    @field_validator("min_fix_severity")
    @classmethod
    def _reject_info_threshold(cls, value: Severity) -> Severity:
        if value == Severity.INFO:
            raise ValueError("min_fix_severity cannot be 'info'")
        return value


class RiskPolicy(CamelModel):
    """Named tiers in priority order (highest risk first); the last tier is the catch-all."""

    version: str = "1"
    tiers: dict[str, RiskTier] = Field(min_length=1)

    @model_validator(mode="after")
    def _require_catch_all(self) -> "RiskPolicy":
        last_name = list(self.tiers)[-1]
        if "**" not in self.tiers[last_name].path_globs:
            raise ValueError(f"lowest-priority tier '{last_name}' must include the catch-all glob '**'")
        return self


@dataclass(frozen=True)
class ResolvedRiskTier:
    tier_name: str
    tier: RiskTier


# ---------------------------------------------------------------------------
# Context snapshots
# ---------------------------------------------------------------------------


class SnapshotTestResult(CamelModel):
    passed: bool
    total_tests: int = 0
    failed_tests: int = 0
    failing_names: list[str] = Field(default_factory=list)


class SnapshotDecision(CamelModel):
    key: str
    value: str
    reason: str | None = None


class SnapshotBlocker(CamelModel):
    description: str
    resolved: bool = False
    resolution: str | None = None


class ContextSnapshot(CamelModel):
    """Machine-readable handoff state written once per session, never overwritten."""

    session_id: str
    timestamp: str
    phase: SnapshotPhase
    epic_number: int
    story_id: str | None = None
    review_iteration: int | None = None
    files_changed: list[str] = Field(default_factory=list)
    test_result: SnapshotTestResult | None = None
    decisions: list[SnapshotDecision] = Field(default_factory=list)
    blockers: list[SnapshotBlocker] = Field(default_factory=list)
    findings_count: int | None = None
    fixed_count: int | None = None
    discarded_count: int | None = None
    unresolved_ids: list[str] = Field(default_factory=list)
    fix_commits: list[str] = Field(default_factory=list)
    notes: str | None = None
