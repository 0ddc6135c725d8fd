from importlib.metadata import PackageNotFoundError, version

from .approval import ApprovalContext, ConsoleApprovalGate, format_findings_for_approval, parse_approval_reply
from .critics import ChatCritic, FindingProducer, get_changed_files, parse_findings
from .fixer import DeepAgentFixer, Fixer, shell_test_runner
from .loop import AdversarialLoop, is_stuck, partition_by_severity
from .models import (
    AdversarialLoopResult,
    ApprovalAction,
    ApprovalDecision,
    ContextSnapshot,
    CriticResult,
    CriticRole,
    ExitReason,
    Finding,
    FixBatchResult,
    FixResult,
    IterationResult,
    ReviewRule,
    RiskPolicy,
    RiskTier,
    Severity,
    SnapshotPhase,
    TestSuiteResult,
    VerificationResult,
)
from .outcome_injector import augment_prompt, build_outcome_section, get_relevant_rules
from .review_rules import (
    YamlRuleStore,
    build_rules_prompt_section,
    extract_rule_candidates,
    learn_from_loop,
    merge_rules,
    normalize_to_key,
)
from .risk_policy import default_risk_policy, load_risk_policy, resolve_risk_tier
from .state_store import ReviewStateStore, format_snapshot_for_prompt
from .summary import generate_summary
from .verifier import verify_findings


def get_version() -> str:
    try:
        return version("adversarial-review")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AdversarialLoop",
    "AdversarialLoopResult",
    "ApprovalAction",
    "ApprovalContext",
    "ApprovalDecision",
    "ChatCritic",
    "ConsoleApprovalGate",
    "ContextSnapshot",
    "CriticResult",
    "CriticRole",
    "DeepAgentFixer",
    "ExitReason",
    "Finding",
    "FindingProducer",
    "FixBatchResult",
    "FixResult",
    "Fixer",
    "IterationResult",
    "ReviewRule",
    "ReviewStateStore",
    "RiskPolicy",
    "RiskTier",
    "Severity",
    "SnapshotPhase",
    "TestSuiteResult",
    "VerificationResult",
    "YamlRuleStore",
    "augment_prompt",
    "build_outcome_section",
    "build_rules_prompt_section",
    "default_risk_policy",
    "extract_rule_candidates",
    "format_findings_for_approval",
    "format_snapshot_for_prompt",
    "generate_summary",
    "get_changed_files",
    "get_relevant_rules",
    "get_version",
    "is_stuck",
    "learn_from_loop",
    "load_risk_policy",
    "merge_rules",
    "normalize_to_key",
    "parse_approval_reply",
    "parse_findings",
    "partition_by_severity",
    "resolve_risk_tier",
    "shell_test_runner",
    "verify_findings",
]
