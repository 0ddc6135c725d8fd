"""Entry point for `python -m adversarial_review` and the `adversarial-review` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from adversarial_review.approval import ConsoleApprovalGate
from adversarial_review.critics import ChatCritic, FindingProducer, get_changed_files
from adversarial_review.fixer import DeepAgentFixer, shell_test_runner
from adversarial_review.llm import ensure_openai_api_key
from adversarial_review.loop import AdversarialLoop
from adversarial_review.review_rules import YamlRuleStore, learn_from_loop
from adversarial_review.risk_policy import default_risk_policy, load_risk_policy, resolve_risk_tier
from adversarial_review.settings import RuntimeSettings
from adversarial_review.state_store import ReviewStateStore
from adversarial_review.summary import generate_summary


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the adversarial review loop against a project")
    parser.add_argument("--project-dir", type=Path, required=True, help="Root of the git repository to review")
    parser.add_argument("--epic", type=int, required=True, help="Epic number identifying the changeset")
    parser.add_argument("--test-command", required=True, help="Shell command that runs the project's test suite")
    parser.add_argument("--base-branch", default=None, help="Branch to diff against (default: REVIEW_BASE_BRANCH)")
    parser.add_argument("--project-name", default=None, help="Name recorded in learned rules (default: directory name)")
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Ask for approval before fixing when the resolved risk tier requires it",
    )
    parser.add_argument("--no-learn", action="store_true", help="Do not merge findings into the review rule store")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_dir = args.project_dir.resolve()
    try:
        if not project_dir.is_dir():
            raise FileNotFoundError(f"Project directory does not exist: {project_dir}")
        if args.epic < 1:
            raise ValueError(f"--epic must be >= 1, got: {args.epic}")
        settings = RuntimeSettings.from_env()
        ensure_openai_api_key(project_dir)
        policy = load_risk_policy(settings.risk_policy_path(project_dir)) or default_risk_policy()
        test_runner = shell_test_runner(args.test_command, settings.test_timeout_seconds)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start review: %s", exc)
        return 1

    base_branch = args.base_branch or settings.base_branch
    resolved = resolve_risk_tier(policy, get_changed_files(project_dir, base_branch))
    logging.info("Resolved risk tier %s", resolved.tier_name)

    rule_store = YamlRuleStore(settings.memory_path)
    store = ReviewStateStore(project_dir, settings.state_dir)
    loop = AdversarialLoop(
        project_dir=project_dir,
        producer=FindingProducer(
            ChatCritic(settings.model, repo_root=project_dir),
            max_findings_per_role=settings.max_findings_per_role,
            max_workers=settings.critic_workers,
            rule_threshold=settings.rule_threshold,
        ),
        fixer=DeepAgentFixer(
            max_attempts=settings.max_fix_attempts,
            state_dir=settings.state_dir,
            repo_root=project_dir,
        ),
        test_suite_runner=test_runner,
        store=store,
        model=settings.fix_model,
        base_branch=base_branch,
        approval_gate=ConsoleApprovalGate() if args.interactive and resolved.tier.require_approval else None,
    )

    try:
        result = loop.run(args.epic, tier=resolved.tier, review_rules=rule_store.load())
    except Exception as exc:  # noqa: BLE001
        logging.exception("Review loop failed: %s", exc)
        return 1

    summary = generate_summary(store, args.epic, result)
    if not args.no_learn:
        learn_from_loop(rule_store, result, args.project_name or project_dir.name)

    print(f"exit_reason={result.exit_reason.value}")
    print(f"summary={summary.saved_path}")
    return 0 if result.converged else 1


if __name__ == "__main__":
    raise SystemExit(main())
