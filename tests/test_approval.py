from __future__ import annotations

import pytest
from conftest import make_finding

from adversarial_review.approval import (
    ApprovalContext,
    ConsoleApprovalGate,
    format_findings_for_approval,
    parse_approval_reply,
)
from adversarial_review.models import ApprovalAction, Severity


@pytest.mark.parametrize(
    ("reply", "action"),
    [
        ("approve", ApprovalAction.APPROVE),
        ("  LGTM ", ApprovalAction.APPROVE),
        ("skip", ApprovalAction.SKIP),
        ("Stop", ApprovalAction.ABORT),
        ("cancel", ApprovalAction.ABORT),
        ("whatever you think", ApprovalAction.APPROVE),
        ("filter:", ApprovalAction.APPROVE),
    ],
)
def test_parse_reply_actions(reply: str, action: ApprovalAction) -> None:
    assert parse_approval_reply(reply).action == action


def test_parse_filter_reply_collects_ids() -> None:
    decision = parse_approval_reply("filter: sec-1, cod-2  tst-3")
    assert decision.action == ApprovalAction.FILTER
    assert decision.approved_ids == ("sec-1", "cod-2", "tst-3")


def test_format_lists_fixable_and_deferred() -> None:
    fixable = [make_finding("sec-1", severity=Severity.CRITICAL, title="Hardcoded key")]
    deferred = [make_finding("cod-3", severity=Severity.LOW, title="Long line", file=None)]
    text = format_findings_for_approval(fixable, deferred)

    assert text.splitlines()[0] == "## Findings to Fix (1)"
    assert "1. [sec-1] **Hardcoded key** (critical) (app.py)" in text
    assert "## Deferred (1)" in text
    assert "- [cod-3] Long line (low)" in text


def test_console_gate_reads_reply() -> None:
    printed: list[str] = []
    prompts: list[str] = []

    def reply(prompt: str) -> str:
        prompts.append(prompt)
        return "filter: cod-1"

    gate = ConsoleApprovalGate(input_fn=reply, output_fn=printed.append)
    decision = gate(ApprovalContext(iteration=2, max_iterations=3, fixable=[make_finding()], deferred=[]))

    assert decision.approved_ids == ("cod-1",)
    assert prompts[0].startswith("Iteration 2/3: 1 findings to fix.")
    assert any("## Findings to Fix (1)" in line for line in printed)


def test_console_gate_aborts_without_input() -> None:
    def closed(prompt: str) -> str:
        raise EOFError

    gate = ConsoleApprovalGate(input_fn=closed, output_fn=lambda _: None)
    decision = gate(ApprovalContext(iteration=1, max_iterations=1, fixable=[make_finding()], deferred=[]))
    assert decision.action == ApprovalAction.ABORT
