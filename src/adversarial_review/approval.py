"""Optional human approval between verification and fixing."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from .models import ApprovalAction, ApprovalDecision, Finding

logger = logging.getLogger(__name__)

_APPROVE_WORDS = {"approve", "approved", "yes", "lgtm", "ok"}
_ABORT_WORDS = {"abort", "stop", "cancel"}
_FILTER_RE = re.compile(r"^filter[:\s]+(.+)")
_ID_SPLIT_RE = re.compile(r"[\s,]+")


@dataclass(frozen=True)
class ApprovalContext:
    iteration: int
    max_iterations: int
    fixable: list[Finding]
    deferred: list[Finding]


ApprovalGate = Callable[[ApprovalContext], ApprovalDecision]


def format_findings_for_approval(fixable: list[Finding], deferred: list[Finding]) -> str:
    """Markdown listing of fixable findings (numbered) and deferred findings (bulleted)."""
    lines = [f"## Findings to Fix ({len(fixable)})"]
    for index, finding in enumerate(fixable, start=1):
        location = f" ({finding.file})" if finding.file else ""
        lines.append(f"{index}. [{finding.id}] **{finding.title}** ({finding.severity.value}){location}")

    if deferred:
        lines.append("")
        lines.append(f"## Deferred ({len(deferred)})")
        for finding in deferred:
            location = f" ({finding.file})" if finding.file else ""
            lines.append(f"- [{finding.id}] {finding.title} ({finding.severity.value}){location}")
    return "\n".join(lines)


def parse_approval_reply(text: str) -> ApprovalDecision:
    """Interpret a free-text reply.

    ``approve``/``yes``/``lgtm``/``ok`` approve, ``skip`` skips,
    ``abort``/``stop``/``cancel`` abort, and ``filter: id1, id2`` fixes only
    the listed IDs. Anything unrecognized approves.
    """
    normalized = text.strip().lower()
    if normalized in _APPROVE_WORDS:
        return ApprovalDecision(action=ApprovalAction.APPROVE)
    if normalized == "skip":
        return ApprovalDecision(action=ApprovalAction.SKIP)
    if normalized in _ABORT_WORDS:
        return ApprovalDecision(action=ApprovalAction.ABORT)

    match = _FILTER_RE.match(normalized)
    if match:
        ids = tuple(part for part in _ID_SPLIT_RE.split(match.group(1)) if part)
        if ids:
            return ApprovalDecision(action=ApprovalAction.FILTER, approved_ids=ids)

    return ApprovalDecision(action=ApprovalAction.APPROVE)


class ConsoleApprovalGate:
    """Prints the findings and reads one reply line from the terminal.

    End of input aborts the loop.
    """

    def __init__(
        self,
        *,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self._input = input_fn
        self._output = output_fn

    def __call__(self, context: ApprovalContext) -> ApprovalDecision:
        self._output("")
        self._output(format_findings_for_approval(context.fixable, context.deferred))
        self._output("")
        prompt = (
            f"Iteration {context.iteration}/{context.max_iterations}: {len(context.fixable)} findings to fix.\n"
            "Reply: approve | skip | abort | filter: id1, id2\n> "
        )
        try:
            reply = self._input(prompt)
        except EOFError:
            logger.info("No approval input available; aborting review loop")
            return ApprovalDecision(action=ApprovalAction.ABORT)
        return parse_approval_reply(reply)
