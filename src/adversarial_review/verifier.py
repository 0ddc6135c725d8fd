"""Deterministic finding verification.

No model calls. Each finding is checked against the project on disk so that
hallucinated file paths and phantom code references never reach the fixer.
The policy leans towards keeping findings: a failed fix attempt costs less
than silently dropping a real issue.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .models import DiscardedFinding, Finding, VerificationResult

logger = logging.getLogger(__name__)

# "name", 'name', `name` with an optional trailing "()" inside the quotes.
_QUOTED_TERM_RE = re.compile(r"""["'`]([a-zA-Z_$][\w$.]*(?:\(\))?)[`"']""")
_BACKTICK_TERM_RE = re.compile(r"`([a-zA-Z_$][\w$.]*)`")


def extract_key_terms(text: str) -> list[str]:
    """Return quoted and backtick-wrapped identifiers in ``text``, de-duplicated in order."""
    terms: list[str] = []
    for match in _QUOTED_TERM_RE.finditer(text):
        terms.append(match.group(1).replace("()", "", 1))
    for match in _BACKTICK_TERM_RE.finditer(text):
        terms.append(match.group(1))
    return list(dict.fromkeys(term for term in terms if term))


def _is_inside(root: Path, path: Path) -> bool:
    return path.resolve().is_relative_to(root.resolve())


def _content_mismatch_reason(content: str, finding: Finding) -> str | None:
    terms = list(dict.fromkeys(extract_key_terms(finding.description) + extract_key_terms(finding.title)))
    if not terms:
        return None
    if any(term in content for term in terms):
        return None
    return f"None of the key terms [{', '.join(terms)}] found in {finding.file}"


def verify_findings(project_dir: Path, findings: list[Finding]) -> VerificationResult:
    """Partition findings into verified and discarded.

    For each finding:
      1. no ``file``: kept, it cannot be file-verified
      2. file missing: discarded
      3. file unreadable: discarded
      4. no quoted/backticked key terms: kept
      5. at least one key term is a substring of the file: kept, otherwise discarded
    """
    verified: list[Finding] = []
    discarded: list[DiscardedFinding] = []

    for finding in findings:
        if not finding.file:
            verified.append(finding)
            continue

        path = project_dir / finding.file
        try:
            exists = _is_inside(project_dir, path) and path.is_file()
        except (OSError, ValueError):
            # NUL bytes, over-long names and similar paths a critic made up.
            exists = False
        if not exists:
            discarded.append(DiscardedFinding(finding=finding, reason=f"File does not exist: {finding.file}"))
            continue

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            discarded.append(DiscardedFinding(finding=finding, reason=f"File unreadable: {finding.file}"))
            continue

        reason = _content_mismatch_reason(content, finding)
        if reason is not None:
            discarded.append(DiscardedFinding(finding=finding, reason=reason))
            continue

        verified.append(finding)

    result = VerificationResult(verified=verified, discarded=discarded)
    logger.debug("verified %d of %d findings", result.stats.verified, result.stats.total)
    return result
