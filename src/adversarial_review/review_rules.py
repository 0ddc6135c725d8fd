"""Cross-project review rules.

After a loop completes, its findings are grouped into rule candidates and
merged into a persistent store. Rules seen often enough are injected back
into critic prompts so recurring issues get looked for explicitly.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from .models import AdversarialLoopResult, CriticRole, Finding, ReviewRule
from .state_store import atomic_write_text

logger = logging.getLogger(__name__)

RULES_FILE = "review-rules.yaml"
DEFAULT_PROMOTION_THRESHOLD = 2
MAX_RULES_PER_ROLE = 10

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize_to_key(role: CriticRole | str, title: str) -> str:
    """Build the permanent identity of a finding pattern: ``<role>--<slug>``.

    Idempotent: normalizing a key's own slug part yields the same slug.
    """
    role_value = role.value if isinstance(role, CriticRole) else str(role)
    slug = _NON_ALNUM_RE.sub("-", title.lower().strip()).strip("-")
    return f"{role_value}--{slug}"


def extract_rule_candidates(
    loop_result: AdversarialLoopResult,
    project_name: str,
    *,
    now: datetime | None = None,
) -> list[ReviewRule]:
    """Group every finding of a loop run by normalized key into one candidate rule each.

    ``times_seen`` is the number of occurrences within this run. The first
    finding seen for a key supplies the description and severity.
    """
    seen_at = now or datetime.now(UTC)

    findings: list[Finding] = [finding for iteration in loop_result.iterations for finding in iteration.all_findings]
    findings.extend(loop_result.deferred_findings)
    findings.extend(loop_result.unresolved_findings)

    grouped: dict[str, tuple[Finding, int]] = {}
    for finding in findings:
        key = normalize_to_key(finding.source, finding.title)
        first, count = grouped.get(key, (finding, 0))
        grouped[key] = (first, count + 1)

    return [
        ReviewRule(
            key=key,
            description=finding.description,
            severity=finding.severity,
            source_role=finding.source,
            times_seen=count,
            projects=[project_name],
            first_seen=seen_at,
            last_seen=seen_at,
        )
        for key, (finding, count) in grouped.items()
    ]


def merge_rules(existing: list[ReviewRule], candidates: list[ReviewRule]) -> list[ReviewRule]:
    """Merge candidates into existing rules. Additive only: nothing is decremented or removed."""
    merged: dict[str, ReviewRule] = {rule.key: rule.model_copy(deep=True) for rule in existing}

    for candidate in candidates:
        found = merged.get(candidate.key)
        if found is None:
            merged[candidate.key] = candidate.model_copy(deep=True)
            continue
        projects = list(found.projects)
        for project in candidate.projects:
            if project not in projects:
                projects.append(project)
        merged[candidate.key] = found.model_copy(
            update={
                "times_seen": found.times_seen + candidate.times_seen,
                "last_seen": candidate.last_seen,
                "projects": projects,
            }
        )

    return list(merged.values())


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class RuleStore(Protocol):
    """Whole-document rule storage: read everything, write everything."""

    def load(self) -> list[ReviewRule]:
        ...

    def save(self, rules: list[ReviewRule]) -> Path | None:
        ...


def _is_valid_rule(entry: Any) -> bool:
    try:
        ReviewRule.model_validate(entry)
    except ValidationError:
        return False
    return True


class YamlRuleStore:
    """Single YAML document holding every rule.

    Read-merge-write without locking: two loops finishing at the same time
    can lose one side's update. Entries that fail validation are written back
    untouched by ``save``, and a document that cannot be parsed is moved aside
    before being replaced, so a stored rule is never dropped.
    """

    def __init__(self, memory_dir: Path) -> None:
        self.memory_dir = memory_dir

    @property
    def path(self) -> Path:
        return self.memory_dir / RULES_FILE

    def _read_entries(self) -> list[Any] | None:
        """Raw document entries: ``[]`` when missing or empty, ``None`` when unreadable or not a list."""
        if not self.path.is_file():
            return []
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            logger.warning("Ignoring unreadable review rules at %s: %s", self.path, exc)
            return None
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring review rules at %s: expected a list, got %s", self.path, type(raw).__name__)
            return None
        return raw

    def load(self) -> list[ReviewRule]:
        """Return all valid stored rules. Missing, empty, or malformed documents load as ``[]``."""
        rules: list[ReviewRule] = []
        for index, entry in enumerate(self._read_entries() or []):
            try:
                rules.append(ReviewRule.model_validate(entry))
            except ValidationError as exc:
                logger.warning("Skipping invalid review rule #%d in %s: %s", index, self.path, exc)
        return rules

    def save(self, rules: list[ReviewRule]) -> Path:
        entries = self._read_entries()
        if entries is None:
            backup = self.path.with_name(f"{self.path.name}.{datetime.now(UTC):%Y%m%dT%H%M%S%f}.bak")
            self.path.replace(backup)
            logger.warning("Moved unreadable review rules %s to %s", self.path, backup)
            entries = []
        preserved = [entry for entry in entries if not _is_valid_rule(entry)]
        if preserved:
            logger.info("Keeping %d unparsed review rule entries in %s", len(preserved), self.path)

        payload = [rule.model_dump(mode="json", by_alias=True) for rule in rules] + preserved
        atomic_write_text(self.path, yaml.safe_dump(payload, sort_keys=False, allow_unicode=True))
        return self.path


def learn_from_loop(store: RuleStore, loop_result: AdversarialLoopResult, project_name: str) -> list[ReviewRule]:
    """Extract candidates from a finished loop, merge them into the store, and persist."""
    candidates = extract_rule_candidates(loop_result, project_name)
    merged = merge_rules(store.load(), candidates)
    store.save(merged)
    logger.info("Recorded %d rule candidates for %s (%d rules stored)", len(candidates), project_name, len(merged))
    return merged


# ---------------------------------------------------------------------------
# Prompt section
# ---------------------------------------------------------------------------


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def build_rules_prompt_section(
    rules: list[ReviewRule],
    role: CriticRole,
    threshold: int = DEFAULT_PROMOTION_THRESHOLD,
) -> str:
    """Render the recurring-issue section for one critic role, or ``""`` when nothing qualifies."""
    qualified = sorted(
        (rule for rule in rules if rule.source_role == role and rule.times_seen >= threshold),
        key=lambda rule: rule.times_seen,
        reverse=True,
    )[:MAX_RULES_PER_ROLE]

    if not qualified:
        return ""

    lines = [
        "",
        "## Known Recurring Issues from Past Projects",
        "The following patterns have been found repeatedly in past reviews. Pay special attention to these:",
        "",
    ]
    for index, rule in enumerate(qualified, start=1):
        lines.append(
            f"{index}. **{rule.description}** (severity: {rule.severity.value}, "
            f"seen {rule.times_seen} times across {_plural(len(rule.projects), 'project')})"
        )
    return "\n".join(lines)
