"""Risk-tiered review policy.

A policy maps changed file paths to a tier; the tier decides which critic
roles run, how many loop iterations are allowed, and the minimum severity the
fixer acts on. Tiers are checked highest risk first and the first tier with
any matching file wins.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError
from wcmatch import glob as wcglob

from .models import ALL_ROLES, CriticRole, ResolvedRiskTier, RiskPolicy, RiskTier, Severity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------------


# "**" may match zero directories; dotfiles are not special.
_GLOB_FLAGS = wcglob.GLOBSTAR | wcglob.BRACE | wcglob.DOTGLOB | wcglob.FORCEUNIX


def _normalize_path(path: str) -> str:
    normalized = path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def matches_glob(path: str, pattern: str) -> bool:
    return wcglob.globmatch(_normalize_path(path), pattern.strip(), flags=_GLOB_FLAGS)


def matches_any(path: str, patterns: list[str]) -> bool:
    return bool(patterns) and wcglob.globmatch(
        _normalize_path(path), [pattern.strip() for pattern in patterns], flags=_GLOB_FLAGS
    )


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def default_risk_policy() -> RiskPolicy:
    """Built-in three-tier policy used when a project ships no policy file."""
    return RiskPolicy(
        version="1",
        tiers={
            "high": RiskTier(
                path_globs=["src/api/**", "src/auth/**", "src/middleware/**", "db/**"],
                max_iterations=3,
                min_fix_severity=Severity.MEDIUM,
                roles=list(ALL_ROLES),
                require_approval=True,
            ),
            "medium": RiskTier(
                path_globs=["src/components/**", "src/routes/**", "src/pages/**"],
                max_iterations=2,
                min_fix_severity=Severity.HIGH,
                roles=[CriticRole.CODE_QUALITY, CriticRole.TEST_COVERAGE],
            ),
            "low": RiskTier(
                path_globs=["**"],
                max_iterations=1,
                min_fix_severity=Severity.CRITICAL,
                roles=[CriticRole.CODE_QUALITY],
            ),
        },
    )


def load_risk_policy(path: Path) -> RiskPolicy | None:
    """Load a JSON risk policy.

    Returns:
        The parsed policy, or ``None`` when *path* does not exist.

    Raises:
        ValueError: If the file exists but is not a valid policy.
    """
    if not path.is_file():
        return None
    try:
        return RiskPolicy.model_validate_json(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, ValidationError) as exc:
        raise ValueError(f"risk policy at {path} failed validation: {exc}") from exc


def resolve_risk_tier(policy: RiskPolicy, changed_files: list[str]) -> ResolvedRiskTier:
    """Pick the first tier (in priority order) with any changed file matching any of its globs.

    An empty change list, or a list nothing matches, resolves to the last
    (catch-all) tier, so resolution always produces a tier.
    """
    for tier_name, tier in policy.tiers.items():
        if any(matches_any(path, tier.path_globs) for path in changed_files):
            logger.debug("risk tier %s matched for %d changed files", tier_name, len(changed_files))
            return ResolvedRiskTier(tier_name=tier_name, tier=tier)

    fallback_name = list(policy.tiers)[-1]
    return ResolvedRiskTier(tier_name=fallback_name, tier=policy.tiers[fallback_name])
