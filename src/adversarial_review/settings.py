from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_iterations: int = 3
    base_branch: str = "main"
    model: str = "gpt-4o"
    fix_model: str = "gpt-4o"
    max_findings_per_role: int = 5
    max_fix_attempts: int = 3
    test_timeout_seconds: int = 900
    critic_workers: int = 3
    rule_threshold: int = 2
    outcome_threshold: int = 3
    memory_dir: str = "~/.adversarial-review/memory"
    state_dir: str = ".adversarial-review"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_iterations=_get_env_int("REVIEW_MAX_ITERATIONS", default=3, minimum=1, maximum=20),
            base_branch=os.getenv("REVIEW_BASE_BRANCH", "main"),
            model=os.getenv("REVIEW_MODEL", "gpt-4o"),
            fix_model=os.getenv("REVIEW_FIX_MODEL", "gpt-4o"),
            max_findings_per_role=_get_env_int("REVIEW_MAX_FINDINGS_PER_ROLE", default=5, minimum=1, maximum=50),
            max_fix_attempts=_get_env_int("REVIEW_MAX_FIX_ATTEMPTS", default=3, minimum=1, maximum=10),
            test_timeout_seconds=_get_env_int("REVIEW_TEST_TIMEOUT_SECONDS", default=900, minimum=10),
            critic_workers=_get_env_int("REVIEW_CRITIC_WORKERS", default=3, minimum=1, maximum=16),
            rule_threshold=_get_env_int("REVIEW_RULE_THRESHOLD", default=2, minimum=1),
            outcome_threshold=_get_env_int("REVIEW_OUTCOME_THRESHOLD", default=3, minimum=1),
            memory_dir=os.getenv("REVIEW_MEMORY_DIR", "~/.adversarial-review/memory"),
            state_dir=os.getenv("REVIEW_STATE_DIR", ".adversarial-review"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        base_branch = self.base_branch.strip()
        if not base_branch:
            raise ValueError("REVIEW_BASE_BRANCH must be non-empty")
        model = self.model.strip()
        if not model:
            raise ValueError("REVIEW_MODEL must be non-empty")
        fix_model = self.fix_model.strip()
        if not fix_model:
            raise ValueError("REVIEW_FIX_MODEL must be non-empty")
        if not self.memory_dir.strip():
            raise ValueError("REVIEW_MEMORY_DIR must be non-empty")
        state_dir = self.state_dir.strip()
        if not state_dir:
            raise ValueError("REVIEW_STATE_DIR must be non-empty")
        if Path(state_dir).is_absolute():
            raise ValueError(f"REVIEW_STATE_DIR must be relative to the project root, got: {state_dir}")
        return RuntimeSettings(
            max_iterations=self.max_iterations,
            base_branch=base_branch,
            model=model,
            fix_model=fix_model,
            max_findings_per_role=self.max_findings_per_role,
            max_fix_attempts=self.max_fix_attempts,
            test_timeout_seconds=self.test_timeout_seconds,
            critic_workers=self.critic_workers,
            rule_threshold=self.rule_threshold,
            outcome_threshold=self.outcome_threshold,
            memory_dir=self.memory_dir.strip(),
            state_dir=state_dir,
        )

    @property
    def memory_path(self) -> Path:
        return Path(self.memory_dir).expanduser()

    def state_path(self, project_dir: Path) -> Path:
        return project_dir / self.state_dir

    def risk_policy_path(self, project_dir: Path) -> Path:
        return self.state_path(project_dir) / "risk-policy.json"


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
