"""Finding producer: independent critic roles reviewing one changeset.

Each role gets its own system prompt and returns a free-text report in which
findings appear as single-line JSON objects. Reports are parsed tolerantly:
anything that is not a well-formed finding line is skipped.
"""

from __future__ import annotations

import json
import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .llm import invoke_text
from .models import CriticResult, CriticRole, Finding, ReviewRule, Severity, severity_rank
from .review_rules import DEFAULT_PROMOTION_THRESHOLD, build_rules_prompt_section

logger = logging.getLogger(__name__)

MAX_FINDINGS_PER_ROLE = 5
MAX_FILE_CHARS = 10_000
GIT_MAX_OUTPUT = 10 * 1024 * 1024

DEFAULT_SOURCE_EXTENSIONS: frozenset[str] = frozenset(
    {".py", ".ts", ".tsx", ".js", ".jsx", ".go", ".rs", ".java", ".kt", ".rb", ".php", ".cs", ".sql"}
)

_FENCE_LANGUAGES = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "jsx",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".sql": "sql",
}

_OUTPUT_RULES = """For each finding, output a JSON object on its own line:
{{"title":"Short title","severity":"critical|high|medium|low|info","file":"path/to/file","description":"{description_hint}"}}

Rules:
- ONLY report issues you are confident about. Do NOT guess or speculate.
- Every file path must be real. If you are not sure a file exists, do not reference it.
- Quote the exact identifiers involved in backticks so the finding can be checked against the code.
- {severity_hint}
- After all findings, output "## Summary" followed by a brief overview."""

ROLE_PROMPTS: dict[CriticRole, str] = {
    CriticRole.CODE_QUALITY: (
        "You are an adversarial code quality reviewer. Your job is to find REAL bugs, not style nits.\n\n"
        "Focus on:\n"
        "- Logic errors and edge cases that will cause runtime failures\n"
        "- Error handling gaps (swallowed exceptions, missing cleanup, unchecked return values)\n"
        "- Antipatterns (race conditions, resource leaks, shared mutable state)\n"
        "- Naming inconsistencies and API contract violations\n"
        "- Duplication that introduces maintenance risk\n\n"
        + _OUTPUT_RULES.format(
            description_hint="Detailed explanation with the exact code that is wrong and why",
            severity_hint="Severity: critical=data loss/crash, high=bugs, medium=antipatterns, low=minor improvements",
        )
    ),
    CriticRole.TEST_COVERAGE: (
        "You are an adversarial test coverage reviewer. Your job is to find untested paths and weak assertions.\n\n"
        "Focus on:\n"
        "- Functions and branches with no test coverage\n"
        "- Missing edge case tests (empty input, None/null, boundary values, error paths)\n"
        "- Tests that assert too little (only checking that nothing raised)\n"
        "- Integration gaps between modules tested in isolation\n"
        "- Missing negative tests for invalid input\n\n"
        + _OUTPUT_RULES.format(
            description_hint="Detailed explanation of what is untested and why it matters",
            severity_hint=(
                "Severity: critical=untested crash path, high=untested error handling, "
                "medium=missing edge case, low=could be more thorough"
            ),
        )
    ),
    CriticRole.SECURITY: (
        "You are an adversarial security reviewer. Your job is to find real vulnerabilities, not theoretical risks.\n\n"
        "Focus on:\n"
        "- Injection vectors (command injection, path traversal, template or SQL injection)\n"
        "- Credential and secret exposure (hardcoded keys, secrets in logs, tokens in URLs)\n"
        "- Input validation gaps on data reaching sensitive operations\n"
        "- Known vulnerable dependency usage patterns\n"
        "- Authentication and authorization bypasses\n\n"
        + _OUTPUT_RULES.format(
            description_hint="Detailed explanation with the exact attack vector and remediation",
            severity_hint=(
                "Severity: critical=RCE/data breach, high=injection/auth bypass, "
                "medium=info leak/missing validation, low=hardening"
            ),
        )
    ),
}


# ---------------------------------------------------------------------------
# Changeset
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangedFile:
    path: str
    content: str


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n... (truncated)"


def read_file_content(project_dir: Path, relative_path: str) -> str:
    """Read a project file as text, returning ``""`` when it cannot be read."""
    try:
        return (project_dir / relative_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


def _git_lines(project_dir: Path, args: list[str]) -> list[str]:
    completed = subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=True,
    )
    if len(completed.stdout) > GIT_MAX_OUTPUT:
        raise RuntimeError(f"git {' '.join(args)} produced more than {GIT_MAX_OUTPUT} bytes")
    return [line.strip() for line in completed.stdout.splitlines() if line.strip()]


def get_changed_files(
    project_dir: Path,
    base_branch: str = "main",
    *,
    extensions: frozenset[str] | None = DEFAULT_SOURCE_EXTENSIONS,
) -> list[str]:
    """List files changed against ``base_branch``; fall back to all tracked files.

    Args:
        project_dir: Repository root.
        base_branch: Ref to diff ``HEAD`` against.
        extensions: Keep only these suffixes; ``None`` keeps everything.

    Returns:
        Repository-relative paths. Empty when neither git command works.
    """
    try:
        paths = _git_lines(project_dir, ["diff", "--name-only", "--diff-filter=ACMR", base_branch, "HEAD"])
    except (OSError, subprocess.CalledProcessError, RuntimeError) as exc:
        logger.info("git diff against %s unavailable (%s); reviewing all tracked files", base_branch, exc)
        try:
            paths = _git_lines(project_dir, ["ls-files", "--cached"])
        except (OSError, subprocess.CalledProcessError, RuntimeError) as fallback_exc:
            logger.warning("Unable to list tracked files in %s: %s", project_dir, fallback_exc)
            return []
    if extensions is None:
        return paths
    return [path for path in paths if Path(path).suffix in extensions]


def build_user_message(files: list[ChangedFile]) -> str:
    parts = ["Review the following source files. For each issue found, output a JSON finding line.\n"]
    for changed in files:
        language = _FENCE_LANGUAGES.get(Path(changed.path).suffix, "")
        parts.append(f"### File: {changed.path}\n")
        parts.append(f"```{language}\n{truncate(changed.content, MAX_FILE_CHARS)}\n```\n")
    return "\n".join(parts)


def build_system_prompt(
    role: CriticRole,
    rules: list[ReviewRule] | None = None,
    threshold: int = DEFAULT_PROMOTION_THRESHOLD,
) -> str:
    prompt = ROLE_PROMPTS[role]
    if rules:
        section = build_rules_prompt_section(rules, role, threshold)
        if section:
            prompt = f"{prompt}\n{section}"
    return prompt


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_line(line: str) -> tuple[str, Severity, str, str | None] | None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    title = payload.get("title")
    severity = payload.get("severity")
    description = payload.get("description")
    if not isinstance(title, str) or not isinstance(description, str) or not isinstance(severity, str):
        return None
    try:
        parsed_severity = Severity(severity)
    except ValueError:
        return None
    file = payload.get("file")
    file = file.strip() if isinstance(file, str) else ""
    return title, parsed_severity, description, file or None


def parse_findings(report: str, role: CriticRole, *, max_findings: int = MAX_FINDINGS_PER_ROLE) -> list[Finding]:
    """Parse a critic report into at most ``max_findings`` findings, most severe first.

    Lines that are not single-line JSON finding objects are ignored. Ties keep
    report order. IDs are ``<role prefix>-<n>`` numbered in the returned order.
    """
    parsed = [entry for entry in (_parse_line(line) for line in report.splitlines()) if entry is not None]
    ranked = sorted(parsed, key=lambda entry: severity_rank(entry[1]))[:max_findings]
    return [
        Finding(
            id=f"{role.prefix}-{index}",
            source=role,
            severity=severity,
            title=title,
            description=description,
            file=file,
        )
        for index, (title, severity, description, file) in enumerate(ranked, start=1)
    ]


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


class CriticInvoker(Protocol):
    """Sends one critic prompt to a model and returns its text report."""

    def __call__(self, role: CriticRole, system_prompt: str, user_message: str) -> str:
        ...


class ChatCritic:
    """Critic invoker backed by a chat model."""

    def __init__(self, model_name: str, *, repo_root: Path | None = None) -> None:
        self.model_name = model_name
        self.repo_root = repo_root

    def __call__(self, role: CriticRole, system_prompt: str, user_message: str) -> str:
        return invoke_text(
            model_name=self.model_name,
            system_prompt=system_prompt,
            user_message=user_message,
            repo_root=self.repo_root,
        )


class FindingProducer:
    """Runs critic roles concurrently against a changeset and collects their findings.

    A failing role never aborts the others: it is reported as an unsuccessful
    ``CriticResult`` with no findings.
    """

    def __init__(
        self,
        invoker: CriticInvoker,
        *,
        max_findings_per_role: int = MAX_FINDINGS_PER_ROLE,
        max_workers: int = 3,
        rule_threshold: int = DEFAULT_PROMOTION_THRESHOLD,
    ) -> None:
        self.invoker = invoker
        self.max_findings_per_role = max_findings_per_role
        self.max_workers = max_workers
        self.rule_threshold = rule_threshold

    def _run_role(
        self,
        role: CriticRole,
        files: list[ChangedFile],
        rules: list[ReviewRule] | None,
    ) -> CriticResult:
        try:
            report = self.invoker(role, build_system_prompt(role, rules, self.rule_threshold), build_user_message(files))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Critic %s failed: %s", role.value, exc)
            return CriticResult(role=role, findings=[], report=f"Agent failed: {exc}", success=False)
        findings = parse_findings(report, role, max_findings=self.max_findings_per_role)
        logger.debug("critic %s reported %d findings", role.value, len(findings))
        return CriticResult(role=role, findings=findings, report=report, success=True)

    def run(
        self,
        project_dir: Path,
        changed_files: list[str],
        roles: list[CriticRole],
        *,
        rules: list[ReviewRule] | None = None,
    ) -> list[CriticResult]:
        """Review ``changed_files`` with every role. Results follow ``roles`` order."""
        if not changed_files:
            return [CriticResult(role=role, findings=[], report="No files to review.", success=True) for role in roles]
        if not roles:
            return []

        files = [ChangedFile(path=path, content=read_file_content(project_dir, path)) for path in changed_files]
        workers = max(1, min(self.max_workers, len(roles)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="critic") as pool:
            futures = [pool.submit(self._run_role, role, files, rules) for role in roles]
            return [future.result() for future in futures]
