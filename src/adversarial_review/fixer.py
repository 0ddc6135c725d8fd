"""Fixer contract and the deep-agent reference implementation.

Contract every Fixer must honor: a finding is placed in ``fixed`` only if a
full test-suite run passed after its repair and the final run of the batch
passed too. The loop's convergence and stuck detection depend on it.
"""

from __future__ import annotations

import logging
import subprocess
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from deepagents import create_deep_agent

from .backends import build_fix_backend
from .critics import read_file_content
from .llm import extract_text, get_chat_model
from .models import FixBatchResult, FixResult, Finding, TestSuiteResult, severity_rank

logger = logging.getLogger(__name__)

TestSuiteRunner = Callable[[Path], TestSuiteResult]

DEFAULT_MAX_ATTEMPTS = 3
MAX_CODE_CONTEXT_CHARS = 20_000
OUTPUT_TAIL_CHARS = 4_000


class Fixer(Protocol):
    def fix(
        self,
        findings: list[Finding],
        *,
        project_dir: Path,
        test_suite_runner: TestSuiteRunner,
        model: str,
    ) -> FixBatchResult:
        ...


# ---------------------------------------------------------------------------
# Test runner
# ---------------------------------------------------------------------------


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


def shell_test_runner(command: str, timeout: int = 900) -> TestSuiteRunner:
    """Build a runner that executes ``command`` through the shell in the project directory.

    A non-zero exit status or a timeout is a failing result. The output keeps
    the tail of combined stdout and stderr.
    """
    if not command.strip():
        raise ValueError("test command must be non-empty")

    def run(project_dir: Path) -> TestSuiteResult:
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=project_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            partial = "".join(
                part.decode("utf-8", "replace") if isinstance(part, bytes) else part
                for part in (exc.stdout, exc.stderr)
                if part
            )
            logger.warning("Test command timed out after %ss: %s", timeout, command)
            return TestSuiteResult(passed=False, output=_tail(f"{partial}\nTimed out after {timeout}s"))
        output = _tail((completed.stdout or "") + (completed.stderr or ""))
        if completed.returncode != 0:
            logger.info("Test command exited with %d", completed.returncode)
        return TestSuiteResult(passed=completed.returncode == 0, output=output)

    return run


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["git", *args], cwd=project_dir, capture_output=True, text=True, check=False)


def commit_fix(project_dir: Path, finding: Finding, state_dir: str = ".adversarial-review") -> str | None:
    """Stage every change outside ``state_dir`` and commit it as the fix for ``finding``.

    Returns:
        The new commit SHA, or ``None`` when nothing was staged or git failed.
    """
    try:
        if _git(project_dir, "add", "-A", "--", ".", f":(exclude){state_dir}").returncode != 0:
            return None
        if _git(project_dir, "diff", "--cached", "--quiet").returncode == 0:
            return None
        commit = _git(project_dir, "commit", "-m", f"fix(review): {finding.id} - {finding.title}")
        if commit.returncode != 0:
            logger.warning("git commit failed for %s: %s", finding.id, commit.stderr.strip())
            return None
        sha = _git(project_dir, "rev-parse", "HEAD").stdout.strip()
    except OSError as exc:
        logger.warning("git unavailable while committing %s: %s", finding.id, exc)
        return None
    return sha or None


# ---------------------------------------------------------------------------
# Deep agent fixer
# ---------------------------------------------------------------------------

FIX_SYSTEM_PROMPT = (
    "You are a careful software engineer repairing one verified code review finding. "
    "Use the filesystem tools to read the affected code and apply the smallest change that resolves the issue. "
    "Do not refactor unrelated code, do not touch review artifacts, and do not commit. "
    "If the fix requires test changes, update the tests as well. "
    "Finish with a one-paragraph description of the change."
)


def build_fix_prompt(finding: Finding, file_content: str) -> str:
    suffix = Path(finding.file).suffix.lstrip(".") if finding.file else ""
    return (
        "Fix the following issue in the codebase.\n\n"
        f"## Finding: [{finding.severity.value.upper()}] {finding.title}\n\n"
        f"**File:** {finding.file or 'unknown'}\n"
        f"**Source:** {finding.source.value} review\n"
        f"**Description:** {finding.description}\n\n"
        "## Current Code\n\n"
        f"```{suffix}\n{file_content[:MAX_CODE_CONTEXT_CHARS]}\n```\n\n"
        "## Instructions\n\n"
        "1. Fix ONLY this specific issue.\n"
        "2. Keep changes minimal and focused.\n"
        "3. File paths are relative to the project root, which is mounted at '/'.\n"
        "4. Do NOT commit; the pipeline handles commits."
    )


class DeepAgentFixer:
    """Repairs findings one at a time with a deep agent, most severe first.

    Each finding gets up to ``max_attempts`` agent runs. After a run the test
    suite is executed; on pass the change is committed and the finding counts
    as fixed. A final test run closes the batch. If that run fails, no finding
    of the batch is reported as fixed.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        state_dir: str = ".adversarial-review",
        repo_root: Path | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.state_dir = state_dir
        self.repo_root = repo_root

    def _attempt_fix(self, finding: Finding, project_dir: Path, model: str) -> tuple[bool, str]:
        """Run the agent once. Returns ``(success, output_or_error)``."""
        file_content = read_file_content(project_dir, finding.file) if finding.file else ""
        try:
            agent = create_deep_agent(
                model=get_chat_model(model_name=model, repo_root=self.repo_root),
                tools=[],
                backend=build_fix_backend(project_dir, self.state_dir),
                system_prompt=FIX_SYSTEM_PROMPT,
                name="review-fix-agent",
            )
            response = agent.invoke(
                {"messages": [{"role": "user", "content": build_fix_prompt(finding, file_content)}]},
                config={"configurable": {"thread_id": f"fix-{finding.id}-{uuid.uuid4().hex[:8]}"}},
            )
        except Exception as exc:  # noqa: BLE001
            return False, f"{type(exc).__name__}: {exc}"
        text = extract_text(response).strip()
        if not text:
            return False, "Fix agent returned no output"
        return True, text

    def fix(
        self,
        findings: list[Finding],
        *,
        project_dir: Path,
        test_suite_runner: TestSuiteRunner,
        model: str,
    ) -> FixBatchResult:
        results: list[FixResult] = []

        for finding in sorted(findings, key=lambda item: severity_rank(item.severity)):
            fixed = False
            last_error = ""
            commit_sha: str | None = None
            attempts = 0

            for attempt in range(1, self.max_attempts + 1):
                attempts = attempt
                success, output = self._attempt_fix(finding, project_dir, model)
                if not success:
                    last_error = output
                    logger.warning("Fix attempt %d for %s failed: %s", attempt, finding.id, output)
                    continue
                if test_suite_runner(project_dir).passed:
                    commit_sha = commit_fix(project_dir, finding, self.state_dir)
                    fixed = True
                    break
                last_error = f"Tests failed after fix attempt {attempt}"
                logger.warning("%s: %s", finding.id, last_error)

            results.append(
                FixResult(
                    finding=finding,
                    fixed=fixed,
                    attempts=attempts,
                    commit_sha=commit_sha,
                    error=None if fixed else last_error,
                )
            )

        final_test_result = test_suite_runner(project_dir)
        if not final_test_result.passed:
            results = [
                FixResult(
                    finding=result.finding,
                    fixed=False,
                    attempts=result.attempts,
                    commit_sha=result.commit_sha,
                    error=result.error or "Final test run failed",
                )
                for result in results
            ]

        return FixBatchResult(
            results=results,
            fixed=[result.finding for result in results if result.fixed],
            unfixed=[result.finding for result in results if not result.fixed],
            final_test_result=final_test_result,
        )
