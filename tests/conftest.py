from __future__ import annotations

import json
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from adversarial_review.models import (
    CriticRole,
    Finding,
    FixBatchResult,
    FixResult,
    Severity,
    TestSuiteResult,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def make_finding(
    id: str = "cod-1",
    *,
    source: CriticRole = CriticRole.CODE_QUALITY,
    severity: Severity = Severity.HIGH,
    title: str = "Unchecked division",
    description: str = "`compute` divides without checking for zero",
    file: str | None = "app.py",
) -> Finding:
    return Finding(id=id, source=source, severity=severity, title=title, description=description, file=file)


def finding_line(title: str, severity: str, description: str, file: str | None = "app.py") -> str:
    payload: dict[str, str] = {"title": title, "severity": severity, "description": description}
    if file is not None:
        payload["file"] = file
    return json.dumps(payload)


class RecordingRunner:
    """Test-suite runner returning scripted results and counting calls."""

    def __init__(self, *results: bool) -> None:
        self._results = list(results) or [True]
        self.calls = 0

    def __call__(self, project_dir: Path) -> TestSuiteResult:
        passed = self._results[min(self.calls, len(self._results) - 1)]
        self.calls += 1
        return TestSuiteResult(passed=passed, output="ok" if passed else "1 failed")


class ScriptedFixer:
    """Fixer double: ``decide`` says which findings get fixed; tests pass unless told otherwise."""

    def __init__(self, decide: Callable[[Finding], bool] = lambda _: True, *, final_pass: bool = True) -> None:
        self.decide = decide
        self.final_pass = final_pass
        self.batches: list[list[Finding]] = []

    def fix(self, findings, *, project_dir, test_suite_runner, model) -> FixBatchResult:  # noqa: ANN001
        self.batches.append(list(findings))
        results = [
            FixResult(
                finding=finding,
                fixed=self.decide(finding) and self.final_pass,
                attempts=1,
                commit_sha="0123456789abcdef" if self.decide(finding) and self.final_pass else None,
                error=None if self.decide(finding) and self.final_pass else "Tests failed after fix attempt 1",
            )
            for finding in findings
        ]
        return FixBatchResult(
            results=results,
            fixed=[result.finding for result in results if result.fixed],
            unfixed=[result.finding for result in results if not result.fixed],
            final_test_result=TestSuiteResult(passed=self.final_pass),
        )


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return completed.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "review@example.com")
    git(repo, "config", "user.name", "Review Bot")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# demo\n", encoding="utf-8")
    (repo / "base.py").write_text("VALUE = 1\n", encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "app.py").write_text(
        "def compute(total, count):\n    return total / count\n",
        encoding="utf-8",
    )
    return root
