from __future__ import annotations

import sys
from pathlib import Path

import pytest
from conftest import RecordingRunner, git, make_finding, requires_git

from adversarial_review import fixer as fixer_module
from adversarial_review.fixer import DeepAgentFixer, build_fix_prompt, commit_fix, shell_test_runner
from adversarial_review.models import Severity


@pytest.fixture
def committed(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    commits: list[str] = []

    def fake_commit(project_dir: Path, finding, state_dir: str = ".adversarial-review") -> str:  # noqa: ANN001
        commits.append(finding.id)
        return f"sha-{finding.id}"

    monkeypatch.setattr(fixer_module, "commit_fix", fake_commit)
    return commits


def _scripted_attempts(monkeypatch: pytest.MonkeyPatch, outcomes: dict[str, list[tuple[bool, str]]]) -> list[str]:
    calls: list[str] = []

    def attempt(self, finding, project_dir, model):  # noqa: ANN001
        calls.append(finding.id)
        queue = outcomes.get(finding.id, [])
        return queue.pop(0) if queue else (True, "patched")

    monkeypatch.setattr(DeepAgentFixer, "_attempt_fix", attempt)
    return calls


def test_shell_runner_reports_pass_and_failure(tmp_path: Path) -> None:
    passing = shell_test_runner(f'"{sys.executable}" -c "print(\'all good\')"')(tmp_path)
    assert passing.passed is True
    assert "all good" in passing.output

    failing = shell_test_runner(f'"{sys.executable}" -c "import sys; sys.exit(\'boom\')"')(tmp_path)
    assert failing.passed is False
    assert "boom" in failing.output


def test_shell_runner_runs_in_project_dir(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("here", encoding="utf-8")
    result = shell_test_runner(f'"{sys.executable}" -c "print(open(\'marker.txt\').read())"')(tmp_path)
    assert result.passed is True
    assert "here" in result.output


def test_shell_runner_times_out(tmp_path: Path) -> None:
    result = shell_test_runner(f'"{sys.executable}" -c "import time; time.sleep(3)"', timeout=1)(tmp_path)
    assert result.passed is False
    assert result.output.endswith("Timed out after 1s")


def test_shell_runner_rejects_empty_command() -> None:
    with pytest.raises(ValueError):
        shell_test_runner("   ")


def test_fix_prompt_contains_finding_and_code() -> None:
    finding = make_finding(severity=Severity.CRITICAL, title="SQL injection", file="db/query.py")
    prompt = build_fix_prompt(finding, "cursor.execute(sql)")
    assert "## Finding: [CRITICAL] SQL injection" in prompt
    assert "**File:** db/query.py" in prompt
    assert "**Source:** code-quality review" in prompt
    assert "```py\ncursor.execute(sql)\n```" in prompt


def test_fixer_requires_an_attempt() -> None:
    with pytest.raises(ValueError):
        DeepAgentFixer(max_attempts=0)


def test_fix_retries_until_tests_pass(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, committed: list[str]) -> None:
    calls = _scripted_attempts(monkeypatch, {"cod-1": [(False, "RateLimitError: slow down"), (True, "patched")]})
    runner = RecordingRunner(False, True, True)
    result = DeepAgentFixer(max_attempts=3).fix(
        [make_finding("cod-1")], project_dir=tmp_path, test_suite_runner=runner, model="stub"
    )

    # Attempt 1 errors, attempt 2 fails tests, attempt 3 passes; then the final run.
    assert calls == ["cod-1", "cod-1", "cod-1"]
    assert runner.calls == 3
    [fix] = result.results
    assert fix.fixed is True
    assert fix.attempts == 3
    assert fix.commit_sha == "sha-cod-1"
    assert fix.error is None
    assert committed == ["cod-1"]
    assert result.final_test_result.passed is True


def test_fix_gives_up_after_max_attempts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, committed: list[str]) -> None:
    _scripted_attempts(monkeypatch, {"cod-1": [(True, "patched")] * 2})
    runner = RecordingRunner(False, False, True)
    result = DeepAgentFixer(max_attempts=2).fix(
        [make_finding("cod-1")], project_dir=tmp_path, test_suite_runner=runner, model="stub"
    )

    [fix] = result.results
    assert fix.fixed is False
    assert fix.attempts == 2
    assert fix.error == "Tests failed after fix attempt 2"
    assert [finding.id for finding in result.unfixed] == ["cod-1"]
    assert committed == []


def test_agent_errors_are_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, committed: list[str]) -> None:
    _scripted_attempts(monkeypatch, {"cod-1": [(False, "TimeoutError: agent stalled")]})
    result = DeepAgentFixer(max_attempts=1).fix(
        [make_finding("cod-1")], project_dir=tmp_path, test_suite_runner=RecordingRunner(), model="stub"
    )
    assert result.results[0].error == "TimeoutError: agent stalled"
    assert result.fixed == []


def test_failed_final_run_demotes_every_fix(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, committed: list[str]) -> None:
    _scripted_attempts(monkeypatch, {})
    runner = RecordingRunner(True, True, False)
    findings = [make_finding("cod-1"), make_finding("cod-2")]
    result = DeepAgentFixer().fix(findings, project_dir=tmp_path, test_suite_runner=runner, model="stub")

    assert result.fixed == []
    assert [finding.id for finding in result.unfixed] == ["cod-1", "cod-2"]
    assert all(fix.error == "Final test run failed" for fix in result.results)
    assert [fix.commit_sha for fix in result.results] == ["sha-cod-1", "sha-cod-2"]
    assert result.final_test_result.passed is False


def test_fixes_run_most_severe_first(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, committed: list[str]) -> None:
    calls = _scripted_attempts(monkeypatch, {})
    findings = [
        make_finding("cod-1", severity=Severity.LOW),
        make_finding("sec-1", severity=Severity.CRITICAL),
        make_finding("tst-1", severity=Severity.MEDIUM),
    ]
    DeepAgentFixer().fix(findings, project_dir=tmp_path, test_suite_runner=RecordingRunner(), model="stub")
    assert calls == ["sec-1", "tst-1", "cod-1"]


@requires_git
def test_commit_fix_commits_staged_changes(git_repo: Path) -> None:
    finding = make_finding("cod-7", title="Guard division")
    assert commit_fix(git_repo, finding) is None

    (git_repo / "base.py").write_text("VALUE = 2\n", encoding="utf-8")
    sha = commit_fix(git_repo, finding)
    assert sha is not None
    assert git(git_repo, "rev-parse", "HEAD") == sha
    assert git(git_repo, "log", "-1", "--format=%s") == "fix(review): cod-7 - Guard division"


@requires_git
def test_commit_fix_leaves_review_state_out(git_repo: Path) -> None:
    state = git_repo / ".adversarial-review" / "reviews" / "epic-1"
    state.mkdir(parents=True)
    (state / "iteration-1.json").write_text("{}", encoding="utf-8")
    (git_repo / "base.py").write_text("VALUE = 3\n", encoding="utf-8")

    sha = commit_fix(git_repo, make_finding("cod-8"))
    assert sha is not None
    assert git(git_repo, "show", "--name-only", "--format=", "HEAD") == "base.py"
    assert "?? .adversarial-review/" in git(git_repo, "status", "--porcelain")

    # Review state alone is not a fix.
    (state / "iteration-2.json").write_text("{}", encoding="utf-8")
    assert commit_fix(git_repo, make_finding("cod-9")) is None
