from __future__ import annotations

import sys
from pathlib import Path

import pytest
from conftest import ScriptedFixer

import adversarial_review.__main__ as cli


@pytest.fixture
def offline(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("REVIEW_MEMORY_DIR", str(tmp_path / "memory"))
    monkeypatch.setattr(cli, "ensure_openai_api_key", lambda repo_root=None: "sk-test")
    monkeypatch.setattr(cli, "ChatCritic", lambda *args, **kwargs: lambda role, system, user: "## Summary\nclean")
    monkeypatch.setattr(cli, "DeepAgentFixer", lambda **kwargs: ScriptedFixer())


def test_missing_project_dir_fails(tmp_path: Path) -> None:
    argv = ["--project-dir", str(tmp_path / "absent"), "--epic", "1", "--test-command", "true"]
    assert cli.main(argv) == 1


def test_invalid_epic_fails(project: Path) -> None:
    assert cli.main(["--project-dir", str(project), "--epic", "0", "--test-command", "true"]) == 1


def test_clean_project_converges(project: Path, offline: None, capsys: pytest.CaptureFixture[str]) -> None:
    argv = [
        "--project-dir",
        str(project),
        "--epic",
        "4",
        "--test-command",
        f'"{sys.executable}" -c "pass"',
        "--project-name",
        "demo",
    ]
    assert cli.main(argv) == 0

    out = capsys.readouterr().out
    assert "exit_reason=converged" in out
    summary = project.resolve() / ".adversarial-review" / "reviews" / "epic-4" / "adversarial-summary.md"
    assert f"summary={summary}" in out
    assert summary.read_text(encoding="utf-8").startswith("# Epic 4 Adversarial Review Summary")
