from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .canonical import to_canonical_json
from .models import ContextSnapshot, IterationResult, SnapshotPhase

logger = logging.getLogger(__name__)

SUMMARY_FILE = "adversarial-summary.md"


# ---------------------------------------------------------------------------
# Write helpers
# ---------------------------------------------------------------------------


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  This prevents partial/corrupt reads
    if the process crashes mid-write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _write_once(path: Path, content: str) -> None:
    """Atomically create *path*; refuse to replace an existing file."""
    if path.exists():
        raise FileExistsError(f"Refusing to overwrite append-only artifact: {path}")
    atomic_write_text(path, content)


def _read_json_object(path: Path) -> dict[str, Any] | None:
    """Return the JSON object stored at *path*, or ``None`` when it is missing or corrupt."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Skipping unreadable artifact %s: %s", path, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Skipping artifact %s: expected a JSON object", path)
        return None
    return payload


def generate_session_id() -> str:
    return secrets.token_hex(6)


def iteration_artifact(result: IterationResult) -> dict[str, Any]:
    """Summarize one iteration for persistence (counts and IDs, no finding bodies)."""
    stats = result.verification.stats
    return {
        "iteration": result.iteration,
        "roles": [
            {"role": critic.role, "success": critic.success, "findingCount": len(critic.findings)}
            for critic in result.critic_results
        ],
        "verification": {"total": stats.total, "verified": stats.verified, "discarded": stats.discarded},
        "fixResults": (
            {"fixed": len(result.fix_result.fixed), "unfixed": len(result.fix_result.unfixed)}
            if result.fix_result is not None
            else None
        ),
        "testsPass": result.tests_pass,
        "unresolvedIds": result.unresolved_ids,
    }


# ---------------------------------------------------------------------------
# ReviewStateStore
# ---------------------------------------------------------------------------


class ReviewStateStore:
    """Per-project filesystem store for review artifacts.

    Layout under ``<project>/<state_dir>``::

        reviews/epic-<n>/iteration-<i>.json
        reviews/epic-<n>/adversarial-summary.md
        reviews/epic-<n>/history/<stamp>/...      (earlier runs of the same epic)
        snapshots/snapshot-<session>.json

    Iteration artifacts and snapshots are write-once.
    """

    def __init__(self, project_dir: Path, state_dir: str = ".adversarial-review") -> None:
        self.project_dir = project_dir
        self.root = project_dir / state_dir
        self.reviews_dir = self.root / "reviews"
        self.snapshots_dir = self.root / "snapshots"

    def epic_dir(self, epic_number: int) -> Path:
        return self.reviews_dir / f"epic-{epic_number}"

    def iteration_path(self, epic_number: int, iteration: int) -> Path:
        return self.epic_dir(epic_number) / f"iteration-{iteration}.json"

    def summary_path(self, epic_number: int) -> Path:
        return self.epic_dir(epic_number) / SUMMARY_FILE

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def begin_run(self, epic_number: int) -> Path | None:
        """Move artifacts of an earlier run of this epic into ``history/`` so none is overwritten.

        Returns:
            The archive directory, or ``None`` when there was nothing to archive.
        """
        epic_dir = self.epic_dir(epic_number)
        previous = sorted(epic_dir.glob("iteration-*.json"))
        summary = self.summary_path(epic_number)
        if summary.is_file():
            previous.append(summary)
        if not previous:
            return None

        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        archive = epic_dir / "history" / stamp
        archive.mkdir(parents=True, exist_ok=False)
        for path in previous:
            shutil.move(str(path), str(archive / path.name))
        logger.info("Archived %d artifacts from a previous run of epic %d to %s", len(previous), epic_number, archive)
        return archive

    def write_iteration(self, epic_number: int, result: IterationResult) -> Path:
        path = self.iteration_path(epic_number, result.iteration)
        _write_once(path, to_canonical_json(iteration_artifact(result)))
        return path

    def read_iterations(self, epic_number: int) -> list[dict[str, Any]]:
        """Return persisted iteration summaries in iteration order, skipping corrupt files."""
        artifacts: list[dict[str, Any]] = []
        for path in self.epic_dir(epic_number).glob("iteration-*.json"):
            payload = _read_json_object(path)
            if payload is None or not isinstance(payload.get("iteration"), int):
                continue
            artifacts.append(payload)
        return sorted(artifacts, key=lambda payload: payload["iteration"])

    def write_summary(self, epic_number: int, markdown: str) -> Path:
        path = self.summary_path(epic_number)
        atomic_write_text(path, markdown)
        return path

    # ------------------------------------------------------------------
    # Context snapshots
    # ------------------------------------------------------------------

    def write_snapshot(self, snapshot: ContextSnapshot) -> Path:
        """Persist a snapshot as ``snapshot-<session_id>.json``. Each session writes a new file."""
        path = self.snapshots_dir / f"snapshot-{snapshot.session_id}.json"
        _write_once(path, to_canonical_json(snapshot))
        return path

    def _load_snapshot(self, path: Path) -> ContextSnapshot | None:
        payload = _read_json_object(path)
        if payload is None:
            return None
        try:
            return ContextSnapshot.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Skipping invalid snapshot %s: %s", path, exc)
            return None

    def read_snapshot(self, session_id: str) -> ContextSnapshot | None:
        path = self.snapshots_dir / f"snapshot-{session_id}.json"
        if not path.is_file():
            return None
        return self._load_snapshot(path)

    def read_all_snapshots(self, phase: SnapshotPhase, epic_number: int) -> list[ContextSnapshot]:
        """All snapshots for a phase and epic, oldest first. Corrupt files are skipped."""
        if not self.snapshots_dir.is_dir():
            return []
        snapshots: list[ContextSnapshot] = []
        for path in self.snapshots_dir.glob("snapshot-*.json"):
            snapshot = self._load_snapshot(path)
            if snapshot is not None and snapshot.phase == phase and snapshot.epic_number == epic_number:
                snapshots.append(snapshot)
        return sorted(snapshots, key=lambda snapshot: snapshot.timestamp)

    def read_latest_snapshot(self, phase: SnapshotPhase, epic_number: int) -> ContextSnapshot | None:
        """The canonical current context: the newest snapshot for a phase and epic."""
        snapshots = self.read_all_snapshots(phase, epic_number)
        return snapshots[-1] if snapshots else None


def format_snapshot_for_prompt(snapshot: ContextSnapshot) -> str:
    """Render a snapshot as a compact XML-like block for system-prompt injection."""
    lines = [
        "<context-snapshot>",
        f"  <session>{snapshot.session_id}</session>",
        f"  <timestamp>{snapshot.timestamp}</timestamp>",
        f"  <phase>{snapshot.phase.value}</phase>",
        f"  <epic>{snapshot.epic_number}</epic>",
    ]
    if snapshot.story_id:
        lines.append(f"  <story>{snapshot.story_id}</story>")
    if snapshot.review_iteration is not None:
        lines.append(f"  <review-iteration>{snapshot.review_iteration}</review-iteration>")

    if snapshot.files_changed:
        lines.append("  <files-changed>")
        lines.extend(f"    <file>{path}</file>" for path in snapshot.files_changed)
        lines.append("  </files-changed>")

    if snapshot.test_result is not None:
        result = snapshot.test_result
        lines.append(
            f'  <test-result passed="{str(result.passed).lower()}" total="{result.total_tests}" '
            f'failed="{result.failed_tests}">'
        )
        lines.extend(f"    <failing>{name}</failing>" for name in result.failing_names)
        lines.append("  </test-result>")

    if snapshot.decisions:
        lines.append("  <decisions>")
        lines.extend(f'    <decision key="{decision.key}">{decision.value}</decision>' for decision in snapshot.decisions)
        lines.append("  </decisions>")

    if snapshot.blockers:
        lines.append("  <blockers>")
        for blocker in snapshot.blockers:
            status = "resolved" if blocker.resolved else "open"
            resolution = f" -> {blocker.resolution}" if blocker.resolution else ""
            lines.append(f'    <blocker status="{status}">{blocker.description}{resolution}</blocker>')
        lines.append("  </blockers>")

    if snapshot.findings_count is not None:
        lines.append(
            f'  <review-stats findings="{snapshot.findings_count}" fixed="{snapshot.fixed_count or 0}" '
            f'discarded="{snapshot.discarded_count or 0}">'
        )
        if snapshot.unresolved_ids:
            lines.append(f"    <unresolved>{', '.join(snapshot.unresolved_ids)}</unresolved>")
        if snapshot.fix_commits:
            lines.append(f"    <fix-commits>{', '.join(snapshot.fix_commits)}</fix-commits>")
        lines.append("  </review-stats>")

    if snapshot.notes:
        lines.append(f"  <notes>{snapshot.notes}</notes>")

    lines.append("</context-snapshot>")
    return "\n".join(lines)
