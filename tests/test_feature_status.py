from __future__ import annotations

from datetime import datetime, timezone
import json
from pathlib import Path

import pytest

from reviewloop.feature_status import FeatureStatusBoard, FeatureStatusRecord
from reviewloop.observability import configure_logging


def _clock() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_set_status_persists_and_overwrites(tmp_path: Path) -> None:
    board = FeatureStatusBoard(tmp_path, clock=_clock)

    board.set_status(feature_id="feat-b", status="in_review", reason="pr_created")
    board.set_status(feature_id="feat-a", status="merged", reason="pr_merged")
    board.set_status(feature_id="feat-b", status="verified", reason="pr_merged")

    assert board.get("feat-b") == FeatureStatusRecord(
        feature_id="feat-b",
        status="verified",
        reason="pr_merged",
        updated_at="2026-03-01T12:00:00.000000Z",
    )
    assert [record.feature_id for record in board.all()] == ["feat-a", "feat-b"]
    on_disk = json.loads((tmp_path / ".reviewloop" / "feature-status.json").read_text())
    assert on_disk["feat-b"]["status"] == "verified"


def test_get_missing_and_empty_board(tmp_path: Path) -> None:
    board = FeatureStatusBoard(tmp_path)

    assert board.get("feat-1") is None
    assert board.all() == ()


def test_set_status_validates_inputs(tmp_path: Path) -> None:
    board = FeatureStatusBoard(tmp_path)

    with pytest.raises(ValueError, match="Invalid feature id"):
        board.set_status(feature_id="../escape", status="verified", reason="x")
    with pytest.raises(ValueError, match="Unknown feature status"):
        board.set_status(feature_id="feat-1", status="done", reason="x")  # type: ignore[arg-type]
    assert not board.path.exists()


def test_corrupt_board_raises(tmp_path: Path) -> None:
    board = FeatureStatusBoard(tmp_path)
    board.path.parent.mkdir(parents=True)
    board.path.write_text("[]", encoding="utf-8")

    with pytest.raises(RuntimeError, match="JSON object"):
        board.all()

    board.path.write_text('{"feat-1": {"status": "lost"}}', encoding="utf-8")
    with pytest.raises(RuntimeError, match="Unknown feature status"):
        board.get("feat-1")


def test_set_status_logs_event(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    FeatureStatusBoard(tmp_path).set_status(
        feature_id="feat-1", status="in_review", reason="pr_created"
    )

    stderr = capsys.readouterr().err
    assert "event=feature_status_updated" in stderr
    assert "status=in_review" in stderr
