from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import cast, get_args

from reviewloop.agent_adapter import FeatureStatus, FeatureStatusUpdater
from reviewloop.observability import log_event
from reviewloop.session_store import format_timestamp, validate_feature_id, write_json_atomic


LOGGER = logging.getLogger("reviewloop.feature_status")


@dataclass(frozen=True)
class FeatureStatusRecord:
    feature_id: str
    status: FeatureStatus
    reason: str
    updated_at: str


class FeatureStatusBoard(FeatureStatusUpdater):
    """Externally visible feature status, kept in ``.reviewloop/feature-status.json``."""

    def __init__(
        self,
        project_dir: Path,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.path = project_dir / ".reviewloop" / "feature-status.json"
        self._clock = clock
        self._lock = threading.Lock()

    def set_status(self, *, feature_id: str, status: FeatureStatus, reason: str) -> None:
        validate_feature_id(feature_id)
        if status not in get_args(FeatureStatus):
            raise ValueError(f"Unknown feature status: {status}")
        with self._lock:
            payload = self._load()
            payload[feature_id] = {
                "status": status,
                "reason": reason,
                "updated_at": format_timestamp(self._clock()),
            }
            write_json_atomic(self.path, payload)
        log_event(
            LOGGER,
            "feature_status_updated",
            feature_id=feature_id,
            status=status,
            reason=reason,
        )

    def get(self, feature_id: str) -> FeatureStatusRecord | None:
        with self._lock:
            entry = self._load().get(feature_id)
        if not isinstance(entry, dict):
            return None
        return _record_from_entry(feature_id, cast(dict[str, object], entry))

    def all(self) -> tuple[FeatureStatusRecord, ...]:
        with self._lock:
            payload = self._load()
        records = [
            _record_from_entry(feature_id, cast(dict[str, object], entry))
            for feature_id, entry in sorted(payload.items())
            if isinstance(entry, dict)
        ]
        return tuple(records)

    def _load(self) -> dict[str, object]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise RuntimeError(f"Feature status file must hold a JSON object: {self.path}")
        return cast(dict[str, object], data)


def _record_from_entry(feature_id: str, entry: dict[str, object]) -> FeatureStatusRecord:
    status = entry.get("status")
    if status not in get_args(FeatureStatus):
        raise RuntimeError(f"Unknown feature status for {feature_id}: {status!r}")
    return FeatureStatusRecord(
        feature_id=feature_id,
        status=cast(FeatureStatus, status),
        reason=str(entry.get("reason", "")),
        updated_at=str(entry.get("updated_at", "")),
    )
