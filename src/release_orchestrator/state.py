"""Run state persistence with atomic writes."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.release_shared.constants import STATE_DIR, STATE_FILE
from src.release_shared.utils import atomic_write_json, load_json


@dataclass
class RunState:
    """Represents the full state of one pipeline run.

    Persisted to ``RUN_STATE.json`` using atomic writes after every
    transition.
    """

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trigger_kind: str = ""
    revision: str = ""
    branch: str = ""
    change_request: int | None = None
    current_state: str = "init"
    previous_state: str = ""
    completed_stages: list[str] = field(default_factory=list)
    registry: str = ""
    image_uri: str = ""
    image_id: str = ""
    fs_report_path: str = ""
    image_report_path: str = ""
    fs_scan_counts: dict[str, int] = field(default_factory=dict)
    image_scan_counts: dict[str, int] = field(default_factory=dict)
    fs_scan_error: str = ""
    image_scan_error: str = ""
    image_pushed: bool = False
    comment_url: str = ""
    task_definition_arn: str = ""
    service_desired_count: int = 0
    service_running_count: int = 0
    stability_polls: int = 0
    warnings: list[str] = field(default_factory=list)
    failed_stage: str = ""
    error: str = ""
    started_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    updated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    interrupted: bool = False
    interrupt_reason: str = ""
    schema_version: int = 1
    # where save() writes; not persisted
    state_dir: str = field(default=STATE_DIR, repr=False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def mark_completed(self, stage: str) -> None:
        if stage not in self.completed_stages:
            self.completed_stages.append(stage)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialise the state to a plain dictionary."""
        data = asdict(self)
        data.pop("state_dir", None)
        return data

    def save(self, directory: Path | str | None = None) -> Path:
        """Persist state to disk using atomic writes.

        Args:
            directory: Target directory. Defaults to ``state_dir``.

        Returns:
            The path the state was written to.
        """
        directory = Path(directory) if directory else Path(self.state_dir)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / STATE_FILE
        self.updated_at = datetime.now(timezone.utc).isoformat()
        atomic_write_json(target, self.to_dict())
        return target

    @classmethod
    def load(cls, directory: Path | str | None = None) -> RunState | None:
        """Load state from a JSON file.

        Returns:
            Reconstructed ``RunState``, or ``None`` if the file is missing
            or invalid.
        """
        directory = Path(directory) if directory else Path(STATE_DIR)
        data = load_json(directory / STATE_FILE)
        if data is None:
            return None
        # Filter to only known fields
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        filtered["state_dir"] = str(directory)
        return cls(**filtered)
