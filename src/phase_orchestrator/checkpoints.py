from __future__ import annotations

import logging
import re
import time
import uuid

from .canonical import to_canonical_json
from .checkpoint_store import CheckpointStore
from .models import (
    RESUMABLE_STATUSES,
    CheckpointRecord,
    CheckpointSummary,
    ExecutionState,
    OrchestrationStatus,
    PhaseStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


def new_checkpoint_id(project_id: str) -> str:
    safe_project = re.sub(r"[^A-Za-z0-9_.-]+", "-", project_id.strip()).strip("-") or "project"
    return f"checkpoint-{safe_project}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def serialize_execution_state(state: ExecutionState) -> str:
    """Canonical JSON text of ``state``; datetimes are ISO-8601 strings."""
    return to_canonical_json(state)


def summarize_checkpoint(record: CheckpointRecord) -> CheckpointSummary:
    state = record.load_execution_state()
    completed = sum(1 for phase in state.phases if phase.status == PhaseStatus.COMPLETED)
    current = state.current_phase
    return CheckpointSummary(
        id=record.id,
        project_id=record.project_id,
        project_path=record.project_path,
        project_name=record.project_name,
        current_phase_index=record.current_phase_index,
        status=record.status,
        completed_phases=completed,
        total_phases=len(state.phases),
        last_phase=current.phase if current is not None else None,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class CheckpointService:
    """Checkpoint lifecycle on top of a ``CheckpointStore``.

    Every save is a full-state overwrite. ``save_checkpoint`` always creates a
    new record; history is kept until deleted explicitly.
    """

    def __init__(self, store: CheckpointStore) -> None:
        self.store = store

    def _build_record(self, checkpoint_id: str, state: ExecutionState) -> CheckpointRecord:
        now = utc_now()
        return CheckpointRecord(
            id=checkpoint_id,
            project_id=state.project_id,
            project_path=state.project_path,
            project_name=state.project_name,
            serialized_execution_state=serialize_execution_state(state),
            current_phase_index=state.current_phase_index,
            status=state.status,
            created_at=now,
            updated_at=now,
        )

    def save_checkpoint(self, state: ExecutionState) -> CheckpointRecord:
        record = self._build_record(new_checkpoint_id(state.project_id), state)
        self.store.save(record)
        logger.debug(
            "Saved checkpoint %s (status=%s, phase_index=%d)",
            record.id,
            record.status.value,
            record.current_phase_index,
        )
        return record

    def update_checkpoint(self, checkpoint_id: str, state: ExecutionState) -> CheckpointRecord:
        """Overwrite an existing checkpoint in place; the store keeps its original ``created_at``."""
        record = self._build_record(checkpoint_id, state)
        self.store.save(record)
        return self.store.get(checkpoint_id) or record

    def get_checkpoint(self, checkpoint_id: str) -> CheckpointRecord | None:
        return self.store.get(checkpoint_id)

    def get_checkpoint_by_project_id(self, project_id: str) -> CheckpointRecord | None:
        return self.store.get_latest_by_project_id(project_id)

    def get_checkpoint_by_project_path(self, project_path: str) -> CheckpointRecord | None:
        return self.store.get_latest_by_project_path(project_path)

    def has_resumable_checkpoint(self, project_path: str) -> bool:
        record = self.get_checkpoint_by_project_path(project_path)
        if record is None:
            return False
        return record.load_execution_state().status in RESUMABLE_STATUSES

    def list_checkpoints(self, status: OrchestrationStatus | None = None) -> list[CheckpointSummary]:
        return [summarize_checkpoint(record) for record in self.store.list(status)]

    def list_resumable_checkpoints(self) -> list[CheckpointSummary]:
        return [summarize_checkpoint(record) for record in self.store.list() if record.is_resumable]

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self.store.delete(checkpoint_id)

    def delete_checkpoints_by_project_id(self, project_id: str) -> int:
        return self.store.delete_all_for_project(project_id=project_id)

    def delete_checkpoints_by_project_path(self, project_path: str) -> int:
        return self.store.delete_all_for_project(project_path=project_path)

    def mark_checkpoint_completed(self, checkpoint_id: str) -> bool:
        record = self.get_checkpoint(checkpoint_id)
        if record is None:
            return False
        state = record.load_execution_state()
        state.status = OrchestrationStatus.COMPLETED
        state.completed_at = utc_now()
        state.awaiting_approval_phase_index = None
        self.update_checkpoint(checkpoint_id, state)
        return True
