"""Audit ledger entry model (append-only, hash-chained).

One entry per finished stage plus one terminal entry per run.  Entries
carry only non-secret data: stage names, timestamps, references, error
class names.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single row in the run ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    stage: str  # PipelineStage value
    started_at: datetime
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    success: bool
    error_type: str = ""
    detail: str = ""
    reference: str = ""  # floating ref of the artifact, when known
    build_id: str = ""
    service_name: str = ""
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
