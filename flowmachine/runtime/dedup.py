"""
dedup.py - Processed-item tracking per flow step.

Records (flow_step_id, source_type, item_identifier) tuples so fetch handlers
can skip items already emitted for a flow step. Keys are scoped to the flow
step, not the job, so separate runs of the same flow still suppress items.

Records are never updated. They are removed only by explicit bulk clears
(pipeline delete, flow delete, step removal, operator reset).
"""

from __future__ import annotations

import logging
from typing import Optional

from flowmachine.runtime.db import Store
from flowmachine.runtime.types import FlowStepId

logger = logging.getLogger(__name__)


class DedupTracker:
    """Answers "was this item already processed for this flow step?"."""

    def __init__(self, store: Store):
        self._store = store

    def is_processed(self, flow_step_id: FlowStepId, source_type: str, item_id: str) -> bool:
        return self._store.processed_item_exists(flow_step_id, source_type, str(item_id))

    def mark_processed(
        self,
        flow_step_id: FlowStepId,
        source_type: str,
        item_id: str,
        job_id: Optional[str],
        pipeline_id: Optional[str] = None,
    ) -> bool:
        """Record an item as processed.

        Atomic against the uniqueness constraint: when several callers mark the
        same tuple concurrently, exactly one inserts and the rest observe the
        existing record.

        Returns:
            True if this call created the record, False if it already existed.
        """
        inserted = self._store.insert_processed_item(
            flow_step_id, source_type, str(item_id), job_id, pipeline_id=pipeline_id
        )
        if not inserted:
            logger.debug(
                "Item already marked processed: %s %s:%s", flow_step_id, source_type, item_id
            )
        return inserted

    def clear(
        self,
        job_id: Optional[str] = None,
        flow_step_id: Optional[FlowStepId] = None,
        source_type: Optional[str] = None,
        flow_id: Optional[str] = None,
        pipeline_id: Optional[str] = None,
        pipeline_step_id: Optional[str] = None,
    ) -> int:
        """Bulk-delete records. Returns the number removed."""
        removed = self._store.delete_processed_items(
            job_id=job_id,
            flow_step_id=flow_step_id,
            source_type=source_type,
            flow_id=flow_id,
            pipeline_id=pipeline_id,
            pipeline_step_id=pipeline_step_id,
        )
        logger.info(
            "Cleared %d processed items (job=%s flow_step=%s flow=%s pipeline=%s)",
            removed,
            job_id,
            flow_step_id,
            flow_id,
            pipeline_id,
        )
        return removed
