"""
packets.py - Data packet channel between steps.

Step output travels to the next step inside the queue message. Small payloads
stay inline; payloads above ``inline_threshold_bytes`` are written to the file
area and replaced by a FileReference.

The file area layout is:

    <files_dir>/
      jobs/
        <job_id>/
          <flow_id>/
            <pipeline_step_id>/
              <sha256>.json    # packets, newest first

Files are content-addressed, so a redelivered step that writes identical
output lands on the same path. Writers are keyed by job and flow step and
never collide. The whole job directory is removed when the job stops.

Usage:
    from flowmachine.runtime.packets import DataPacketChannel

    channel = DataPacketChannel(files_dir, inline_threshold_bytes=8192)
    payload = channel.store(job_id, flow_step_id, packets)   # list or FileReference
    packets = channel.retrieve(payload)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, List, Union

from flowmachine.runtime.errors import DereferenceError
from flowmachine.runtime.types import (
    DataPacket,
    FileReference,
    FlowStepId,
    PacketPayload,
    _datetime_to_iso,
    _utcnow,
    packets_from_dicts,
    packets_to_dicts,
)

logger = logging.getLogger(__name__)

JOBS_SUBDIR = "jobs"


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON data to a file atomically (tempfile + os.replace)."""
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.name + ".", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class DataPacketChannel:
    """Moves packets between steps, inline or by file reference.

    Args:
        files_dir: Root of the file area.
        inline_threshold_bytes: Serialized size above which packets go to disk.
    """

    def __init__(self, files_dir: Union[str, Path], inline_threshold_bytes: int = 8192):
        self.files_dir = Path(files_dir)
        self.inline_threshold_bytes = inline_threshold_bytes

    def job_dir(self, job_id: str) -> Path:
        return self.files_dir / JOBS_SUBDIR / job_id

    def store(self, job_id: str, flow_step_id: FlowStepId, packets: List[DataPacket]) -> PacketPayload:
        """Prepare packets for hand-off to the next step.

        Returns:
            The packet list itself when small enough, otherwise a FileReference.
        """
        data = packets_to_dicts(packets)
        encoded = json.dumps(data, ensure_ascii=False, sort_keys=True)
        size = len(encoded.encode("utf-8"))
        if size <= self.inline_threshold_bytes:
            return list(packets)

        digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
        path = self.job_dir(job_id).joinpath(*flow_step_id.path_parts()) / f"{digest}.json"
        if not path.exists():
            _atomic_write_json(path, data)
        logger.debug("Stored %d packets (%d bytes) for job %s at %s", len(packets), size, job_id, path)
        return FileReference(
            job_id=job_id,
            flow_step_id=flow_step_id,
            file_path=str(path),
            digest=digest,
            stored_at=_datetime_to_iso(_utcnow()),
        )

    def retrieve(self, payload: PacketPayload) -> List[DataPacket]:
        """Resolve an inbound payload to packets.

        Raises:
            DereferenceError: If a referenced file is missing, unreadable or
                does not match its digest.
        """
        if payload is None:
            return []
        if not isinstance(payload, FileReference):
            return list(payload)

        path = Path(payload.file_path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise DereferenceError(
                f"Cannot read packet file {path}: {e}",
                context={"job_id": payload.job_id, "file_path": str(path)},
            ) from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DereferenceError(
                f"Packet file {path} is not valid JSON: {e}",
                context={"job_id": payload.job_id, "file_path": str(path)},
            ) from e

        if payload.digest:
            canonical = json.dumps(data, ensure_ascii=False, sort_keys=True)
            actual = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
            if actual != payload.digest:
                raise DereferenceError(
                    f"Packet file {path} digest mismatch",
                    context={"expected": payload.digest, "actual": actual},
                )

        if not isinstance(data, list):
            raise DereferenceError(f"Packet file {path} does not hold a packet list")
        return packets_from_dicts(data)

    def cleanup_job(self, job_id: str) -> bool:
        """Remove the job's file area. Best-effort."""
        job_dir = self.job_dir(job_id)
        if not job_dir.exists():
            return False
        try:
            shutil.rmtree(job_dir)
        except OSError as e:
            logger.warning("Could not remove packet files for job %s: %s", job_id, e)
            return False
        logger.debug("Removed packet files for job %s", job_id)
        return True
