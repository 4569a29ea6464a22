"""
Tests for the data packet channel (inline hand-off and file references).
"""

import json

import pytest

from flowmachine.runtime.errors import DereferenceError
from flowmachine.runtime.packets import DataPacketChannel
from flowmachine.runtime.types import DataPacket, FileReference, FlowStepId


def _packets(count, body="x"):
    return [DataPacket(type="fetch", content={"title": f"t{i}", "body": body}) for i in range(count)]


class TestDataPacketChannel:
    """Tests for storing and retrieving packets."""

    def test_small_payload_stays_inline(self, tmp_path):
        """Packets under the threshold are handed over as a list."""
        channel = DataPacketChannel(tmp_path, inline_threshold_bytes=10_000)
        payload = channel.store("job-1", FlowStepId("ps-1", "fl-1"), _packets(2))
        assert isinstance(payload, list)
        assert channel.retrieve(payload)[1].content["title"] == "t1"

    def test_large_payload_goes_to_file(self, tmp_path):
        """Packets over the threshold are written under the job directory."""
        channel = DataPacketChannel(tmp_path, inline_threshold_bytes=100)
        step = FlowStepId("ps-1", "fl-1")
        payload = channel.store("job-1", step, _packets(3, body="y" * 200))

        assert isinstance(payload, FileReference)
        assert payload.file_path.startswith(str(tmp_path / "jobs" / "job-1" / "fl-1" / "ps-1"))
        restored = channel.retrieve(payload)
        assert [p.content["title"] for p in restored] == ["t0", "t1", "t2"]

    def test_identical_output_reuses_file(self, tmp_path):
        """A redelivered step writing the same packets lands on the same path."""
        channel = DataPacketChannel(tmp_path, inline_threshold_bytes=10)
        step = FlowStepId("ps-1", "fl-1")
        packets = _packets(2)
        first = channel.store("job-1", step, packets)
        second = channel.store("job-1", step, packets)
        assert first.file_path == second.file_path

    def test_missing_file_raises(self, tmp_path):
        """A reference to a deleted file is a dereference error."""
        channel = DataPacketChannel(tmp_path, inline_threshold_bytes=10)
        payload = channel.store("job-1", FlowStepId("ps-1", "fl-1"), _packets(2))
        channel.cleanup_job("job-1")
        with pytest.raises(DereferenceError):
            channel.retrieve(payload)

    def test_tampered_file_raises(self, tmp_path):
        """A file whose content no longer matches its digest is rejected."""
        channel = DataPacketChannel(tmp_path, inline_threshold_bytes=10)
        payload = channel.store("job-1", FlowStepId("ps-1", "fl-1"), _packets(2))
        with open(payload.file_path, "w", encoding="utf-8") as f:
            json.dump([], f)
        with pytest.raises(DereferenceError):
            channel.retrieve(payload)

    def test_none_payload_is_empty(self, tmp_path):
        """The first step receives no packets."""
        assert DataPacketChannel(tmp_path).retrieve(None) == []

    def test_cleanup_removes_only_that_job(self, tmp_path):
        """Cleanup deletes one job's directory and leaves others."""
        channel = DataPacketChannel(tmp_path, inline_threshold_bytes=10)
        step = FlowStepId("ps-1", "fl-1")
        channel.store("job-1", step, _packets(2))
        kept = channel.store("job-2", step, _packets(2))

        assert channel.cleanup_job("job-1") is True
        assert not channel.job_dir("job-1").exists()
        assert channel.retrieve(kept)
        assert channel.cleanup_job("job-1") is False
