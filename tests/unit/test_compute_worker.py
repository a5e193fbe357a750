"""
Unit tests for the compute worker module.
"""

import threading
from unittest.mock import Mock, patch

import numpy as np
import pytest

from wavelab.app import handlers
from wavelab.app.compute_worker import HANDLER_REGISTRY, _lazy_load_handler, main
from wavelab.utils.capabilities import Capabilities
from wavelab.utils.errors import JobValidationError
from wavelab.utils.ipc_types import EnvelopeKind, JobEnvelope, JobKind


def _start(job_kind, payload, job_id="test_job_123"):
    return JobEnvelope(kind=EnvelopeKind.START, job_id=job_id, job_kind=job_kind, payload=payload)


def _run_worker(test_config, envelopes, cancel_event=None):
    inbox = Mock()
    inbox.get.side_effect = list(envelopes) + [None]
    result_q = Mock()
    with patch("wavelab.app.compute_worker.configure_from_settings"), \
            patch("wavelab.app.compute_worker.detect_capabilities",
                  return_value=Capabilities(native_fft=True, cpu_count=2)):
        main(test_config, inbox, result_q, cancel_event or threading.Event(), worker_id=1)
    return [c.args[0] for c in result_q.put.call_args_list]


@pytest.mark.unit
class TestHandlerRegistry:

    def test_registry_covers_every_job_kind(self):
        assert set(HANDLER_REGISTRY) == {kind.value for kind in JobKind}

    def test_lazy_load_handler(self):
        handler = _lazy_load_handler("beam")
        assert handler is handlers.handle_beam_job
        assert HANDLER_REGISTRY["beam"] is handlers.handle_beam_job

    def test_lazy_load_unknown_kind(self):
        assert _lazy_load_handler("unknown.job") is None


@pytest.mark.unit
class TestComputeWorker:

    def test_successful_beam_job(self, test_config):
        payload = {
            "elements": [{"x": 0.0, "y": 0.0}],
            "grid": {"width": 2, "height": 3},
            "field_size": {"width": 1.0, "height": 1.0},
            "wavelength": 0.5,
        }
        sent = _run_worker(test_config, [_start(JobKind.BEAM, payload)])

        progress = [e for e in sent if e.kind == EnvelopeKind.PROGRESS]
        final = sent[-1]
        assert progress and all(e.job_id == "test_job_123" for e in progress)
        assert final.kind == EnvelopeKind.COMPLETE
        assert final.payload["width"] == 2 and final.payload["height"] == 3
        np.testing.assert_allclose(final.payload["intensity"], 1.0, atol=1e-5)
        assert final.execution_time_ms is not None

    @patch("wavelab.app.compute_worker._lazy_load_handler")
    def test_handler_receives_context_and_payload(self, mock_lazy_load, test_config):
        mock_handler = Mock(return_value={"ok": True})
        mock_lazy_load.return_value = mock_handler

        sent = _run_worker(test_config, [_start(JobKind.MIX, {"mode": "real-imag"})])

        mock_lazy_load.assert_called_once_with("mix")
        ctx = mock_handler.call_args.args[0]
        assert ctx.job_id == "test_job_123"
        assert ctx.settings is test_config
        assert mock_handler.call_args.kwargs == {"mode": "real-imag"}
        assert sent[-1].payload == {"ok": True}

    @patch("wavelab.app.compute_worker._lazy_load_handler")
    def test_handler_error(self, mock_lazy_load, test_config):
        mock_lazy_load.return_value = Mock(side_effect=ValueError("Test error"))

        sent = _run_worker(test_config, [_start(JobKind.HISTOGRAM, {})])

        assert len(sent) == 1
        assert sent[0].kind == EnvelopeKind.ERROR
        assert "ValueError: Test error" in sent[0].error
        assert sent[0].error_type == "ValueError"

    @patch("wavelab.app.compute_worker._lazy_load_handler")
    def test_validation_error_type_is_reported(self, mock_lazy_load, test_config):
        mock_lazy_load.return_value = Mock(side_effect=JobValidationError("No images provided"))

        sent = _run_worker(test_config, [_start(JobKind.MIX, {})])

        assert sent[0].error_type == "JobValidationError"
        assert sent[0].error == "JobValidationError: No images provided"

    @patch("wavelab.app.compute_worker._lazy_load_handler")
    def test_unknown_handler(self, mock_lazy_load, test_config):
        mock_lazy_load.return_value = None

        sent = _run_worker(test_config, [_start(JobKind.DECODE, {})])

        assert sent[0].kind == EnvelopeKind.ERROR
        assert "No handler found for job kind: decode" in sent[0].error

    @patch("wavelab.app.compute_worker._lazy_load_handler")
    def test_cancelled_job_reports_cancelled(self, mock_lazy_load, test_config):
        event = threading.Event()

        def finish_after_cancel(ctx, **payload):
            event.set()
            return {"late": True}

        mock_lazy_load.return_value = finish_after_cancel

        sent = _run_worker(test_config, [_start(JobKind.BEAM, {})], cancel_event=event)

        assert [e.kind for e in sent] == [EnvelopeKind.CANCELLED]
        assert sent[0].payload is None

    def test_worker_keeps_serving_after_failure(self, test_config):
        bad = _start(JobKind.MIX, {"images": []}, job_id="bad")
        good = _start(JobKind.BEAM_PATTERN, {"descriptor": {"element_count": 4}}, job_id="good")

        sent = _run_worker(test_config, [bad, good])

        outcomes = {e.job_id: e.kind for e in sent}
        assert outcomes == {"bad": EnvelopeKind.ERROR, "good": EnvelopeKind.COMPLETE}

    def test_non_start_envelopes_are_ignored(self, test_config):
        cancel = JobEnvelope(kind=EnvelopeKind.CANCEL, job_id="x")
        assert _run_worker(test_config, [cancel]) == []
