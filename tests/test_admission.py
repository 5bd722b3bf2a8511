"""Tests for batch-queue backpressure."""

from conftest import FakeSubmitter

from rulemanager.admission import AdmissionController
from rulemanager.control import ControlChannel
from rulemanager.errors import SubmissionError


class BrokenSubmitter(FakeSubmitter):
    def pending_count(self):
        raise SubmissionError("bjobs not found")


class TestAdmissionController:
    """Tests for AdmissionController."""

    def test_no_sleep_below_ceiling(self):
        """Nothing happens while the queue has room."""
        sleeps = []
        admission = AdmissionController(FakeSubmitter(pending=10), 200, 300, sleep=sleeps.append)
        assert not admission.overloaded()
        assert admission.throttle() == 0
        assert sleeps == []

    def test_ceiling_is_inclusive(self):
        """Reaching max_pending_jobs counts as overloaded."""
        admission = AdmissionController(FakeSubmitter(pending=200), 200, 300)
        assert admission.overloaded()
        assert not admission.overloaded(199)

    def test_sleeps_until_queue_drains(self):
        """throttle() sleeps overload_sleep until the count drops."""
        sleeps = []
        submitter = FakeSubmitter(pending=[250, 210, 150])
        admission = AdmissionController(submitter, 200, 300, sleep=sleeps.append)
        assert admission.throttle() == 600
        assert sleeps == [300, 300]

    def test_terminate_stops_waiting(self):
        """A terminate request ends the backpressure loop."""
        channel = ControlChannel()
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            channel.request_terminate()

        admission = AdmissionController(FakeSubmitter(pending=500), 200, 300, channel=channel, sleep=sleep)
        assert admission.throttle() == 300
        assert sleeps == [300]

    def test_unreachable_batch_system(self):
        """If the count cannot be read the scheduler carries on."""
        sleeps = []
        admission = AdmissionController(BrokenSubmitter(), 200, 300, sleep=sleeps.append)
        assert admission.pending() is None
        assert not admission.overloaded()
        assert admission.throttle() == 0
        assert sleeps == []
