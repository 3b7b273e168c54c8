"""Tests for the job lifecycle controller."""

import threading
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from crawlhost.core.jobs import (
    STAT_PROGRESS,
    STAT_PROGRESS_KNOWN,
    JobController,
    JobHandle,
    JobState,
    KillOnStopMixin,
    SynchronizedDict,
)
from crawlhost.foundation.errors import JobError, get_error_handler
from crawlhost.foundation.metrics import get_metrics_collector


class InjectController(KillOnStopMixin, JobController):
    """Controller that runs one phase per URL batch on a supplied engine."""

    def __init__(self, handles=None, num_jobs=1):
        super().__init__(num_jobs=num_jobs)
        self.handles = handles or []

    def run(self, args: Dict[str, Any], crawl_id: str) -> Dict[str, Any]:
        for num, handle in enumerate(self.handles):
            self.attach_job(handle, num)
        return {"injected": args.get("count", 0), "crawl": crawl_id}


class PausableController(JobController):
    """Controller whose engine supports a real pause."""

    def __init__(self):
        super().__init__()
        self.paused = False

    def run(self, args, crawl_id):
        return {}

    def stop_job(self) -> bool:
        self.paused = True
        return True


class FailingController(InjectController):
    def run(self, args, crawl_id):
        raise RuntimeError("segment missing")


@pytest.fixture
def controller():
    return InjectController()


class TestProgress:
    """Test suite for progress aggregation."""

    def test_no_job_reports_zero(self, controller):
        reading = controller.poll_progress()
        assert reading.value == 0.0
        assert reading.known
        assert controller.get_progress() == 0.0

    def test_single_phase_average(self, controller, job_handle):
        controller.attach_job(job_handle)
        assert controller.get_progress() == pytest.approx(0.5)

    def test_multi_phase(self, job_handle):
        controller = InjectController(num_jobs=3)
        controller.attach_job(job_handle, job_num=1)
        assert controller.get_progress() == pytest.approx((1 + 0.5) / 3)

    def test_completed_phases_contribute_evenly(self):
        controller = InjectController(num_jobs=4)
        handle = Mock()
        handle.map_progress.return_value = 1.0
        handle.reduce_progress.return_value = 1.0
        controller.attach_job(handle, job_num=3)
        assert controller.get_progress() == pytest.approx(1.0)

    def test_multi_phase_without_job(self):
        controller = InjectController(num_jobs=4)
        controller.current_job_num = 2
        assert controller.get_progress() == pytest.approx(0.5)

    def test_progress_written_to_status(self, controller, job_handle):
        controller.attach_job(job_handle)
        value = controller.get_progress()
        assert controller.get_status()[STAT_PROGRESS] == value

    @pytest.mark.parametrize("error", [IOError("tracker down"), RuntimeError("bad state")])
    def test_failing_handle_degrades_to_zero(self, controller, job_handle, error):
        job_handle.reduce_progress.side_effect = error
        controller.attach_job(job_handle)

        reading = controller.poll_progress()

        assert reading.value == 0.0
        assert not reading.known
        assert reading.error is error
        assert controller.status[STAT_PROGRESS] == 0.0
        assert controller.status["progress_known"] is False

    def test_failing_handle_in_later_phase(self, job_handle):
        controller = InjectController(num_jobs=2)
        job_handle.map_progress.side_effect = IOError("gone")
        controller.attach_job(job_handle, job_num=1)
        assert controller.get_progress() == pytest.approx(0.5)

    def test_failure_is_recorded(self, controller, job_handle):
        get_error_handler().clear_errors()
        job_handle.map_progress.side_effect = IOError("tracker down")
        controller.attach_job(job_handle)

        controller.get_progress()

        assert get_error_handler().get_recent_errors_by_type("OSError")
        assert get_metrics_collector().get_counter_value("job_controller.progress.unknown") >= 1

    def test_status_is_live(self, controller, job_handle):
        status = controller.get_status()
        controller.attach_job(job_handle)
        controller.get_progress()
        assert status[STAT_PROGRESS] == pytest.approx(0.5)


class TestKill:
    """Test suite for kill and stop."""

    def test_kill_without_job(self, controller):
        assert controller.kill_job() is False

    def test_kill_running_job(self, controller, job_handle):
        controller.attach_job(job_handle)
        assert controller.kill_job() is True
        job_handle.kill_job.assert_called_once_with()
        assert controller.state == JobState.STOPPING

    def test_kill_completed_job(self, controller, job_handle):
        job_handle.is_complete.return_value = True
        controller.attach_job(job_handle)
        assert controller.kill_job() is False
        job_handle.kill_job.assert_not_called()

    def test_kill_failure_returns_false(self, controller, job_handle):
        job_handle.kill_job.side_effect = RuntimeError("refused")
        controller.attach_job(job_handle)
        assert controller.kill_job() is False
        assert controller.state == JobState.RUNNING

    def test_completion_check_failure_returns_false(self, controller, job_handle):
        job_handle.is_complete.side_effect = IOError("unreachable")
        controller.attach_job(job_handle)
        assert controller.kill_job() is False
        job_handle.kill_job.assert_not_called()

    def test_stop_falls_back_to_kill(self, controller, job_handle):
        controller.attach_job(job_handle)
        assert controller.stop_job() is True
        job_handle.kill_job.assert_called_once_with()

    def test_stop_override(self, job_handle):
        controller = PausableController()
        controller.attach_job(job_handle)
        assert controller.stop_job() is True
        assert controller.paused
        job_handle.kill_job.assert_not_called()

    def test_stop_must_be_provided(self):
        class NoStop(JobController):
            def run(self, args, crawl_id):
                return {}

        with pytest.raises(TypeError):
            NoStop()


class TestLifecycle:
    """Test suite for state transitions and execution."""

    def test_idle_to_terminal(self, controller, job_handle):
        assert controller.state == JobState.IDLE
        controller.attach_job(job_handle)
        assert controller.state == JobState.RUNNING
        job_handle.is_complete.return_value = True
        assert controller.state == JobState.TERMINAL

    def test_stopping_until_engine_confirms(self, controller, job_handle):
        controller.attach_job(job_handle)
        controller.kill_job()
        assert controller.state == JobState.STOPPING
        job_handle.is_complete.return_value = True
        assert controller.state == JobState.TERMINAL

    def test_execute_stores_results(self, job_handle):
        controller = InjectController(handles=[job_handle])
        results = controller.execute({"count": 12}, "crawl-1")
        assert results == {"injected": 12, "crawl": "crawl-1"}
        assert controller.results is results
        assert controller.state == JobState.TERMINAL

    def test_execute_wraps_failure(self):
        controller = FailingController()
        with pytest.raises(JobError) as exc_info:
            controller.execute({}, "crawl-2")

        error = exc_info.value
        assert isinstance(error.__cause__, RuntimeError)
        assert error.crawl_id == "crawl-2"
        assert error.job_name == "FailingController"
        assert controller.results == {}

    def test_attach_rejects_phase_out_of_range(self, job_handle):
        controller = InjectController(num_jobs=2)
        with pytest.raises(ValueError):
            controller.attach_job(job_handle, job_num=2)

    def test_negative_num_jobs(self):
        with pytest.raises(ValueError):
            InjectController(num_jobs=-1)

    def test_mock_satisfies_protocol(self, job_handle):
        assert isinstance(job_handle, JobHandle)


class TestSynchronizedDict:
    """Test suite for the shared status mapping."""

    def test_mapping_behaviour(self):
        status = SynchronizedDict(progress=0.0)
        status["phase"] = "fetch"
        assert dict(status) == {"progress": 0.0, "phase": "fetch"}
        del status["phase"]
        assert "phase" not in status
        assert len(status) == 1

    def test_concurrent_readers(self):
        status = SynchronizedDict()
        errors = []

        def writer():
            for i in range(2000):
                status[f"k{i % 50}"] = i

        def reader():
            try:
                for _ in range(200):
                    snapshot = status.snapshot()
                    for key in status:
                        status.get(key)
                    assert len(snapshot) <= 50
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []

    def test_update_is_one_write(self):
        writes = []

        class RecordingDict(SynchronizedDict):
            def __setitem__(self, key, value):
                writes.append({key: value})
                super().__setitem__(key, value)

            def update(self, *args, **kwargs):
                writes.append(dict(*args, **kwargs))
                super().update(*args, **kwargs)

        controller = InjectController()
        controller.status = RecordingDict()
        controller.poll_progress()

        assert writes == [{STAT_PROGRESS: 0.0, STAT_PROGRESS_KNOWN: True}]

    def test_progress_and_flag_published_together(self):
        class FlakyHandle:
            """Alternates between a half-done reading and a tracker failure."""

            def __init__(self):
                self.calls = 0

            def map_progress(self):
                self.calls += 1
                if self.calls % 2:
                    raise IOError("tracker down")
                return 0.5

            def reduce_progress(self):
                return 0.5

        controller = InjectController()
        controller.attach_job(FlakyHandle())
        controller.poll_progress()
        done = threading.Event()
        torn = []

        def reader():
            while not done.is_set():
                snapshot = controller.status.snapshot()
                known = snapshot[STAT_PROGRESS_KNOWN]
                expected = 0.5 if known else 0.0
                if snapshot[STAT_PROGRESS] != expected:
                    torn.append(snapshot)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for _ in range(500):
                controller.poll_progress()
        finally:
            done.set()
            thread.join()

        assert torn == []
