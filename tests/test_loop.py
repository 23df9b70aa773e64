"""
Tests for the poll / execute / report cycle.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from taskworker.core.handler import FunctionHandler, TaskHandler
from taskworker.core.loop import PollExecuteLoop, RetryPolicy
from taskworker.exceptions import (
    HandlerExecutionError,
    PermanentError,
    TerminalTaskError,
    TransientServerError,
)
from taskworker.models import Task, TaskResult, TaskStatus


def wait_idle(loop, timeout=2.0):
    deadline = time.monotonic() + timeout
    while loop.active and time.monotonic() < deadline:
        time.sleep(0.005)
    assert loop.active == 0


def make_loop(client, allocation=None, **kwargs):
    loop = PollExecuteLoop(client, allocation or {"echo": 1}, worker_id="w-1", **kwargs)
    loop._sleep = MagicMock(return_value=False)
    return loop


def boom(task):
    raise RuntimeError("boom")


@pytest.fixture
def echo():
    return FunctionHandler("echo", lambda task: {"echo": task.input_data.get("msg")})


class TestPoll:
    """Poll stage."""

    def test_no_task_is_a_quiet_tick(self, client, echo, caplog):
        loop = make_loop(client)

        loop.poll_and_execute(echo)

        assert client.poll_count("echo") == 1
        assert client.reports == []
        assert loop.active == 0
        assert not [r for r in caplog.records if r.levelname in ("ERROR", "WARNING")]

    def test_domain_and_worker_id_sent(self, client, echo):
        loop = make_loop(client, task_to_domain={"echo": "staging"})

        loop.poll_and_execute(echo)

        assert client.polls == [("echo", "staging", "w-1")]

    def test_transient_poll_error_ends_tick(self, client, echo):
        client.poll_errors.append(TransientServerError("down"))
        loop = make_loop(client)

        loop.poll_and_execute(echo)

        assert client.report_attempts == 0
        assert loop.active == 0

    def test_unexpected_poll_error_ends_tick(self, client, echo):
        client.poll_errors.append(KeyError("weird"))
        loop = make_loop(client)

        loop.poll_and_execute(echo)

        assert client.report_attempts == 0
        assert loop.active == 0

    def test_type_without_threads_not_polled(self, client, echo):
        loop = make_loop(client, allocation={"echo": 0})

        loop.poll_and_execute(echo)

        assert client.poll_count() == 0

    def test_paused_handler_not_polled(self, client):
        class Paused(TaskHandler):
            task_type = "echo"

            def paused(self):
                return True

        loop = make_loop(client)
        loop.poll_and_execute(Paused())

        assert client.poll_count() == 0

    def test_health_check_down_skips_poll(self, client, echo):
        loop = make_loop(client, health_check=lambda: False)

        loop.poll_and_execute(echo)

        assert client.poll_count() == 0

    def test_health_check_error_skips_poll(self, client, echo):
        def broken():
            raise ConnectionError("registry unreachable")

        loop = make_loop(client, health_check=broken)
        loop.poll_and_execute(echo)

        assert client.poll_count() == 0

    def test_no_poll_while_all_threads_busy(self, client):
        release = threading.Event()
        handler = FunctionHandler("slow", lambda task: release.wait(2) and {})
        client.add_task("slow", "t1")
        client.add_task("slow", "t2")
        loop = make_loop(client, allocation={"slow": 1})

        loop.poll_and_execute(handler)
        loop.poll_and_execute(handler)

        assert client.poll_count("slow") == 1
        release.set()
        wait_idle(loop)

        loop.poll_and_execute(handler)
        wait_idle(loop)
        assert client.poll_count("slow") == 2
        assert [r.task_id for r in client.reports] == ["t1", "t2"]


class TestExecute:
    """Execute stage."""

    def test_mapping_becomes_completed_result(self, client, echo):
        loop = make_loop(client)
        task = Task(task_id="t1", task_type="echo", workflow_instance_id="wf", input_data={"msg": "hi"})

        result = loop.execute(echo, task)

        assert result.status is TaskStatus.COMPLETED
        assert result.output_data == {"echo": "hi"}
        assert result.task_id == "t1"
        assert result.workflow_instance_id == "wf"
        assert result.worker_id == "w-1"

    def test_none_becomes_empty_completed_result(self, client):
        loop = make_loop(client)
        task = Task(task_id="t1", task_type="noop")

        result = loop.execute(FunctionHandler("noop", lambda t: None), task)

        assert result.status is TaskStatus.COMPLETED
        assert result.output_data == {}

    def test_task_result_passed_through(self, client):
        loop = make_loop(client)
        task = Task(task_id="t1", task_type="x", workflow_instance_id="wf")

        def handler(t):
            return TaskResult(task_id=t.task_id, status=TaskStatus.IN_PROGRESS, callback_after_seconds=30)

        result = loop.execute(FunctionHandler("x", handler), task)

        assert result.status is TaskStatus.IN_PROGRESS
        assert result.callback_after_seconds == 30
        assert result.workflow_instance_id == "wf"

    def test_exception_becomes_failed_result(self, client):
        loop = make_loop(client)
        task = Task(task_id="t1", task_type="x")

        result = loop.execute(FunctionHandler("x", boom), task)

        assert result.status is TaskStatus.FAILED
        assert result.reason_for_incompletion == "boom"
        assert "RuntimeError" in result.logs[0]

    def test_handler_error_keeps_output(self, client):
        def handler(t):
            raise HandlerExecutionError("bad input", output_data={"field": "size"})

        loop = make_loop(client)
        result = loop.execute(FunctionHandler("x", handler), Task(task_id="t1", task_type="x"))

        assert result.status is TaskStatus.FAILED
        assert result.output_data == {"field": "size"}

    def test_terminal_error(self, client):
        def handler(t):
            raise TerminalTaskError("never retry")

        loop = make_loop(client)
        result = loop.execute(FunctionHandler("x", handler), Task(task_id="t1", task_type="x"))

        assert result.status is TaskStatus.FAILED_WITH_TERMINAL_ERROR
        assert result.reason_for_incompletion == "never retry"

    def test_unsupported_return_type_fails(self, client):
        loop = make_loop(client)
        result = loop.execute(FunctionHandler("x", lambda t: 42), Task(task_id="t1", task_type="x"))

        assert result.status is TaskStatus.FAILED
        assert "int" in result.reason_for_incompletion

    def test_failing_handler_never_blocks_next_ticks(self, client):
        """After N failures the next tick still executes."""
        calls = []

        def handler(task):
            calls.append(task.task_id)
            raise RuntimeError(f"fail {task.task_id}")

        failing = FunctionHandler("flaky", handler)
        loop = make_loop(client, allocation={"flaky": 1})
        for i in range(6):
            client.add_task("flaky", f"t{i}")

        for _ in range(6):
            loop.poll_and_execute(failing)
            wait_idle(loop)

        assert calls == [f"t{i}" for i in range(6)]
        assert [r.status for r in client.reports] == [TaskStatus.FAILED] * 6


class TestReport:
    """Report stage and its retry policy."""

    def test_success_first_try(self, client):
        loop = make_loop(client)

        assert loop.report(TaskResult(task_id="t1", status=TaskStatus.COMPLETED)) is True
        assert client.report_attempts == 1
        loop._sleep.assert_not_called()

    def test_succeeds_on_last_retry(self, client):
        retries = 3
        client.report_errors.extend(TransientServerError("503") for _ in range(retries))
        loop = make_loop(client, retry_policy=RetryPolicy(update_retry_count=retries, sleep_when_retry_ms=250))

        ok = loop.report(TaskResult(task_id="t1", status=TaskStatus.COMPLETED))

        assert ok is True
        assert client.report_attempts == retries + 1
        assert loop._sleep.call_count == retries
        loop._sleep.assert_called_with(0.25)
        assert len(client.reports) == 1

    def test_all_attempts_fail_drops_result(self, client):
        client.report_errors.extend(TransientServerError("503") for _ in range(10))
        loop = make_loop(client, retry_policy=RetryPolicy(update_retry_count=2, sleep_when_retry_ms=0))

        ok = loop.report(TaskResult(task_id="t1", status=TaskStatus.COMPLETED))

        assert ok is False
        assert client.report_attempts == 3
        assert loop._sleep.call_count == 2
        assert client.reports == []

    def test_dropped_result_does_not_escape_tick(self, client, echo):
        client.add_task("echo", "t1")
        client.report_errors.extend(ConnectionError("reset") for _ in range(10))
        loop = make_loop(client, retry_policy=RetryPolicy(update_retry_count=1, sleep_when_retry_ms=0))

        loop.poll_and_execute(echo)
        wait_idle(loop)

        assert client.report_attempts == 2
        assert client.reports == []

    def test_permanent_error_not_retried(self, client):
        client.report_errors.append(PermanentError("400 bad result"))
        loop = make_loop(client)

        assert loop.report(TaskResult(task_id="t1")) is False
        assert client.report_attempts == 1
        loop._sleep.assert_not_called()

    def test_zero_retries_means_single_attempt(self, client):
        client.report_errors.append(TransientServerError("503"))
        loop = make_loop(client, retry_policy=RetryPolicy(update_retry_count=0))

        assert loop.report(TaskResult(task_id="t1")) is False
        assert client.report_attempts == 1

    def test_retries_stop_when_abandoned(self, client):
        client.report_errors.extend(TransientServerError("503") for _ in range(10))
        loop = PollExecuteLoop(client, {"x": 1}, retry_policy=RetryPolicy(update_retry_count=5, sleep_when_retry_ms=5000))
        loop._abandoned.set()

        started = time.monotonic()
        assert loop.report(TaskResult(task_id="t1")) is False
        assert time.monotonic() - started < 1.0
        assert client.report_attempts == 1


class TestDrain:
    """Loop shutdown."""

    def test_drain_waits_for_running_cycle(self, client):
        handler = FunctionHandler("slow", lambda t: time.sleep(0.1) or {"done": True})
        client.add_task("slow", "t1")
        loop = make_loop(client, allocation={"slow": 1})

        loop.poll_and_execute(handler)
        assert loop.drain(timeout=2) is True

        assert [r.task_id for r in client.reports] == ["t1"]

    def test_drain_times_out_and_skips_report(self, client):
        release = threading.Event()
        handler = FunctionHandler("stuck", lambda t: release.wait(5) and {})
        client.add_task("stuck", "t1")
        loop = make_loop(client, allocation={"stuck": 1})

        loop.poll_and_execute(handler)
        started = time.monotonic()
        drained = loop.drain(timeout=0.2)
        elapsed = time.monotonic() - started

        assert drained is False
        assert elapsed < 1.0
        release.set()
        time.sleep(0.1)
        assert client.reports == []

    def test_ticks_after_drain_are_noops(self, client, echo):
        loop = make_loop(client)
        loop.drain(timeout=1)

        loop.poll_and_execute(echo)

        assert client.poll_count() == 0
