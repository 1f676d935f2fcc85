"""
Unit tests for task runners
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading

import pytest

from goal_planner.utils.task_runner import (
    InlineTaskRunner,
    TaskTimeoutError,
    ThreadedTaskRunner,
    create_task_runner,
)


def double(payload):
    return payload["n"] * 2


def test_inline_runs_on_caller_thread():
    runner = InlineTaskRunner()
    seen = []
    runner.register("where", lambda payload: seen.append(threading.current_thread()))

    runner.run_heavy_task("where", {})

    assert seen == [threading.current_thread()]


def test_inline_returns_result():
    runner = InlineTaskRunner()
    runner.register("double", double)
    assert runner.run_heavy_task("double", {"n": 21}) == 42


def test_unknown_kind_raises():
    runner = InlineTaskRunner()
    with pytest.raises(ValueError, match="No handler registered"):
        runner.run_heavy_task("missing", {})


def test_register_rejects_non_callable():
    runner = InlineTaskRunner()
    with pytest.raises(TypeError):
        runner.register("bad", "not a function")


def test_handler_errors_propagate():
    runner = InlineTaskRunner()

    def boom(payload):
        raise RuntimeError("model crashed")

    runner.register("boom", boom)
    with pytest.raises(RuntimeError, match="model crashed"):
        runner.run_heavy_task("boom", {})


def test_threaded_returns_result():
    runner = ThreadedTaskRunner(timeout=5.0, max_workers=2)
    try:
        runner.register("double", double)
        assert runner.run_heavy_task("double", {"n": 4}) == 8
        assert runner.handles("double")
    finally:
        runner.shutdown()


def test_threaded_timeout():
    runner = ThreadedTaskRunner(timeout=5.0, max_workers=1)
    release = threading.Event()
    runner.register("slow", lambda payload: release.wait(2.0))
    try:
        with pytest.raises(TaskTimeoutError) as excinfo:
            runner.run_heavy_task("slow", {}, timeout=0.05)

        assert excinfo.value.kind == "slow"
        assert excinfo.value.timeout == 0.05
        assert isinstance(excinfo.value, TimeoutError)
    finally:
        release.set()
        runner.shutdown()


def test_threaded_handler_error_propagates():
    runner = ThreadedTaskRunner(timeout=5.0)

    def boom(payload):
        raise ValueError("bad payload")

    runner.register("boom", boom)
    try:
        with pytest.raises(ValueError, match="bad payload"):
            runner.run_heavy_task("boom", {})
    finally:
        runner.shutdown()


def test_factory():
    assert isinstance(create_task_runner("inline"), InlineTaskRunner)

    threaded = create_task_runner("threaded", timeout=3.0, max_workers=2)
    try:
        assert isinstance(threaded, ThreadedTaskRunner)
        assert threaded.timeout == 3.0
        assert threaded.max_workers == 2
    finally:
        threaded.shutdown()

    with pytest.raises(ValueError):
        create_task_runner("celery")
