"""Unit tests for chain dispatchers."""

import threading
import time

import pytest

from config.settings import settings
from core.exceptions import ChainAlreadyRunning
from modules.workflow.chain import Chain, ChainResult
from modules.workflow.dispatcher import InlineChainDispatcher, ThreadChainDispatcher


class BlockingRunner:
    """Runner whose chains wait until the test releases them."""

    def __init__(self):
        self.release = threading.Event()
        self.started = []

    def run(self, chain):
        self.started.append(chain.key)
        self.release.wait(timeout=5)
        return ChainResult(key=chain.key, status="completed")


class ImmediateRunner:
    def run(self, chain):
        return ChainResult(key=chain.key, status="completed", executed=["only"])


def test_thread_dispatcher_rejects_a_second_chain_for_the_same_key():
    runner = BlockingRunner()
    dispatcher = ThreadChainDispatcher(runner)

    dispatcher.dispatch(Chain(key="host:1", steps=[]))
    try:
        assert dispatcher.is_running("host:1")
        with pytest.raises(ChainAlreadyRunning) as exc_info:
            dispatcher.dispatch(Chain(key="host:1", steps=[]))
        assert exc_info.value.key == "host:1"
    finally:
        runner.release.set()

    result = dispatcher.wait("host:1", timeout=5)
    assert result.succeeded
    assert not dispatcher.is_running("host:1")


def test_thread_dispatcher_runs_other_keys_side_by_side():
    runner = BlockingRunner()
    dispatcher = ThreadChainDispatcher(runner)

    dispatcher.dispatch(Chain(key="host:1", steps=[]))
    dispatcher.dispatch(Chain(key="attempt:2", steps=[]))
    assert dispatcher.is_running("host:1")
    assert dispatcher.is_running("attempt:2")

    runner.release.set()
    assert dispatcher.wait("host:1", timeout=5).succeeded
    assert dispatcher.wait("attempt:2", timeout=5).succeeded


def test_thread_dispatcher_accepts_the_key_again_once_finished():
    dispatcher = ThreadChainDispatcher(ImmediateRunner())

    dispatcher.dispatch(Chain(key="host:1", steps=[]))
    dispatcher.wait("host:1", timeout=5)
    dispatcher.dispatch(Chain(key="host:1", steps=[]))

    assert dispatcher.wait("host:1", timeout=5).executed == ["only"]


def test_wait_for_unknown_key_returns_none():
    assert ThreadChainDispatcher(ImmediateRunner()).wait("nothing", timeout=0.1) is None


def test_inline_dispatcher_returns_the_result():
    dispatcher = InlineChainDispatcher(ImmediateRunner())

    result = dispatcher.dispatch(Chain(key="host:1", steps=[]))

    assert result.succeeded
    assert dispatcher.results["host:1"] is result
    assert not dispatcher.is_running("host:1")


class SignallingRunner:
    def __init__(self):
        self.ran = threading.Event()
        self.keys = []

    def run(self, chain):
        self.keys.append(chain.key)
        self.ran.set()
        return ChainResult(key=chain.key, status="completed")


@pytest.mark.parametrize("dispatcher_class", [InlineChainDispatcher, ThreadChainDispatcher])
def test_reserved_key_rejects_a_second_reservation(dispatcher_class):
    dispatcher = dispatcher_class(ImmediateRunner())

    dispatcher.reserve("host:1")

    assert dispatcher.is_running("host:1")
    with pytest.raises(ChainAlreadyRunning):
        dispatcher.reserve("host:1")


@pytest.mark.parametrize("dispatcher_class", [InlineChainDispatcher, ThreadChainDispatcher])
def test_released_key_can_be_reserved_again(dispatcher_class):
    dispatcher = dispatcher_class(ImmediateRunner())

    dispatcher.reserve("host:1")
    dispatcher.release("host:1")

    assert not dispatcher.is_running("host:1")
    dispatcher.reserve("host:1")


def test_dispatch_consumes_the_reservation():
    runner = BlockingRunner()
    dispatcher = ThreadChainDispatcher(runner)

    dispatcher.reserve("host:1")
    dispatcher.dispatch(Chain(key="host:1", steps=[]))
    try:
        with pytest.raises(ChainAlreadyRunning):
            dispatcher.reserve("host:1")
    finally:
        runner.release.set()

    assert dispatcher.wait("host:1", timeout=5).succeeded
    dispatcher.reserve("host:1")


def test_result_cache_drops_the_oldest_result():
    dispatcher = InlineChainDispatcher(ImmediateRunner(), max_results=2)

    for key in ("host:1", "host:2", "host:3"):
        dispatcher.dispatch(Chain(key=key, steps=[]))

    assert len(dispatcher.results) == 2
    assert "host:1" not in dispatcher.results
    assert "host:3" in dispatcher.results


def test_wait_hands_over_the_result_once():
    dispatcher = ThreadChainDispatcher(ImmediateRunner())

    dispatcher.dispatch(Chain(key="host:1", steps=[]))

    assert dispatcher.wait("host:1", timeout=5).succeeded
    assert len(dispatcher.results) == 0
    assert dispatcher.wait("host:1", timeout=5) is None


def test_thread_dispatcher_runs_a_delayed_chain():
    runner = SignallingRunner()
    dispatcher = ThreadChainDispatcher(runner)

    dispatcher.dispatch_later(Chain(key="attempt:1", steps=[]), 0.01)

    assert runner.ran.wait(timeout=5)
    assert runner.keys == ["attempt:1"]


def test_cancelled_delayed_chain_never_runs():
    runner = SignallingRunner()
    dispatcher = ThreadChainDispatcher(runner)

    dispatcher.dispatch_later(Chain(key="attempt:1", steps=[]), 0.2)

    assert dispatcher.cancel_scheduled("attempt:1")
    assert not dispatcher.cancel_scheduled("attempt:1")
    assert not runner.ran.wait(timeout=0.5)


def test_inline_dispatcher_queues_delayed_chains_until_run_scheduled():
    dispatcher = InlineChainDispatcher(ImmediateRunner())

    dispatcher.dispatch_later(Chain(key="attempt:1", steps=[]), 600)
    assert dispatcher.scheduled[0][0] == 600
    assert "attempt:1" not in dispatcher.results

    results = dispatcher.run_scheduled()

    assert [result.key for result in results] == ["attempt:1"]
    assert dispatcher.scheduled == []


def test_due_chain_for_a_busy_key_is_retried(monkeypatch):
    monkeypatch.setattr(settings, "SCHEDULE_RETRY_SECONDS", 0.05)
    runner = BlockingRunner()
    dispatcher = ThreadChainDispatcher(runner)

    dispatcher.dispatch(Chain(key="attempt:1", steps=[]))
    dispatcher.dispatch_later(Chain(key="attempt:1", steps=[]), 0.01)
    time.sleep(0.2)
    assert runner.started == ["attempt:1"]

    runner.release.set()
    deadline = time.monotonic() + 5
    while len(runner.started) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)

    assert runner.started == ["attempt:1", "attempt:1"]
