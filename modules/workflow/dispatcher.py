"""Chain dispatchers.

``ThreadChainDispatcher`` runs each chain on its own daemon thread. While a
chain's thread is alive its key is locked: dispatching another chain for the
same entity raises ``ChainAlreadyRunning``. Chains for different entities run
side by side.

A caller that must write to the entity before the chain starts first calls
``reserve(key)``. The reservation takes the key under the dispatcher lock, so
a second caller is rejected before it touches anything; ``dispatch`` consumes
the reservation and ``release`` hands it back if the caller gives up.
"""
import logging
from collections import OrderedDict
from threading import Lock, Thread, Timer, current_thread
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from config.settings import settings
from core.exceptions import ChainAlreadyRunning
from modules.workflow.chain import Chain, ChainResult, ChainRunner

logger = logging.getLogger(__name__)


class ChainDispatcher(Protocol):
    def reserve(self, key: str) -> None:
        ...

    def release(self, key: str) -> None:
        ...

    def dispatch(self, chain: Chain) -> Any:
        ...

    def dispatch_later(self, chain: Chain, delay_seconds: float) -> None:
        ...

    def cancel_scheduled(self, key: str) -> bool:
        ...

    def is_running(self, key: str) -> bool:
        ...


class ResultCache:
    """Most recent chain results, oldest dropped first."""

    def __init__(self, max_results: int):
        self.max_results = max_results
        self._results: "OrderedDict[str, ChainResult]" = OrderedDict()

    def put(self, key: str, result: ChainResult) -> None:
        self._results[key] = result
        self._results.move_to_end(key)
        while len(self._results) > self.max_results:
            self._results.popitem(last=False)

    def pop(self, key: str) -> Optional[ChainResult]:
        return self._results.pop(key, None)

    def __getitem__(self, key: str) -> ChainResult:
        return self._results[key]

    def __contains__(self, key: str) -> bool:
        return key in self._results

    def __len__(self) -> int:
        return len(self._results)


class InlineChainDispatcher:
    """Runs the chain on the caller's thread.

    Delayed chains are only queued; ``run_scheduled`` dispatches them.
    """

    def __init__(self, runner: ChainRunner, max_results: int = settings.CHAIN_RESULTS_MAX):
        self.runner = runner
        self.results = ResultCache(max_results)
        self.scheduled: List[Tuple[float, Chain]] = []
        self._lock = Lock()
        self._busy: Set[str] = set()
        self._reserved: Set[str] = set()

    def reserve(self, key: str) -> None:
        with self._lock:
            if key in self._busy or key in self._reserved:
                raise ChainAlreadyRunning(key)
            self._reserved.add(key)

    def release(self, key: str) -> None:
        with self._lock:
            self._reserved.discard(key)

    def dispatch(self, chain: Chain) -> ChainResult:
        with self._lock:
            if chain.key in self._reserved:
                self._reserved.discard(chain.key)
            elif chain.key in self._busy:
                raise ChainAlreadyRunning(chain.key)
            self._busy.add(chain.key)
        try:
            result = self.runner.run(chain)
        finally:
            with self._lock:
                self._busy.discard(chain.key)
        with self._lock:
            self.results.put(chain.key, result)
        return result

    def dispatch_later(self, chain: Chain, delay_seconds: float) -> None:
        self.scheduled.append((delay_seconds, chain))

    def cancel_scheduled(self, key: str) -> bool:
        remaining = [(delay, chain) for delay, chain in self.scheduled if chain.key != key]
        cancelled = len(remaining) != len(self.scheduled)
        self.scheduled = remaining
        return cancelled

    def run_scheduled(self) -> List[ChainResult]:
        due, self.scheduled = self.scheduled, []
        return [self.dispatch(chain) for _, chain in due]

    def is_running(self, key: str) -> bool:
        with self._lock:
            return key in self._busy or key in self._reserved


class ThreadChainDispatcher:
    def __init__(self, runner: ChainRunner, max_results: int = settings.CHAIN_RESULTS_MAX) -> None:
        self.runner = runner
        self._lock = Lock()
        self._threads: Dict[str, Thread] = {}
        self._reserved: Set[str] = set()
        self._timers: Dict[str, Timer] = {}
        self.results = ResultCache(max_results)

    def _cleanup_dead_locked(self) -> None:
        dead = [key for key, thread in self._threads.items() if not thread.is_alive()]
        for key in dead:
            self._threads.pop(key, None)

    def _busy_locked(self, key: str) -> bool:
        self._cleanup_dead_locked()
        thread = self._threads.get(key)
        return key in self._reserved or bool(thread and thread.is_alive())

    def is_running(self, key: str) -> bool:
        with self._lock:
            return self._busy_locked(key)

    def reserve(self, key: str) -> None:
        with self._lock:
            if self._busy_locked(key):
                raise ChainAlreadyRunning(key)
            self._reserved.add(key)

    def release(self, key: str) -> None:
        with self._lock:
            self._reserved.discard(key)

    def dispatch(self, chain: Chain) -> None:
        with self._lock:
            if chain.key in self._reserved:
                self._reserved.discard(chain.key)
            elif self._busy_locked(chain.key):
                raise ChainAlreadyRunning(chain.key)
            new_thread = Thread(target=self._target(chain), name=f"chain-{chain.key}", daemon=True)
            self._threads[chain.key] = new_thread
            new_thread.start()
        logger.info(f"Dispatched chain {chain.name} on a background thread")

    def dispatch_later(self, chain: Chain, delay_seconds: float) -> None:
        timer = Timer(delay_seconds, self._fire_scheduled, args=(chain,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(chain.key, None)
            if previous is not None:
                previous.cancel()
            self._timers[chain.key] = timer
        timer.start()
        logger.info(f"Scheduled chain {chain.name} in {delay_seconds:.0f}s")

    def cancel_scheduled(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def wait(self, key: str, timeout: Optional[float] = None) -> Optional[ChainResult]:
        """Join the chain's thread and hand over its result, dropping it from the cache"""
        with self._lock:
            thread = self._threads.get(key)
        if thread is not None:
            thread.join(timeout)
        with self._lock:
            return self.results.pop(key)

    def _fire_scheduled(self, chain: Chain) -> None:
        with self._lock:
            if self._timers.get(chain.key) is current_thread():
                del self._timers[chain.key]
        try:
            self.dispatch(chain)
        except ChainAlreadyRunning:
            retry = settings.SCHEDULE_RETRY_SECONDS
            logger.warning(f"Chain {chain.name} is due but {chain.key} is busy, retrying in {retry}s")
            self.dispatch_later(chain, retry)

    def _target(self, chain: Chain) -> Callable[[], None]:
        def run() -> None:
            try:
                result = self.runner.run(chain)
            except Exception:
                logger.exception(f"Chain {chain.name} crashed")
                return
            with self._lock:
                self.results.put(chain.key, result)
        return run
