"""Batched scanning of the chain for the spentness of outpoints."""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from spvscan.chain import (
    Block,
    BlockStamp,
    GetUtxoCancelled,
    InputWithScript,
    OutPoint,
    ShuttingDown,
)
from spvscan.options import RescanOptions, SpendReport

log = logging.getLogger(__name__)

_POLL = 0.01


@dataclass(eq=False)
class GetUtxoRequest:
    """A request to find the spend of an input, scanning from birth_height."""

    input: InputWithScript
    birth_height: int
    quit: threading.Event = field(default_factory=threading.Event)
    _results: queue.Queue = field(
        default_factory=lambda: queue.Queue(maxsize=1), repr=False
    )
    _cached: tuple | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def deliver(self, report: SpendReport | None, error: BaseException | None) -> None:
        """Hand over a result without blocking; later duplicates are dropped."""
        try:
            self._results.put_nowait((report, error))
        except queue.Full:
            log.warning(
                "duplicate getutxo result delivered for outpoint=%s, spend=%s, err=%s",
                self.input.outpoint,
                report,
                error,
            )

    def result(self, cancel: threading.Event | None = None) -> SpendReport | None:
        """Wait for the spend report; raise the scan's error if it failed."""
        with self._lock:
            while True:
                if self._cached is not None:
                    report, error = self._cached
                    break
                try:
                    self._cached = self._results.get(timeout=_POLL)
                    continue
                except queue.Empty:
                    pass
                if cancel is not None and cancel.is_set():
                    raise GetUtxoCancelled()
                if self.quit.is_set():
                    raise ShuttingDown()
        if error is not None:
            raise error
        return report


class RequestQueue:
    """A priority queue of requests ordered by least birth height."""

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, GetUtxoRequest]] = []
        self._counter = itertools.count()

    def push(self, request: GetUtxoRequest) -> None:
        heapq.heappush(self._heap, (request.birth_height, next(self._counter), request))

    def pop(self) -> GetUtxoRequest:
        return heapq.heappop(self._heap)[2]

    def peek(self) -> GetUtxoRequest:
        return self._heap[0][2]

    def __len__(self) -> int:
        return len(self._heap)


@dataclass
class UtxoScannerConfig:
    """How the scanner reaches the chain."""

    best_snapshot: Callable[[], BlockStamp]
    get_block_hash: Callable[[int], bytes]
    block_filter_matches: Callable[[RescanOptions, bytes], bool]
    get_block: Callable[..., Block | None]


class _BatchSpendReporter:
    """Tracks the requests of one batch and delivers their results."""

    def __init__(self) -> None:
        self.requests: dict[OutPoint, list[GetUtxoRequest]] = {}
        self.initial: dict[OutPoint, SpendReport | None] = {}
        self.outpoints: dict[OutPoint, bytes] = {}
        self.filter_entries: list[bytes] = []

    def _rebuild_entries(self) -> None:
        self.filter_entries = []
        for outpoint, script in self.outpoints.items():
            self.filter_entries.extend([script, outpoint.serialize()])

    def add_new_requests(self, reqs: list[GetUtxoRequest]) -> None:
        for req in reqs:
            outpoint = req.input.outpoint
            self.requests.setdefault(outpoint, []).append(req)
            self.outpoints.setdefault(outpoint, req.input.pk_script)
        self._rebuild_entries()

    def find_initial_transactions(
        self, block: Block, reqs: list[GetUtxoRequest], height: int
    ) -> dict[OutPoint, SpendReport | None]:
        by_hash = {tx.tx_hash(): tx for tx in block.transactions}
        found: dict[OutPoint, SpendReport | None] = {}
        for req in reqs:
            outpoint = req.input.outpoint
            tx = by_hash.get(outpoint.hash)
            if tx is None or outpoint.index >= len(tx.outputs):
                found[outpoint] = None
            else:
                found[outpoint] = SpendReport(output=tx.outputs[outpoint.index])
        for outpoint, report in found.items():
            if self.initial.get(outpoint) is None:
                self.initial[outpoint] = report
        return found

    def notify_spends(self, block: Block, height: int) -> list[SpendReport]:
        spends: dict[OutPoint, SpendReport] = {}
        for tx in block.transactions:
            for index, tx_in in enumerate(tx.inputs):
                outpoint = tx_in.previous_outpoint
                if outpoint in self.outpoints and outpoint not in spends:
                    spends[outpoint] = SpendReport(
                        spending_tx=tx,
                        spending_input_index=index,
                        spending_tx_height=height,
                    )
        for outpoint, report in spends.items():
            for req in self.requests.pop(outpoint, []):
                req.deliver(report, None)
            self.outpoints.pop(outpoint, None)
            self.initial.pop(outpoint, None)
        if spends:
            self._rebuild_entries()
        return list(spends.values())

    def process_block(self, block: Block, new_reqs: list[GetUtxoRequest], height: int) -> None:
        if new_reqs:
            self.find_initial_transactions(block, new_reqs, height)
            self.add_new_requests(new_reqs)
        self.notify_spends(block, height)

    def fail_remaining(self, error: BaseException) -> BaseException:
        for reqs in self.requests.values():
            for req in reqs:
                req.deliver(None, error)
        self.requests.clear()
        self.outpoints.clear()
        self.initial.clear()
        self.filter_entries = []
        return error

    def notify_unspent_and_unfound(self) -> None:
        for outpoint, reqs in self.requests.items():
            for req in reqs:
                req.deliver(self.initial.get(outpoint), None)
        self.requests.clear()
        self.outpoints.clear()
        self.initial.clear()
        self.filter_entries = []


class UtxoScanner:
    """Batches UTXO lookups so that one pass over the chain serves many."""

    def __init__(self, config: UtxoScannerConfig) -> None:
        self.config = config
        self._pq = RequestQueue()
        self._next_batch: list[GetUtxoRequest] = []
        self._cv = threading.Condition()
        self._quit = threading.Event()
        self._shutdown = threading.Event()
        self._started = False
        self._stopped = False
        self._flag_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Begin running scan batches in a background thread."""
        with self._flag_lock:
            if self._started:
                return
            self._started = True
        self._thread = threading.Thread(target=self._batch_manager, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop scanning and fail every request still waiting in the queue."""
        with self._flag_lock:
            if self._stopped:
                return
            self._stopped = True
            started = self._started
        self._quit.set()
        if started:
            while not self._shutdown.wait(0.05):
                with self._cv:
                    self._cv.notify_all()
        with self._cv:
            while len(self._pq):
                self._pq.pop().deliver(None, ShuttingDown())

    def enqueue(self, input: InputWithScript, birth_height: int) -> GetUtxoRequest:
        """Queue a lookup for the input, found no earlier than birth_height."""
        log.debug("Enqueuing request for %s with birth height %d", input.outpoint, birth_height)
        req = GetUtxoRequest(input=input, birth_height=birth_height, quit=self._quit)
        with self._cv:
            if self._quit.is_set():
                raise ShuttingDown()
            self._pq.push(req)
            self._cv.notify()
        return req

    def _batch_manager(self) -> None:
        try:
            while True:
                with self._cv:
                    for req in self._next_batch:
                        self._pq.push(req)
                    self._next_batch = []
                    while not len(self._pq):
                        self._cv.wait(0.05)
                        if self._quit.is_set():
                            return
                    req = self._pq.peek()
                if self._quit.is_set():
                    return
                try:
                    self._scan_from_height(req.birth_height)
                except Exception as exc:
                    log.error("utxo scan failed: %s", exc)
        finally:
            self._shutdown.set()

    def dequeue_at_height(self, height: int) -> list[GetUtxoRequest]:
        """Take the requests born at height; older ones wait for the next batch."""
        with self._cv:
            while len(self._pq) and self._pq.peek().birth_height < height:
                self._next_batch.append(self._pq.pop())
            found = []
            while len(self._pq) and self._pq.peek().birth_height == height:
                found.append(self._pq.pop())
            return found

    def _scan_from_height(self, init_height: int) -> None:
        best = self.config.best_snapshot()
        start, end = init_height, best.height
        reporter = _BatchSpendReporter()

        while True:
            for height in range(start, end + 1):
                if self._quit.is_set():
                    raise reporter.fail_remaining(ShuttingDown())
                try:
                    block_hash = self.config.get_block_hash(height)
                except Exception as exc:
                    raise reporter.fail_remaining(exc)

                new_reqs = self.dequeue_at_height(height)
                if not new_reqs:
                    opts = RescanOptions(watch_list=list(reporter.filter_entries))
                    try:
                        matched = self.config.block_filter_matches(opts, block_hash)
                    except Exception as exc:
                        raise reporter.fail_remaining(exc)
                    if not matched:
                        continue

                if self._quit.is_set():
                    raise reporter.fail_remaining(ShuttingDown())
                log.debug("Fetching block height=%d", height)
                try:
                    block = self.config.get_block(block_hash)
                    if block is None:
                        raise LookupError(f"block at height {height} not found")
                except Exception as exc:
                    raise reporter.fail_remaining(exc)
                if self._quit.is_set():
                    raise reporter.fail_remaining(ShuttingDown())
                reporter.process_block(block, new_reqs, height)

            try:
                current = self.config.best_snapshot()
            except Exception as exc:
                raise reporter.fail_remaining(exc)
            if current.height > end:
                start, end = end + 1, current.height
                continue
            break

        reporter.notify_unspent_and_unfound()


def get_utxo(scanner: UtxoScanner, options: RescanOptions) -> SpendReport | None:
    """Look up the single watched input of the options and report its spentness."""
    if len(options.watch_inputs) != 1:
        raise ValueError("must pass exactly one OutPoint")
    height = options.start_block.height if options.start_block is not None else 0
    req = scanner.enqueue(options.watch_inputs[0], height)
    try:
        return req.result(options.quit)
    except Exception as exc:
        log.debug("Error finding spends for %s: %s", options.watch_inputs[0].outpoint, exc)
        raise