"""A long-running rescan in its own thread, with an updatable filter."""

from __future__ import annotations

import queue
import threading
from concurrent.futures import Future
from dataclasses import replace
from typing import Iterable

from spvscan.chain import Address, ChainSource, InputWithScript, RescanExit
from spvscan.engine import rescan
from spvscan.options import RescanOptions, UpdateOptions


def _fresh_options(options: RescanOptions) -> RescanOptions:
    return replace(
        options,
        watch_addrs=list(options.watch_addrs),
        watch_inputs=list(options.watch_inputs),
        watch_list=list(options.watch_list),
        query_options=dict(options.query_options),
    )


class Rescan:
    """A rescan that runs in a background thread and accepts filter updates."""

    def __init__(self, chain: ChainSource, options: RescanOptions) -> None:
        self.chain = chain
        self.options = options
        self._updates: queue.Queue = queue.Queue()
        self._running = threading.Event()
        self._started = False
        self._start_lock = threading.Lock()
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> Future:
        """Start the rescan; the future completes when it ends."""
        outcome: Future = Future()
        with self._start_lock:
            if self._started:
                outcome.set_exception(RuntimeError("Rescan already started"))
                return outcome
            self._started = True

        def run() -> None:
            error: BaseException | None = None
            try:
                rescan(self.chain, _fresh_options(self.options), self._updates)
            except BaseException as exc:  # delivered through the future
                error = exc
            self._error = error
            self._running.set()
            if error is None:
                outcome.set_result(None)
            else:
                outcome.set_exception(error)

        self._thread = threading.Thread(target=run, daemon=True)
        self._thread.start()
        return outcome

    def update(
        self,
        addrs: Iterable[Address] = (),
        inputs: Iterable[InputWithScript] = (),
        rewind: int = 0,
        disable_disconnected_ntfns: bool = False,
    ) -> None:
        """Send a filter update, with an optional rewind, to the running rescan."""
        if self.options.quit is not None and self.options.quit.is_set():
            raise RescanExit()
        if self._running.is_set():
            message = "Rescan is already done and cannot be updated."
            if self._error is not None:
                message += f" It returned error: {self._error}"
            raise RuntimeError(message)
        self._updates.put(
            UpdateOptions(
                addrs=list(addrs),
                inputs=list(inputs),
                rewind=rewind,
                disable_disconnected_ntfns=disable_disconnected_ntfns,
            )
        )

    def wait_for_shutdown(self) -> None:
        """Wait until the rescan thread has exited."""
        if self._thread is not None:
            self._thread.join()