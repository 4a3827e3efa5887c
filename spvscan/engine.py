"""The rescan loop: walking the chain, matching filters and sending notifications."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable

from spvscan.chain import (
    ZERO_HASH,
    BlockConnected,
    BlockDisconnected,
    BlockHeader,
    BlockStamp,
    ChainSource,
    Filter,
    HashNotFound,
    RescanExit,
    Subscription,
    Transaction,
    derive_key,
)
from spvscan.options import RescanOptions, UpdateOptions

log = logging.getLogger(__name__)

BLOCK_RETRY_INTERVAL = 0.1
"""Seconds to wait before retrying a block whose filter could not be fetched."""

_POLL_INTERVAL = 0.05
_NOTHING = object()


def _hash_str(block_hash: bytes) -> str:
    return block_hash[::-1].hex()


def _after_start(start_time: datetime | None, header: BlockHeader) -> bool:
    """Return whether the header lies beyond the start-time horizon."""
    if start_time is None:
        return True
    return start_time < header.timestamp


@dataclass(frozen=True)
class BlockDetails:
    """Where a relevant transaction was found."""

    height: int
    hash: str
    time: int
    index: int = 0


def _notify_connected(
    options: RescanOptions,
    header: BlockHeader,
    stamp: BlockStamp,
    relevant_txs: list[Transaction] | None,
) -> None:
    if options.ntfn.on_filtered_block_connected is not None:
        options.ntfn.on_filtered_block_connected(stamp.height, header, relevant_txs)
    if options.ntfn.on_block_connected is not None:
        options.ntfn.on_block_connected(stamp.hash, stamp.height, header.timestamp)


def match_block_filter(
    options: RescanOptions, block_filter: Filter, block_hash: bytes
) -> bool:
    """Return whether the filter matches any item of the watch list."""
    return block_filter.match_any(derive_key(block_hash), options.watch_list)


def block_filter_matches(
    chain: ChainSource, options: RescanOptions, block_hash: bytes
) -> bool:
    """Fetch the block's filter and return whether it matches the watch list.

    A block that is no longer known to the chain never matches.
    """
    try:
        block_filter = chain.get_cfilter(block_hash, optimistic_batch=True)
    except HashNotFound:
        return False
    if block_filter is not None and block_filter.n != 0:
        return match_block_filter(options, block_filter, block_hash)
    return False


def extract_block_matches(
    chain: ChainSource, options: RescanOptions, stamp: BlockStamp
) -> list[Transaction]:
    """Fetch the block and return its transactions relevant to the rescan."""
    block = chain.get_block(stamp.hash, **options.query_options)
    if block is None:
        raise LookupError(
            f"Couldn't get block {stamp.height} ({_hash_str(stamp.hash)}) "
            "from network"
        )

    header = block.header
    block_hash = _hash_str(header.block_hash())
    block_time = int(header.timestamp.timestamp())

    relevant: list[Transaction] = []
    for index, tx in enumerate(block.transactions):
        details = BlockDetails(
            height=block.height, hash=block_hash, time=block_time, index=index
        )
        is_relevant = False

        if options.spends_watched_input(tx):
            is_relevant = True
            if options.ntfn.on_redeeming_tx is not None:
                options.ntfn.on_redeeming_tx(tx, details)

        # Always checked, since a match extends the watched inputs.
        if options.pays_watched_addr(tx):
            is_relevant = True
            if options.ntfn.on_recv_tx is not None:
                options.ntfn.on_recv_tx(tx, details)

        if is_relevant:
            relevant.append(tx)
    return relevant


def notify_block(
    chain: ChainSource,
    options: RescanOptions,
    header: BlockHeader,
    stamp: BlockStamp,
    scanning: bool,
) -> None:
    """Notify a connected block, fetching its filter when scanning."""
    relevant_txs: list[Transaction] | None = None
    if options.watch_list and scanning:
        if block_filter_matches(chain, options, stamp.hash):
            relevant_txs = extract_block_matches(chain, options, stamp)
    _notify_connected(options, header, stamp, relevant_txs)


def notify_block_with_filter(
    chain: ChainSource,
    options: RescanOptions,
    header: BlockHeader,
    stamp: BlockStamp,
    block_filter: Filter | None,
) -> None:
    """Notify a connected block whose filter the caller already holds."""
    relevant_txs: list[Transaction] | None = None
    if block_filter is not None:
        if match_block_filter(options, block_filter, stamp.hash):
            relevant_txs = extract_block_matches(chain, options, stamp)
    _notify_connected(options, header, stamp, relevant_txs)


class _Rescanner:
    """The state of one rescan as it walks and then follows the chain."""

    def __init__(
        self,
        chain: ChainSource,
        options: RescanOptions,
        updates: queue.Queue | None,
    ) -> None:
        self.chain = chain
        self.options = options
        self.updates = updates
        self.stamp = BlockStamp()
        self.header = BlockHeader()
        self.scanning = False
        self.current = False
        self.subscription: Subscription | None = None
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    # -- helpers -----------------------------------------------------------

    def _quitting(self) -> bool:
        return self.options.quit is not None and self.options.quit.is_set()

    def _poll_update(self) -> UpdateOptions | None:
        if self.updates is None:
            return None
        try:
            return self.updates.get_nowait()
        except queue.Empty:
            return None

    @staticmethod
    def _wait_notification(sub: Subscription) -> Any:
        try:
            return sub.notifications.get(timeout=_POLL_INTERVAL)
        except queue.Empty:
            return _NOTHING

    def _apply_update(self, update: UpdateOptions) -> bool:
        rewound, self.stamp, self.header = self.options.update_filter(
            self.chain, update, self.stamp, self.header
        )
        return rewound

    def _drop_subscription(self) -> None:
        with self._lock:
            sub, self.subscription = self.subscription, None
        if sub is not None:
            sub.cancel()

    # -- re-fetch timer ----------------------------------------------------

    @staticmethod
    def _schedule(action: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(BLOCK_RETRY_INTERVAL, action)
        timer.daemon = True
        timer.start()
        return timer

    def _stop_refetch_timer(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _reset_refetch_timer(self, header_tip: BlockHeader, height: int) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()

        log.info(
            "Setting timer to attempt to re-fetch filter for hash=%s, height=%d",
            _hash_str(header_tip.block_hash()),
            height,
        )

        def refetch() -> None:
            with self._lock:
                if self._timer is None:
                    return
                sub = self.subscription
                if sub is None:
                    # Not following notifications right now; try again later.
                    self._timer = self._schedule(refetch)
                    return
            log.info(
                "Resending rescan header for block hash=%s, height=%d",
                _hash_str(header_tip.block_hash()),
                height,
            )
            if not self._quitting():
                sub.notifications.put(BlockConnected(header_tip, height))

        with self._lock:
            self._timer = self._schedule(refetch)

    def _refetch_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    # -- setup -------------------------------------------------------------

    def _resolve_end(self) -> BlockStamp:
        end = self.options.end_block
        if end is None:
            return BlockStamp()
        if end.hash != ZERO_HASH:
            try:
                _, height = self.chain.get_block_header(end.hash)
            except Exception:
                end = replace(end, hash=ZERO_HASH)
            else:
                end = replace(end, height=height)
        if end.hash == ZERO_HASH and end.height != 0:
            try:
                header = self.chain.get_block_header_by_height(end.height)
            except Exception:
                end = BlockStamp()
            else:
                end = replace(end, hash=header.block_hash())
        return end

    def _resolve_start(self, start: BlockStamp) -> None:
        stamp = start
        header: BlockHeader | None = None
        if stamp.hash != ZERO_HASH:
            try:
                header, height = self.chain.get_block_header(stamp.hash)
            except Exception:
                stamp = replace(stamp, hash=ZERO_HASH)
            else:
                stamp = replace(stamp, height=height)
        if stamp.hash == ZERO_HASH:
            if stamp.height == 0:
                header = self.chain.genesis_header()
                stamp = replace(stamp, hash=header.block_hash())
            else:
                try:
                    header = self.chain.get_block_header_by_height(stamp.height)
                except Exception:
                    header = self.chain.genesis_header()
                    stamp = replace(stamp, hash=header.block_hash(), height=0)
                else:
                    stamp = replace(stamp, hash=header.block_hash())
        assert header is not None
        self.stamp = stamp
        self.header = header

    def _catch_up(self, best_height: int) -> None:
        log.debug(
            "Waiting to catch up to the rescan start height=%d from height=%d",
            self.stamp.height,
            best_height,
        )
        sub = self.chain.subscribe(best_height)
        pending: list[UpdateOptions] = []
        try:
            while True:
                if self._quitting():
                    raise RescanExit()
                update = self._poll_update()
                if update is not None:
                    pending.append(update)
                    continue
                ntfn = self._wait_notification(sub)
                if ntfn is _NOTHING:
                    continue
                if ntfn is None:
                    raise RuntimeError(
                        "rescan block subscription was canceled while "
                        "waiting to catch up"
                    )
                if isinstance(ntfn, BlockConnected) and ntfn.height >= self.stamp.height:
                    break
        finally:
            sub.cancel()

        for update in pending:
            self._apply_update(update)

    # -- notification handlers -----------------------------------------------

    def _handle_connected(self, ntfn: BlockConnected) -> None:
        header = ntfn.header
        block_hash = header.block_hash()
        if header.prev_block != self.stamp.hash and block_hash != self.stamp.hash:
            self.current = False
            raise ValueError(
                f"out of order block {_hash_str(block_hash)}: expected "
                f"PrevBlock {_hash_str(self.stamp.hash)}, got "
                f"{_hash_str(header.prev_block)}"
            )

        try:
            self.chain.get_filter_header_by_height(self.stamp.height + 1)
            missing_filter_header = False
        except Exception:
            missing_filter_header = True
        if block_hash != self.stamp.hash and missing_filter_header:
            log.warning(
                "Missing filter header for height=%d, skipping",
                self.stamp.height + 1,
            )
            return

        # A retried block must not advance the position twice.
        if self.stamp.hash != block_hash:
            self.header = header
            self.stamp = replace(
                self.stamp,
                hash=block_hash,
                height=self.stamp.height + 1,
                timestamp=header.timestamp,
            )

        log.debug(
            "Rescan got block %d (%s)", self.stamp.height, _hash_str(self.stamp.hash)
        )

        if not self.scanning:
            self.scanning = _after_start(self.options.start_time, self.header)

        if not self.scanning or not self.options.watch_list:
            _notify_connected(self.options, self.header, self.stamp, None)
            return

        try:
            block_filter = self.chain.get_cfilter(self.stamp.hash, num_retries=0)
        except HashNotFound:
            # Likely mid re-org; handled like a missing filter.
            block_filter = None
        except Exception as exc:
            raise RuntimeError(
                f"unable to get filter for hash={_hash_str(self.stamp.hash)}: {exc}"
            ) from exc

        if block_filter is None:
            self._reset_refetch_timer(header, self.stamp.height)
            return

        notify_block_with_filter(
            self.chain, self.options, self.header, self.stamp, block_filter
        )
        self._stop_refetch_timer()

    def _handle_disconnected(self, ntfn: BlockDisconnected) -> None:
        log.debug(
            "Rescan disconnect block %d (%s)",
            self.stamp.height,
            _hash_str(self.stamp.hash),
        )
        if ntfn.header.block_hash() != self.stamp.hash:
            return

        ntfn_handlers = self.options.ntfn
        if ntfn_handlers.on_filtered_block_disconnected is not None:
            ntfn_handlers.on_filtered_block_disconnected(self.stamp.height, self.header)
        if ntfn_handlers.on_block_disconnected is not None:
            ntfn_handlers.on_block_disconnected(
                self.stamp.hash, self.stamp.height, self.header.timestamp
            )

        self.header = ntfn.chain_tip
        self.stamp = replace(
            self.stamp,
            hash=self.header.block_hash(),
            height=self.stamp.height - 1,
        )

        if self._refetch_pending():
            self._reset_refetch_timer(self.header, self.stamp.height)

    # -- main loop -----------------------------------------------------------

    def _follow(self) -> None:
        if self._quitting():
            raise RescanExit()

        update = self._poll_update()
        if update is not None:
            if self._apply_update(update):
                log.debug(
                    "Rewound to block %d (%s), no longer current",
                    self.stamp.height,
                    _hash_str(self.stamp.hash),
                )
                self.current = False
                self._drop_subscription()
            return

        sub = self.subscription
        assert sub is not None
        ntfn = self._wait_notification(sub)
        if ntfn is _NOTHING:
            return
        if ntfn is None:
            raise RuntimeError("rescan block subscription was canceled")

        if isinstance(ntfn, BlockConnected):
            handler: Callable[[Any], None] = self._handle_connected
        elif isinstance(ntfn, BlockDisconnected):
            handler = self._handle_disconnected
        else:
            log.warning(
                "Received unhandled block notification: %s", type(ntfn).__name__
            )
            return

        try:
            handler(ntfn)
        except Exception as exc:
            log.error("Unable to process %s: %s", ntfn, exc)

    def _walk(self) -> None:
        while (update := self._poll_update()) is not None:
            self._apply_update(update)

        best = self.chain.best_block()
        next_height = self.stamp.height + 1
        if next_height > best.height:
            log.debug(
                "Rescan became current at %d (%s), subscribing to block "
                "notifications",
                self.stamp.height,
                _hash_str(self.stamp.hash),
            )
            self.current = True
            self._drop_subscription()
            try:
                sub = self.chain.subscribe(self.stamp.height)
            except Exception as exc:
                raise RuntimeError(
                    f"unable to register block subscription: {exc}"
                ) from exc
            with self._lock:
                self.subscription = sub
            return

        header = self.chain.get_block_header_by_height(next_height)
        self.header = header
        self.stamp = replace(self.stamp, height=next_height, hash=header.block_hash())

        if not self.scanning:
            self.scanning = _after_start(self.options.start_time, header)
        notify_block(self.chain, self.options, header, self.stamp, self.scanning)

    def _reached(self, end: BlockStamp) -> bool:
        return self.stamp.hash == end.hash or (
            end.height > 0 and self.stamp.height == end.height
        )

    def run(self) -> None:
        options = self.options
        options.build_watch_list()

        end = self._resolve_end()
        options.end_block = end
        if options.quit is None and end.height == 0:
            raise ValueError(
                "Rescan request must specify a quit channel or valid end block"
            )

        if options.start_block is None:
            options.start_block = self.chain.best_block()
        self._resolve_start(options.start_block)

        best = self.chain.best_block()
        if best.height < self.stamp.height:
            self._catch_up(best.height)

        log.debug(
            "Starting rescan from known block %d (%s)",
            self.stamp.height,
            _hash_str(self.stamp.hash),
        )

        self.scanning = _after_start(options.start_time, self.header)

        try:
            while not self._reached(end):
                if self.current:
                    self._follow()
                else:
                    self._walk()
        finally:
            self._stop_refetch_timer()
            self._drop_subscription()


def rescan(
    chain: ChainSource,
    options: RescanOptions,
    updates: queue.Queue | None = None,
) -> None:
    """Walk the chain from the start block, notifying as options describe.

    ``updates`` carries UpdateOptions from another thread. The call returns
    once the end block is reached and raises RescanExit when ``options.quit``
    is set while following the chain tip.
    """
    _Rescanner(chain, options, updates).run()