import threading

import pytest

from spvscan.chain import (
    BlockHeader,
    BlockStamp,
    ChainSource,
    HashNotFound,
    RescanExit,
    Subscription,
)
from spvscan.options import NotificationHandlers, RescanOptions
from spvscan.rescan import Rescan


class FakeChain(ChainSource):
    def __init__(self, length):
        headers = [BlockHeader(nonce=0)]
        for i in range(1, length + 1):
            headers.append(BlockHeader(prev_block=headers[-1].block_hash(), nonce=i))
        self.headers = headers
        self.by_hash = {h.block_hash(): i for i, h in enumerate(headers)}

    def genesis_header(self):
        return self.headers[0]

    def best_block(self):
        top = len(self.headers) - 1
        return BlockStamp(height=top, hash=self.headers[top].block_hash())

    def get_block_header_by_height(self, height):
        if height >= len(self.headers):
            raise HashNotFound(height)
        return self.headers[height]

    def get_block_header(self, block_hash):
        if block_hash not in self.by_hash:
            raise HashNotFound(block_hash)
        h = self.by_hash[block_hash]
        return self.headers[h], h

    def get_block(self, block_hash, **query_options):
        return None

    def get_filter_header_by_height(self, height):
        return bytes(32)

    def get_cfilter(self, block_hash, **query_options):
        return None

    def subscribe(self, best_height):
        return Subscription()


def recording_handlers(log):
    return NotificationHandlers(
        on_block_connected=lambda h, height, t: log.append(("bc", height)),
        on_filtered_block_connected=lambda height, hdr, txs: log.append(("fc", height)),
    )


def test_one_shot_rescan_notifies_each_block():
    chain = FakeChain(5)
    log = []
    opts = RescanOptions(
        ntfn=recording_handlers(log),
        start_block=BlockStamp(height=0),
        end_block=BlockStamp(height=3),
    )
    r = Rescan(chain, opts)
    assert r.start().result(timeout=5) is None
    r.wait_for_shutdown()
    assert log == [(k, h) for h in (1, 2, 3) for k in ("fc", "bc")]


def test_start_twice_fails():
    chain = FakeChain(2)
    opts = RescanOptions(start_block=BlockStamp(height=0), end_block=BlockStamp(height=2))
    r = Rescan(chain, opts)
    r.start().result(timeout=5)
    with pytest.raises(RuntimeError, match="already started"):
        r.start().result(timeout=5)


def test_update_after_finish_fails():
    chain = FakeChain(2)
    opts = RescanOptions(start_block=BlockStamp(height=0), end_block=BlockStamp(height=2))
    r = Rescan(chain, opts)
    r.start().result(timeout=5)
    r.wait_for_shutdown()
    with pytest.raises(RuntimeError, match="already done"):
        r.update(rewind=1)


def test_missing_quit_and_end_is_error():
    chain = FakeChain(2)
    opts = RescanOptions(start_block=BlockStamp(height=0), end_block=None)
    r = Rescan(chain, opts)
    with pytest.raises(ValueError):
        r.start().result(timeout=5)


def test_quit_ends_rescan_with_rescan_exit():
    chain = FakeChain(2)
    quit_event = threading.Event()
    quit_event.set()
    log = []
    opts = RescanOptions(
        ntfn=recording_handlers(log),
        start_block=BlockStamp(height=0),
        end_block=None,
        quit=quit_event,
    )
    r = Rescan(chain, opts)
    with pytest.raises(RescanExit):
        r.start().result(timeout=5)
    assert [h for k, h in log if k == "bc"] == [1, 2]
    with pytest.raises(RescanExit):
        r.update(rewind=1)