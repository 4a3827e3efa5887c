import threading

import pytest

from spvscan.chain import (
    Block,
    BlockHeader,
    BlockStamp,
    GetUtxoCancelled,
    InputWithScript,
    OutPoint,
    ShuttingDown,
    Transaction,
    TxIn,
    TxOut,
)
from spvscan.options import RescanOptions
from spvscan.utxoscanner import (
    GetUtxoRequest,
    RequestQueue,
    UtxoScanner,
    UtxoScannerConfig,
    _BatchSpendReporter,
    get_utxo,
)

SPENT_HASH = bytes.fromhex(
    "87a157f3fd88ac7907c05fc55e271dc4acdc5605d187d646604ca8c0e9382e03"
)[::-1]
PK_SCRIPT = b"76a91471d7dd96d9edda09180fe9d57a477b5acc9cad118"

SPENDING_TX = Transaction(
    inputs=[TxIn(OutPoint(SPENT_HASH, 0), b"\x49\x30")],
    outputs=[TxOut(556000000, b"\x76\xa9\x14" + bytes(20) + b"\x88\xac")],
)
CREATING_TX = Transaction(
    inputs=[TxIn(OutPoint(b"\x0b" * 32, 0), b"\x49\x31")],
    outputs=[TxOut(1000000, b"\x76\xa9\x14" + b"\x39" * 20 + b"\x88\xac")],
)
COINBASE = Transaction(
    inputs=[TxIn(OutPoint(bytes(32), 0xFFFFFFFF), b"\x04\x4c")],
    outputs=[TxOut(5000000000, b"\x41\xac")],
)
BLOCK_99999 = Block(BlockHeader(nonce=0xE80388B2), [COINBASE])
BLOCK_100000 = Block(
    BlockHeader(prev_block=BLOCK_99999.header.block_hash(), nonce=0x10572B0F),
    [COINBASE, SPENDING_TX, CREATING_TX],
)


def make_input():
    return InputWithScript(OutPoint(SPENT_HASH, 0), PK_SCRIPT)


class MockChain:
    def __init__(self):
        self.blocks = {}
        self.hashes = {}
        self.best = BlockStamp()

    def add(self, height, block):
        h = block.header.block_hash()
        self.hashes[height] = h
        self.blocks[h] = block

    def get_block(self, block_hash, **kw):
        return self.blocks.get(block_hash)

    def get_block_hash(self, height):
        return self.hashes.get(height)

    def best_snapshot(self):
        return self.best

    def block_filter_matches(self, options, block_hash):
        return True

    def config(self, **over):
        kw = dict(
            best_snapshot=self.best_snapshot,
            get_block_hash=self.get_block_hash,
            block_filter_matches=self.block_filter_matches,
            get_block=self.get_block,
        )
        kw.update(over)
        return UtxoScannerConfig(**kw)


def test_find_spends():
    height = 100000
    reqs = [GetUtxoRequest(input=make_input(), birth_height=height)]
    r = _BatchSpendReporter()
    assert len(r.notify_spends(BLOCK_100000, height)) == 0
    r.add_new_requests(reqs)
    spends = r.notify_spends(BLOCK_100000, height)
    assert len(spends) == 1
    assert spends[0].spending_tx == SPENDING_TX


def test_find_initial_transactions():
    height = 100000
    txid = CREATING_TX.tx_hash()
    for outpoint, expect_value in [
        (OutPoint(txid, 0), 1000000),
        (OutPoint(txid, 1), None),
        (OutPoint(bytes([txid[0] ^ 1]) + txid[1:], 0), None),
    ]:
        reqs = [GetUtxoRequest(input=InputWithScript(outpoint, PK_SCRIPT), birth_height=height)]
        found = _BatchSpendReporter().find_initial_transactions(BLOCK_100000, reqs, height)
        assert len(found) == 1
        if expect_value is None:
            assert found[outpoint] is None
        else:
            assert found[outpoint].output.value == expect_value


def test_request_queue_orders_by_height():
    q = RequestQueue()
    for h in (5, 2, 9, 2):
        q.push(GetUtxoRequest(input=make_input(), birth_height=h))
    assert len(q) == 4
    assert q.peek().birth_height == 2
    assert [q.pop().birth_height for _ in range(4)] == [2, 2, 5, 9]


def test_dequeue_at_height():
    scanner = UtxoScanner(MockChain().config())

    a = scanner.enqueue(make_input(), 100000)
    b = scanner.enqueue(make_input(), 100001)
    assert scanner.dequeue_at_height(100000) == [a]
    assert scanner.dequeue_at_height(100001) == [b]

    scanner.enqueue(make_input(), 100000)
    b = scanner.enqueue(make_input(), 100001)
    assert scanner.dequeue_at_height(100001) == [b]
    assert scanner.dequeue_at_height(100000) == []

    b = scanner.enqueue(make_input(), 100001)
    a = scanner.enqueue(make_input(), 100000)
    assert scanner.dequeue_at_height(100000) == [a]
    assert scanner.dequeue_at_height(100001) == [b]

    b = scanner.enqueue(make_input(), 100001)
    scanner.enqueue(make_input(), 100000)
    assert scanner.dequeue_at_height(100001) == [b]
    assert scanner.dequeue_at_height(100000) == []


def test_scan_basic():
    chain = MockChain()
    chain.add(100000, BLOCK_100000)
    chain.best = BlockStamp(height=100000)
    scanner = UtxoScanner(chain.config())
    scanner.start()
    try:
        report = scanner.enqueue(make_input(), 100000).result(None)
    finally:
        scanner.stop()
    assert report.spending_tx == SPENDING_TX
    assert report.spending_tx_height == 100000


def test_get_utxo_requires_one_input():
    scanner = UtxoScanner(MockChain().config())
    with pytest.raises(ValueError):
        get_utxo(scanner, RescanOptions())


def test_get_utxo_uses_start_height():
    chain = MockChain()
    chain.add(100000, BLOCK_100000)
    chain.best = BlockStamp(height=100000)
    scanner = UtxoScanner(chain.config())
    scanner.start()
    try:
        report = get_utxo(
            scanner,
            RescanOptions(watch_inputs=[make_input()], start_block=BlockStamp(height=100000)),
        )
    finally:
        scanner.stop()
    assert report.spending_tx == SPENDING_TX


def test_scan_add_blocks():
    chain = MockChain()
    chain.add(99999, BLOCK_99999)
    chain.add(100000, BLOCK_100000)
    chain.best = BlockStamp(height=99999)
    gate = threading.Semaphore(0)
    lock = threading.Lock()

    def best():
        gate.acquire()
        with lock:
            return chain.best_snapshot()

    scanner = UtxoScanner(chain.config(best_snapshot=best))
    scanner.start()
    try:
        req = scanner.enqueue(make_input(), 99999)
        gate.release()
        with lock:
            chain.best = BlockStamp(height=100000)
        gate.release()
        gate.release()
        report = req.result(None)
    finally:
        gate.release()
        scanner.stop()
    assert report.spending_tx == SPENDING_TX


def test_cancel_request():
    chain = MockChain()
    chain.add(100000, BLOCK_100000)
    chain.best = BlockStamp(height=100000)
    release = threading.Event()

    def blocking_get_block(block_hash, **kw):
        release.wait(5)
        raise LookupError("cannot fetch block")

    scanner = UtxoScanner(chain.config(get_block=blocking_get_block))
    scanner.start()
    a = scanner.enqueue(make_input(), 100000)
    b = scanner.enqueue(make_input(), 100001)

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(GetUtxoCancelled):
        a.result(cancel)

    stopper = threading.Thread(target=scanner.stop)
    stopper.start()
    with pytest.raises(ShuttingDown):
        b.result(None)
    release.set()
    stopper.join(5)
    assert not stopper.is_alive()
    with pytest.raises(ShuttingDown):
        scanner.enqueue(make_input(), 1)