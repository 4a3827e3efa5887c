# spvscan

Rescans and UTXO spend lookups for a light blockchain client that works from
compact block filters.

The package has no runtime dependencies. It is made of these modules:

- `spvscan.chain` holds the chain types: `OutPoint`, `BlockHeader`,
  `Transaction`, `Block`, `Address` and `BlockStamp`. It also holds the
  Golomb-coded `Filter`, the `ChainSource` interface, block `Subscription`s
  with their `BlockConnected` and `BlockDisconnected` notifications, and the
  exceptions `RescanExit`, `ShuttingDown`, `GetUtxoCancelled` and
  `HashNotFound`.
- `spvscan.options` holds `RescanOptions`, `NotificationHandlers`,
  `UpdateOptions` and `SpendReport`.
- `spvscan.engine` holds `rescan()`, the loop that walks the chain and
  sends notifications.
- `spvscan.rescan` holds `Rescan`, which runs a rescan in a background
  thread and takes filter updates while it runs.
- `spvscan.utxoscanner` holds `UtxoScanner` and `get_utxo()`. They find out
  whether an output has been spent, and put many lookups into one pass over
  the chain.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Supplying chain data

Every piece of chain data comes from objects you supply.

### For a rescan

Subclass `spvscan.chain.ChainSource` and implement these methods:

| Method | What it returns |
| --- | --- |
| `genesis_header()` | the genesis header |
| `best_block()` | a `BlockStamp` |
| `get_block_header_by_height(height)` | a header |
| `get_block_header(block_hash)` | `(header, height)` |
| `get_block(block_hash, **query_options)` | a `Block` or `None` |
| `get_filter_header_by_height(height)` | a filter header |
| `get_cfilter(block_hash, **query_options)` | a `Filter` or `None` |
| `subscribe(best_height)` | a `Subscription` |

A lookup that fails should raise an exception. A `Filter` lookup for a block
the chain no longer knows should raise `HashNotFound`.

A `Subscription` delivers notifications in order through its
`notifications` queue. Put `BlockConnected` and `BlockDisconnected` objects
on that queue. Putting `None` on it marks the stream as closed. The rescan
calls `cancel()` on a subscription when it has finished with it, and that
call runs the subscription's `on_cancel` callback at most once.

### For a UTXO scanner

A `UtxoScanner` takes a `UtxoScannerConfig` that holds four callables:

- `best_snapshot()` returns a `BlockStamp`.
- `get_block_hash(height)` returns a block hash.
- `block_filter_matches(options, block_hash)` returns whether the block's
  filter matches `options.watch_list`. You can use
  `spvscan.engine.block_filter_matches` for this.
- `get_block(block_hash)` returns a `Block`.

## Running a rescan

```python
import threading

from spvscan.chain import BlockStamp
from spvscan.options import NotificationHandlers, RescanOptions
from spvscan.rescan import Rescan

handlers = NotificationHandlers(
    on_block_connected=lambda block_hash, height, timestamp: print("connected", height),
    on_recv_tx=lambda tx, details: print("received in block", details.height),
)
quit_event = threading.Event()
options = RescanOptions(
    watch_addrs=[address],
    ntfn=handlers,
    start_block=BlockStamp(height=1095),
    quit=quit_event,
)

scan = Rescan(chain, options)
outcome = scan.start()          # a concurrent.futures.Future
...
scan.update(addrs=[other_address], rewind=1095)
...
quit_event.set()
scan.wait_for_shutdown()
outcome.result()                # raises RescanExit after a quit
```

How a rescan behaves:

- **Start point.** The rescan starts after `start_block`. The hash is
  resolved first, then the height. A height of 0 means the genesis block.
  Without a `start_block`, the rescan starts from the chain's best block.
  If the chain has not yet reached the start height, the rescan waits for
  it.
- **Start time.** Filters are matched only from the first block whose
  timestamp is later than `start_time`.
- **Catching up.** The rescan walks the chain block by block up to the best
  block. After that it follows the subscription. It calls
  `on_filtered_block_connected` / `on_block_connected` for connected blocks
  and the matching disconnected handlers for blocks that a reorganisation
  removes.
- **Relevant transactions.** A transaction that spends a watched input
  triggers `on_redeeming_tx`. A transaction that pays a watched address
  triggers `on_recv_tx`. Each output paid to a watched address is watched as
  an input from then on.
- **Missing filters.** If a filter cannot be fetched while following the
  tip, the block is retried after `engine.BLOCK_RETRY_INTERVAL` seconds.
- **Stopping.** The rescan stops when it reaches `end_block`, or raises
  `RescanExit` once `quit` is set. It needs a resolvable end block, a quit
  event, or both. Without either, the future fails with `ValueError`.
- **Updates.** `Rescan.update` adds addresses and inputs. It can also rewind
  to a given height, and `disable_disconnected_ntfns=True` silences the
  disconnect notifications during that rewind. If the quit event is set,
  `update` raises `RescanExit`. If the rescan has already ended, it raises
  `RuntimeError`. `start` may be called only once. A second call returns a
  future that holds a `RuntimeError`.

`spvscan.engine.rescan(chain, options, updates)` runs the same loop in the
calling thread. `updates` is an optional `queue.Queue` of `UpdateOptions`.

## Checking whether an output is spent

```python
from spvscan.chain import BlockStamp, InputWithScript
from spvscan.options import RescanOptions
from spvscan.utxoscanner import UtxoScanner, get_utxo

scanner = UtxoScanner(config)
scanner.start()
options = RescanOptions(
    watch_inputs=[InputWithScript(outpoint, pk_script)],
    start_block=BlockStamp(height=100000),
)
report = get_utxo(scanner, options)
scanner.stop()
```

`get_utxo` raises `ValueError` unless the options watch exactly one input.
The scan starts at the start block's height, or at 0 if there is none.

The result takes one of three forms:

- If the output was spent, the `SpendReport` holds `spending_tx`,
  `spending_input_index` and `spending_tx_height`.
- If the output is still unspent and was found in the block at the start
  height, the report holds the `output`.
- If the output was not found there, the result is `None`.

A lookup can also raise:

- `GetUtxoCancelled` when `options.quit` is set;
- `ShuttingDown` when the scanner stops;
- the chain callables' own error when one of them fails.

The lower-level API is also available. `UtxoScanner.enqueue(input,
birth_height)` returns a `GetUtxoRequest`. Its `result(cancel)` method
waits for the outcome.

## What this package does not do

This package does not talk to peers, download or store headers, or check
filter headers. It reads everything through the `ChainSource` and
`UtxoScannerConfig` objects you give it. It has no command-line program.