"""Rescan settings, update requests and filter bookkeeping."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from spvscan.chain import (
    Address,
    BlockHeader,
    BlockStamp,
    ChainSource,
    InputWithScript,
    OutPoint,
    Transaction,
    TxOut,
)


@dataclass
class NotificationHandlers:
    """Callbacks a rescan calls as it walks the chain; any may be None."""

    on_block_connected: Callable[[bytes, int, datetime], None] | None = None
    on_block_disconnected: Callable[[bytes, int, datetime], None] | None = None
    on_filtered_block_connected: (
        Callable[[int, BlockHeader, list[Transaction] | None], None] | None
    ) = None
    on_filtered_block_disconnected: Callable[[int, BlockHeader], None] | None = None
    on_recv_tx: Callable[[Transaction, Any], None] | None = None
    on_redeeming_tx: Callable[[Transaction, Any], None] | None = None


@dataclass
class UpdateOptions:
    """An update to a running rescan's filter, with an optional rewind."""

    addrs: list[Address] = field(default_factory=list)
    inputs: list[InputWithScript] = field(default_factory=list)
    tx_ids: list[bytes] = field(default_factory=list)
    rewind: int = 0
    disable_disconnected_ntfns: bool = False


@dataclass
class SpendReport:
    """The spentness of an output: who spent it, or the output itself."""

    spending_tx: Transaction | None = None
    spending_input_index: int = 0
    spending_tx_height: int = 0
    output: TxOut | None = None


@dataclass
class RescanOptions:
    """The settings of one rescan and the items it watches for."""

    query_options: dict[str, Any] = field(default_factory=dict)
    ntfn: NotificationHandlers = field(default_factory=NotificationHandlers)
    start_time: datetime | None = None
    start_block: BlockStamp | None = None
    end_block: BlockStamp | None = field(default_factory=BlockStamp)
    watch_addrs: list[Address] = field(default_factory=list)
    watch_inputs: list[InputWithScript] = field(default_factory=list)
    watch_list: list[bytes] = field(default_factory=list)
    tx_idx: int = 0
    quit: threading.Event | None = None

    def _watch_address(self, addr: Address) -> None:
        self.watch_list.append(addr.pk_script)

    def _watch_input(self, watched: InputWithScript) -> None:
        self.watch_list.append(watched.pk_script)
        self.watch_list.append(watched.outpoint.serialize())

    def build_watch_list(self) -> list[bytes]:
        """Add the scripts and outpoints of the watched items to the watch list."""
        for addr in self.watch_addrs:
            self._watch_address(addr)
        for watched in self.watch_inputs:
            self._watch_input(watched)
        return self.watch_list

    def update_filter(
        self,
        chain: ChainSource,
        update: UpdateOptions,
        stamp: BlockStamp,
        header: BlockHeader,
    ) -> tuple[bool, BlockStamp, BlockHeader]:
        """Extend the filter and rewind to the update's height if it is set.

        Returns whether any block was disconnected, and the new position.
        """
        self.watch_addrs.extend(update.addrs)
        self.watch_inputs.extend(update.inputs)
        for addr in update.addrs:
            self._watch_address(addr)
        for watched in update.inputs:
            self._watch_input(watched)
        self.watch_list.extend(bytes(txid) for txid in update.tx_ids)

        rewound = False
        if update.rewind == 0:
            return rewound, stamp, header

        notify = not update.disable_disconnected_ntfns
        while stamp.height > update.rewind:
            if notify and self.ntfn.on_block_disconnected is not None:
                self.ntfn.on_block_disconnected(
                    stamp.hash, stamp.height, header.timestamp
                )
            if notify and self.ntfn.on_filtered_block_disconnected is not None:
                self.ntfn.on_filtered_block_disconnected(stamp.height, header)
            rewound = True

            header, height = chain.get_block_header(header.prev_block)
            stamp = replace(stamp, height=height, hash=header.block_hash())

        return rewound, stamp, header

    def spends_watched_input(self, tx: Transaction) -> bool:
        """Return whether the transaction spends a watched outpoint."""
        watched = {item.outpoint for item in self.watch_inputs}
        return any(tx_in.previous_outpoint in watched for tx_in in tx.inputs)

    def pays_watched_addr(self, tx: Transaction) -> bool:
        """Return whether the transaction pays a watched address.

        Every matching output is watched from then on so that its spend
        is found too.
        """
        any_match = False
        for index, tx_out in enumerate(tx.outputs):
            if not any(tx_out.pk_script == a.pk_script for a in self.watch_addrs):
                continue
            any_match = True
            created = InputWithScript(
                outpoint=OutPoint(tx.tx_hash(), index),
                pk_script=tx_out.pk_script,
            )
            self.watch_inputs.append(created)
            self._watch_input(created)
        return any_match