"""Chain primitives, compact block filters and the chain source interface."""

from __future__ import annotations

import hashlib
import queue
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator

HASH_SIZE = 32
ZERO_HASH = bytes(HASH_SIZE)
EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

DEFAULT_P = 19
DEFAULT_M = 784931
KEY_SIZE = 16

_MASK64 = (1 << 64) - 1


class RescanExit(Exception):
    """Raised when an ongoing rescan exits because it was asked to quit."""

    def __init__(self, message: str = "rescan exited") -> None:
        super().__init__(message)


class ShuttingDown(Exception):
    """Raised when a request is abandoned because its owner is shutting down."""

    def __init__(self, message: str = "shutting down") -> None:
        super().__init__(message)


class GetUtxoCancelled(Exception):
    """Raised when the caller cancels a pending UTXO lookup."""

    def __init__(self, message: str = "get utxo request cancelled") -> None:
        super().__init__(message)


class HashNotFound(LookupError):
    """Raised when a block hash is unknown to the chain source."""


def _double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def _check_hash(value: bytes, what: str) -> None:
    if len(value) != HASH_SIZE:
        raise ValueError(f"{what} must be {HASH_SIZE} bytes, got {len(value)}")


@dataclass(frozen=True)
class OutPoint:
    """A reference to one output of a previous transaction."""

    hash: bytes
    index: int

    def __post_init__(self) -> None:
        _check_hash(self.hash, "outpoint hash")

    def serialize(self) -> bytes:
        """Return the wire encoding: the hash followed by the index."""
        return self.hash + struct.pack("<I", self.index)

    def __str__(self) -> str:
        return f"{self.hash[::-1].hex()}:{self.index}"


@dataclass(frozen=True)
class InputWithScript:
    """A watched outpoint together with the script of the output it names."""

    outpoint: OutPoint
    pk_script: bytes


@dataclass(frozen=True)
class BlockStamp:
    """A position in the chain."""

    height: int = 0
    hash: bytes = ZERO_HASH
    timestamp: datetime | None = None


@dataclass(frozen=True)
class BlockHeader:
    """An 80-byte block header."""

    version: int = 1
    prev_block: bytes = ZERO_HASH
    merkle_root: bytes = ZERO_HASH
    timestamp: datetime = EPOCH
    bits: int = 0
    nonce: int = 0

    def __post_init__(self) -> None:
        _check_hash(self.prev_block, "previous block hash")
        _check_hash(self.merkle_root, "merkle root")

    def serialize(self) -> bytes:
        """Return the 80-byte wire encoding of the header."""
        return struct.pack(
            "<i32s32sIII",
            self.version,
            self.prev_block,
            self.merkle_root,
            int(self.timestamp.timestamp()),
            self.bits,
            self.nonce,
        )

    def block_hash(self) -> bytes:
        """Return the double-SHA256 hash of the header."""
        return _double_sha256(self.serialize())


@dataclass(frozen=True)
class TxIn:
    """A transaction input."""

    previous_outpoint: OutPoint
    signature_script: bytes = b""
    sequence: int = 0xFFFFFFFF


@dataclass(frozen=True)
class TxOut:
    """A transaction output."""

    value: int
    pk_script: bytes


@dataclass(frozen=True)
class Transaction:
    """A transaction with its inputs and outputs."""

    inputs: tuple[TxIn, ...] = ()
    outputs: tuple[TxOut, ...] = ()
    version: int = 1
    lock_time: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))

    def serialize(self) -> bytes:
        """Return the wire encoding of the transaction."""
        parts = [struct.pack("<i", self.version), _varint(len(self.inputs))]
        for tx_in in self.inputs:
            parts.append(tx_in.previous_outpoint.serialize())
            parts.append(_varint(len(tx_in.signature_script)))
            parts.append(tx_in.signature_script)
            parts.append(struct.pack("<I", tx_in.sequence))
        parts.append(_varint(len(self.outputs)))
        for tx_out in self.outputs:
            parts.append(struct.pack("<q", tx_out.value))
            parts.append(_varint(len(tx_out.pk_script)))
            parts.append(tx_out.pk_script)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    def tx_hash(self) -> bytes:
        """Return the double-SHA256 hash of the serialized transaction."""
        return _double_sha256(self.serialize())


@dataclass(frozen=True)
class Block:
    """A block; the height is -1 when it is not known."""

    header: BlockHeader
    transactions: tuple[Transaction, ...] = ()
    height: int = -1

    def __post_init__(self) -> None:
        object.__setattr__(self, "transactions", tuple(self.transactions))


@dataclass(frozen=True)
class BlockConnected:
    """Notification that a block was connected to the chain tip."""

    header: BlockHeader
    height: int


@dataclass(frozen=True)
class BlockDisconnected:
    """Notification that a block was disconnected; chain_tip is the new tip."""

    header: BlockHeader
    height: int
    chain_tip: BlockHeader


@dataclass
class Subscription:
    """An ordered stream of block notifications.

    A ``None`` placed in ``notifications`` marks the stream as closed.
    """

    notifications: queue.Queue = field(default_factory=queue.Queue)
    on_cancel: Callable[[], None] | None = None
    _cancelled: bool = field(default=False, init=False, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop the subscription; the cancel callback runs at most once."""
        if self._cancelled:
            return
        self._cancelled = True
        if self.on_cancel is not None:
            self.on_cancel()


@dataclass(frozen=True)
class Address:
    """A pay-to-pubkey-hash or pay-to-script-hash address."""

    hash160: bytes
    script_hash: bool = False

    def __post_init__(self) -> None:
        if len(self.hash160) != 20:
            raise ValueError(
                f"address hash must be 20 bytes, got {len(self.hash160)}"
            )

    @property
    def pk_script(self) -> bytes:
        """The output script that pays to this address."""
        if self.script_hash:
            return b"\xa9\x14" + self.hash160 + b"\x87"
        return b"\x76\xa9\x14" + self.hash160 + b"\x88\xac"


def derive_key(block_hash: bytes) -> bytes:
    """Return the filter key for a block: the first 16 bytes of its hash."""
    _check_hash(block_hash, "block hash")
    return block_hash[:KEY_SIZE]


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK64


def _siphash(k0: int, k1: int, data: bytes) -> int:
    v0 = k0 ^ 0x736F6D6570736575
    v1 = k1 ^ 0x646F72616E646F6D
    v2 = k0 ^ 0x6C7967656E657261
    v3 = k1 ^ 0x7465646279746573

    def rounds(count: int) -> None:
        nonlocal v0, v1, v2, v3
        for _ in range(count):
            v0 = (v0 + v1) & _MASK64
            v1 = _rotl(v1, 13) ^ v0
            v0 = _rotl(v0, 32)
            v2 = (v2 + v3) & _MASK64
            v3 = _rotl(v3, 16) ^ v2
            v0 = (v0 + v3) & _MASK64
            v3 = _rotl(v3, 21) ^ v0
            v2 = (v2 + v1) & _MASK64
            v1 = _rotl(v1, 17) ^ v2
            v2 = _rotl(v2, 32)

    whole = len(data) - len(data) % 8
    for offset in range(0, whole, 8):
        (word,) = struct.unpack_from("<Q", data, offset)
        v3 ^= word
        rounds(2)
        v0 ^= word
    last = ((len(data) & 0xFF) << 56) | int.from_bytes(data[whole:], "little")
    v3 ^= last
    rounds(2)
    v0 ^= last
    v2 ^= 0xFF
    rounds(4)
    return v0 ^ v1 ^ v2 ^ v3


def _hashed_values(key: bytes, items: Iterable[bytes], modulus: int) -> list[int]:
    if len(key) != KEY_SIZE:
        raise ValueError(f"filter key must be {KEY_SIZE} bytes, got {len(key)}")
    k0, k1 = struct.unpack("<QQ", key)
    return [(_siphash(k0, k1, item) * modulus) >> 64 for item in items]


class _BitReader:
    def __init__(self, data: bytes) -> None:
        self._value = int.from_bytes(data, "big")
        self._remaining = len(data) * 8

    def read_bits(self, count: int) -> int:
        if count > self._remaining:
            raise ValueError("filter data is truncated")
        self._remaining -= count
        return (self._value >> self._remaining) & ((1 << count) - 1)


@dataclass(frozen=True)
class Filter:
    """A Golomb-coded set of items keyed by a block hash."""

    n: int
    p: int
    m: int
    data: bytes

    def __post_init__(self) -> None:
        if self.p > 32:
            raise ValueError("P is too big to fit in a 32-bit value")
        if self.n < 0:
            raise ValueError("N must not be negative")

    @classmethod
    def build(
        cls,
        key: bytes,
        items: Iterable[bytes],
        p: int = DEFAULT_P,
        m: int = DEFAULT_M,
    ) -> Filter:
        """Build a filter holding the given items under the given key."""
        items = list(items)
        values = sorted(_hashed_values(key, items, len(items) * m))
        bits = 0
        count = 0
        previous = 0
        for value in values:
            delta = value - previous
            previous = value
            quotient = delta >> p
            bits = (bits << (quotient + 1)) | (((1 << quotient) - 1) << 1)
            bits = (bits << p) | (delta & ((1 << p) - 1))
            count += quotient + 1 + p
        padding = -count % 8
        bits <<= padding
        data = bits.to_bytes((count + padding) // 8, "big")
        return cls(n=len(items), p=p, m=m, data=data)

    def _values(self) -> Iterator[int]:
        reader = _BitReader(self.data)
        value = 0
        for _ in range(self.n):
            quotient = 0
            while reader.read_bits(1):
                quotient += 1
            value += (quotient << self.p) | reader.read_bits(self.p)
            yield value

    def match_any(self, key: bytes, items: Iterable[bytes]) -> bool:
        """Return whether any of the items is probably in the filter."""
        items = list(items)
        if not items or self.n == 0:
            return False
        targets = iter(sorted(set(_hashed_values(key, items, self.n * self.m))))
        target: Any = next(targets)
        for value in self._values():
            while target < value:
                target = next(targets, None)
                if target is None:
                    return False
            if target == value:
                return True
        return False

    def match(self, key: bytes, item: bytes) -> bool:
        """Return whether the item is probably in the filter."""
        return self.match_any(key, [item])


class ChainSource(ABC):
    """What a rescan needs to know about the chain it follows."""

    @abstractmethod
    def genesis_header(self) -> BlockHeader:
        """Return the header of the genesis block."""

    @abstractmethod
    def best_block(self) -> BlockStamp:
        """Return the best block with both header and filter header known."""

    @abstractmethod
    def get_block_header_by_height(self, height: int) -> BlockHeader:
        """Return the header at the given height."""

    @abstractmethod
    def get_block_header(self, block_hash: bytes) -> tuple[BlockHeader, int]:
        """Return the header with the given hash and its height."""

    @abstractmethod
    def get_block(self, block_hash: bytes, **query_options: Any) -> Block | None:
        """Return the block with the given hash."""

    @abstractmethod
    def get_filter_header_by_height(self, height: int) -> bytes:
        """Return the filter header at the given height."""

    @abstractmethod
    def get_cfilter(self, block_hash: bytes, **query_options: Any) -> Filter | None:
        """Return the regular filter of the block with the given hash."""

    @abstractmethod
    def subscribe(self, best_height: int) -> Subscription:
        """Subscribe to block notifications, with a backlog from best_height."""