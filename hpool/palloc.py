"""Region-based memory pool: small bump allocations, large allocations and cleanups."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, NamedTuple, Optional

MAX_ALLOC_FROM_POOL = 4096 - 1
POOL_ALIGNMENT = 16
ALIGNMENT = 8
DEFAULT_POOL_SIZE = 16 * 1024

# Sizes of the bookkeeping records that live inside pool memory.
POOL_HEADER_SIZE = 64
POOL_DATA_SIZE = 32
LARGE_LINK_SIZE = 16
CLEANUP_SIZE = 24
CLEANUP_FILE_SIZE = 16

OK = 0
DECLINED = -5

_LARGE_SCAN_LIMIT = 5
_FAILED_LIMIT = 4


class PoolError(Exception):
    """Raised on invalid pool use or invalid allocation requests."""


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


class _AddressSpace:
    """Hands out simulated addresses honouring the requested alignment."""

    def __init__(self, start: int = 0x10000000) -> None:
        self._next = start

    def memalign(self, alignment: int, size: int) -> int:
        if alignment < 0 or alignment & (alignment - 1):
            raise PoolError(f"alignment {alignment} is not a power of two")
        alignment = max(alignment, ALIGNMENT)
        address = _align(self._next + ALIGNMENT, alignment)
        self._next = _align(address + size, POOL_ALIGNMENT)
        return address


class Allocation:
    """A region of memory handed out by a pool."""

    def __init__(self, address: int, size: int, buffer: memoryview, large: bool = False) -> None:
        self.address = address
        self.size = size
        self.large = large
        self.freed = False
        self._buffer = buffer

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        kind = "large" if self.large else "small"
        return f"Allocation({kind}, address={self.address:#x}, size={self.size})"

    def _view(self) -> memoryview:
        if self.freed:
            raise PoolError("allocation has been freed")
        return self._buffer

    def _check_range(self, offset: int, length: int) -> None:
        if offset < 0 or length < 0 or offset + length > self.size:
            raise PoolError(
                f"range {offset}..{offset + length} outside allocation of {self.size} bytes"
            )

    def zero(self) -> None:
        """Fill the whole allocation with zero bytes."""
        self._view()[:] = bytes(self.size)

    def write(self, data, offset: int = 0) -> None:
        """Copy bytes into the allocation starting at offset."""
        data = bytes(data)
        self._check_range(offset, len(data))
        self._view()[offset:offset + len(data)] = data

    def read(self, size: Optional[int] = None, offset: int = 0) -> bytes:
        """Return size bytes from offset (to the end by default)."""
        if size is None:
            size = self.size - offset
        self._check_range(offset, size)
        return bytes(self._view()[offset:offset + size])


@dataclass
class Cleanup:
    """A handler called with data when the pool is destroyed or cleanly reset."""

    handler: Optional[Callable[[Any], Any]] = None
    data: Any = None


@dataclass
class CleanupFile:
    """Data for the file cleanup handlers: a descriptor and its path."""

    fd: int
    name: str


class _BlockInfo(NamedTuple):
    address: int
    last: int
    end: int
    failed: int


@dataclass
class _Block:
    address: int
    memory: bytearray
    last: int
    failed: int = 0

    @property
    def end(self) -> int:
        return self.address + len(self.memory)

    def view(self, address: int, size: int) -> memoryview:
        start = address - self.address
        return memoryview(self.memory)[start:start + size]


@dataclass
class _LargeLink:
    alloc: Optional[Allocation]


class Pool:
    """A chain of fixed-size blocks with a list of large allocations and cleanups."""

    def __init__(self, size: int = DEFAULT_POOL_SIZE) -> None:
        if size < POOL_HEADER_SIZE:
            raise PoolError(f"pool size {size} is smaller than the pool header")
        self._space = _AddressSpace()
        address = self._space.memalign(POOL_ALIGNMENT, size)
        self._size = size
        self._blocks = [_Block(address, bytearray(size), address + POOL_HEADER_SIZE)]
        self.max = min(size - POOL_HEADER_SIZE, MAX_ALLOC_FROM_POOL)
        self._current = 0
        self._large: list[_LargeLink] = []
        self._cleanups: list[Cleanup] = []
        self._destroyed = False
        self.address = address

    @property
    def size(self) -> int:
        return self._size

    @property
    def current_index(self) -> int:
        """Index of the first block searched for small allocations."""
        return self._current

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def _check_alive(self) -> None:
        if self._destroyed:
            raise PoolError("pool has been destroyed")

    @staticmethod
    def _check_size(size: int) -> None:
        if size < 0:
            raise PoolError(f"negative allocation size {size}")

    def _run_cleanups(self) -> None:
        for cleanup in self._cleanups:
            if cleanup.handler is not None:
                cleanup.handler(cleanup.data)

    def _free_large(self) -> None:
        for link in self._large:
            if link.alloc is not None:
                link.alloc.freed = True

    def destroy(self) -> None:
        """Run every cleanup handler and release all memory."""
        self._check_alive()
        self._run_cleanups()
        self._free_large()
        self._blocks = []
        self._large = []
        self._cleanups = []
        self._destroyed = True

    def reset(self, clean: bool = False) -> None:
        """Release large allocations and rewind every block; run cleanups if clean."""
        self._check_alive()
        if clean:
            self._run_cleanups()
            self._cleanups = []
        self._free_large()
        for block in self._blocks:
            block.last = block.address + POOL_HEADER_SIZE
            block.failed = 0
        self._current = 0
        self._large = []

    def _palloc_block(self, size: int) -> Allocation:
        address = self._space.memalign(POOL_ALIGNMENT, self._size)
        start = _align(address + POOL_DATA_SIZE, ALIGNMENT)
        block = _Block(address, bytearray(self._size), start + size)
        chain = self._blocks[self._current:-1]
        for index, prior in enumerate(chain, start=self._current):
            if prior.failed > _FAILED_LIMIT:
                self._current = index + 1
            prior.failed += 1
        self._blocks.append(block)
        return Allocation(start, size, block.view(start, size))

    def _palloc_small(self, size: int, align: bool) -> Allocation:
        for block in self._blocks[self._current:]:
            start = _align(block.last, ALIGNMENT) if align else block.last
            if block.end - start >= size:
                block.last = start + size
                return Allocation(start, size, block.view(start, size))
        return self._palloc_block(size)

    def _alloc_large(self, alignment: int, size: int) -> Allocation:
        address = self._space.memalign(alignment, size)
        return Allocation(address, size, memoryview(bytearray(size)), large=True)

    def _link_large(self, allocation: Allocation) -> None:
        self._palloc_small(LARGE_LINK_SIZE, True)
        self._large.insert(0, _LargeLink(allocation))

    def _palloc_large(self, size: int) -> Allocation:
        allocation = self._alloc_large(ALIGNMENT, size)
        for link in self._large[:_LARGE_SCAN_LIMIT]:
            if link.alloc is None:
                link.alloc = allocation
                return allocation
        self._link_large(allocation)
        return allocation

    def palloc(self, size: int) -> Allocation:
        """Allocate size bytes, aligned."""
        self._check_alive()
        self._check_size(size)
        if size <= self.max:
            return self._palloc_small(size, True)
        return self._palloc_large(size)

    def pnalloc(self, size: int) -> Allocation:
        """Allocate size bytes without aligning small allocations."""
        self._check_alive()
        self._check_size(size)
        if size <= self.max:
            return self._palloc_small(size, False)
        return self._palloc_large(size)

    def pcalloc(self, size: int) -> Allocation:
        """Allocate size zeroed bytes."""
        allocation = self.palloc(size)
        allocation.zero()
        return allocation

    def pmemalign(self, size: int, alignment: int) -> Allocation:
        """Allocate a large region whose address is a multiple of alignment."""
        self._check_alive()
        self._check_size(size)
        allocation = self._alloc_large(alignment, size)
        self._link_large(allocation)
        return allocation

    def pfree(self, allocation: Allocation) -> bool:
        """Free a large allocation; return False if it is not one of this pool's."""
        self._check_alive()
        for link in self._large:
            if link.alloc is allocation:
                allocation.freed = True
                link.alloc = None
                return True
        return False

    def cleanup_add(self, size: int = 0) -> Cleanup:
        """Register a cleanup, optionally with size bytes of pool data."""
        self._check_alive()
        self.palloc(CLEANUP_SIZE)
        data = self.palloc(size) if size else None
        cleanup = Cleanup(handler=None, data=data)
        self._cleanups.insert(0, cleanup)
        return cleanup

    def run_cleanup_file(self, fd: int) -> None:
        """Run the file cleanup for fd now and disarm it."""
        self._check_alive()
        for cleanup in self._cleanups:
            if cleanup.handler is cleanup_file and cleanup.data.fd == fd:
                cleanup.handler(cleanup.data)
                cleanup.handler = None
                return

    def blocks(self) -> list[_BlockInfo]:
        """Snapshot of every block: address, fill position, end and failure count."""
        self._check_alive()
        return [_BlockInfo(b.address, b.last, b.end, b.failed) for b in self._blocks]

    def large_allocations(self) -> list[Allocation]:
        """Live large allocations, newest first."""
        self._check_alive()
        return [link.alloc for link in self._large if link.alloc is not None]

    def __enter__(self) -> Pool:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._destroyed:
            self.destroy()


def cleanup_file(data: CleanupFile) -> None:
    """Close the descriptor held by data."""
    try:
        os.close(data.fd)
    except OSError:
        print("close file failed", file=sys.stderr)


def delete_file(data: CleanupFile) -> None:
    """Close the descriptor held by data and remove its file."""
    try:
        os.close(data.fd)
    except OSError:
        print("close file failed", file=sys.stderr)
    try:
        os.unlink(data.name)
    except OSError:
        print("delete file failed", file=sys.stderr)