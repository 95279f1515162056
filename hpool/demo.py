"""Walk-through of the pool allocator's features."""

from __future__ import annotations

import argparse
import os
import struct
import sys
import tempfile
from typing import Optional, TextIO

from .palloc import (
    CLEANUP_FILE_SIZE,
    DECLINED,
    DEFAULT_POOL_SIZE,
    MAX_ALLOC_FROM_POOL,
    OK,
    Allocation,
    CleanupFile,
    Pool,
    PoolError,
    cleanup_file,
    delete_file,
)

_USER_LAYOUT = struct.Struct("<8si")
_USER_SIZE = 16
_NUMBERS_LAYOUT = struct.Struct("<4i")


def create_temp_file(prefix: str) -> tuple[int, str]:
    """Create a temporary file; return its descriptor and path."""
    return tempfile.mkstemp(prefix=prefix)


def write_text_file(fd: int, text: str) -> bool:
    """Write text to fd; return True if every byte was written."""
    data = text.encode()
    try:
        written = os.write(fd, data)
    except OSError:
        return False
    return written == len(data)


def _put_cstring(allocation: Allocation, text: str) -> None:
    allocation.write(text.encode()[: allocation.size - 1] + b"\0")


def _get_cstring(allocation: Allocation) -> str:
    return allocation.read().split(b"\0", 1)[0].decode()


def _status(freed: bool) -> int:
    return OK if freed else DECLINED


def run_demo(out: Optional[TextIO] = None) -> int:
    """Exercise every pool feature, reporting to out; return an exit status."""
    if out is None:
        out = sys.stdout

    def say(text: str) -> None:
        print(text, file=out)

    def section(title: str) -> None:
        say(f"\n== {title} ==")

    try:
        pool = Pool(DEFAULT_POOL_SIZE)
    except PoolError:
        say("create pool failed")
        return 1

    section("1. create pool")
    say("create pool ok")
    current = pool.blocks()[pool.current_index]
    say(f"addr(pool): {pool.address:#x}")
    say(f"addr(current.last): {current.last:#x}")
    say(f"addr(current.end): {current.end:#x}")

    section("2. small allocations")
    try:
        msg1 = pool.palloc(50)
        msg2 = pool.pnalloc(64)
        numbers = pool.pcalloc(_NUMBERS_LAYOUT.size)
        user = pool.palloc(_USER_SIZE)
    except PoolError:
        say("small allocation failed")
        pool.destroy()
        return 1

    say(f"addr(msg1): {msg1.address:#x}")
    say(f"addr(msg2): {msg2.address:#x}")
    say(f"addr(numbers): {numbers.address:#x}")
    say(f"addr(user): {user.address:#x}")

    _put_cstring(msg1, "I'am msg1 from palloc")
    _put_cstring(msg2, "I'am msg2 from pnalloc")
    numbers.write(_NUMBERS_LAYOUT.pack(*(i + 2 for i in range(4))))
    user.write(_USER_LAYOUT.pack(b"hp_pool", 26))

    say(f"palloc  -> {_get_cstring(msg1)}")
    say(f"pnalloc -> {_get_cstring(msg2)}")
    values = _NUMBERS_LAYOUT.unpack(numbers.read())
    say("pcalloc -> " + " ".join(str(value) for value in values))
    raw_name, age = _USER_LAYOUT.unpack(user.read(_USER_LAYOUT.size))
    name = raw_name.split(b"\0", 1)[0].decode()
    say(f"struct alloc -> name={name} age={age}")

    section("3. large allocations")
    large_size = MAX_ALLOC_FROM_POOL + 128
    try:
        large = pool.palloc(large_size)
        aligned = pool.pmemalign(128, 32)
    except PoolError:
        say("large allocation failed")
        pool.destroy()
        return 1

    say(f"palloc(large) -> ptr={large.address:#x} size={large_size}")
    say(f"pmemalign -> ptr={aligned.address:#x} ptr%32={aligned.address % 32}")
    say(f"pfree(large) -> {_status(pool.pfree(large))}")
    say(f"pfree(aligned) -> {_status(pool.pfree(aligned))}")
    say(
        f"pfree(msg1) -> {_status(pool.pfree(msg1))} "
        "(small block cannot be individually freed)"
    )

    section("4. cleanup hooks")
    generic = pool.cleanup_add(0)
    generic.handler = lambda data: say(f"generic cleanup: {data}")
    generic.data = "cleanup hook runs on destroy | reset"

    try:
        file_fd, file_path = create_temp_file("hpc")
    except OSError:
        say("create cleanup file failed")
        pool.destroy()
        return 1
    if not write_text_file(file_fd, "pool cleanup file\n"):
        say("write failed")

    file_cleanup = pool.cleanup_add(CLEANUP_FILE_SIZE)
    file_cleanup.data = CleanupFile(file_fd, file_path)
    file_cleanup.handler = cleanup_file
    say(f"run cleanup for fd={file_fd}, path={file_path}")
    pool.run_cleanup_file(file_fd)

    try:
        delete_fd, delete_path = create_temp_file("hpd")
    except OSError:
        say("create delete file failed")
        pool.destroy()
        return 1
    if not write_text_file(delete_fd, "pool delete file\n"):
        say("write failed")

    delete_cleanup = pool.cleanup_add(CLEANUP_FILE_SIZE)
    delete_cleanup.data = CleanupFile(delete_fd, delete_path)
    delete_cleanup.handler = delete_file
    say(f"registered delete cleanup for path={delete_path}")

    section("5. reset pool")
    say("reset pool and allocate again")
    pool.reset(False)
    try:
        msg1 = pool.palloc(32)
    except PoolError:
        say("alloc after reset failed")
        pool.destroy()
        return 1
    say(f"addr(msg1): {msg1.address:#x}")
    _put_cstring(msg1, "I am msg1 from after reset pool")
    say(f"after reset -> {_get_cstring(msg1)}")

    section("6. destroy pool")
    say("destroy pool")
    pool.destroy()

    say(f"delete file should now be removed: {delete_path}")
    say("done")
    return 0


def main(argv=None) -> int:
    """Command entry point: run the demonstration."""
    parser = argparse.ArgumentParser(
        prog="hpool", description="Demonstrate the memory pool allocator."
    )
    parser.parse_args(argv)
    return run_demo()


if __name__ == "__main__":
    raise SystemExit(main())