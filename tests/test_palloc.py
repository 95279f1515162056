import os

import pytest

from hpool.palloc import (
    ALIGNMENT,
    DEFAULT_POOL_SIZE,
    MAX_ALLOC_FROM_POOL,
    POOL_ALIGNMENT,
    POOL_DATA_SIZE,
    POOL_HEADER_SIZE,
    CleanupFile,
    Pool,
    PoolError,
    cleanup_file,
    delete_file,
)


def _register(pool, calls, label):
    cleanup = pool.cleanup_add(0)
    cleanup.handler = calls.append
    cleanup.data = label
    return cleanup


def test_default_pool_caps_small_size():
    pool = Pool()
    assert pool.max == MAX_ALLOC_FROM_POOL
    assert pool.size == DEFAULT_POOL_SIZE


def test_small_pool_max_is_remaining_space():
    assert Pool(128).max == 128 - POOL_HEADER_SIZE


def test_pool_smaller_than_header_rejected():
    with pytest.raises(PoolError):
        Pool(POOL_HEADER_SIZE - 1)


def test_pool_address_aligned():
    assert Pool().address % POOL_ALIGNMENT == 0


def test_first_allocation_follows_header():
    pool = Pool()
    allocation = pool.palloc(10)
    assert allocation.address == pool.address + POOL_HEADER_SIZE


def test_palloc_aligns_each_allocation():
    pool = Pool()
    first = pool.palloc(3)
    second = pool.palloc(5)
    assert second.address % ALIGNMENT == 0
    assert second.address == first.address + ALIGNMENT


def test_pnalloc_does_not_align():
    pool = Pool()
    first = pool.pnalloc(3)
    second = pool.pnalloc(5)
    assert second.address == first.address + 3


def test_write_read_round_trip():
    allocation = Pool().palloc(16)
    allocation.write(b"hello", 4)
    assert allocation.read(5, 4) == b"hello"
    assert len(allocation.read()) == 16


def test_write_out_of_bounds():
    allocation = Pool().palloc(4)
    with pytest.raises(PoolError):
        allocation.write(b"hello")


def test_read_out_of_bounds():
    allocation = Pool().palloc(4)
    with pytest.raises(PoolError):
        allocation.read(4, 2)


def test_negative_size_rejected():
    with pytest.raises(PoolError):
        Pool().palloc(-1)


def test_pcalloc_zeroes_reused_memory():
    pool = Pool()
    first = pool.palloc(32)
    first.write(b"\xff" * 32)
    pool.reset()
    second = pool.pcalloc(32)
    assert second.address == first.address
    assert second.read() == bytes(32)


def test_palloc_after_reset_sees_old_contents():
    pool = Pool()
    first = pool.palloc(32)
    first.write(b"\xff" * 32)
    pool.reset()
    second = pool.palloc(32)
    assert second.read() == b"\xff" * 32


def test_exhausted_block_chains_new_block():
    pool = Pool(256)
    pool.palloc(150)
    second = pool.palloc(150)
    blocks = pool.blocks()
    assert len(blocks) == 2
    assert second.address == blocks[1].address + POOL_DATA_SIZE
    assert blocks[1].last == second.address + 150


def test_repeated_failures_advance_current_block():
    pool = Pool(128)
    for _ in range(10):
        pool.palloc(pool.max)
    assert pool.current_index > 0
    assert pool.blocks()[0].failed > 4
    pool.reset()
    assert pool.current_index == 0
    assert len(pool.blocks()) == 10
    assert all(block.failed == 0 for block in pool.blocks())
    assert all(b.last == b.address + POOL_HEADER_SIZE for b in pool.blocks())


def test_large_allocation_tracked_and_freed():
    pool = Pool()
    big = pool.palloc(MAX_ALLOC_FROM_POOL + 1)
    assert big.large
    assert pool.large_allocations() == [big]
    assert pool.pfree(big) is True
    assert pool.pfree(big) is False
    assert pool.large_allocations() == []
    with pytest.raises(PoolError):
        big.read()


def test_pfree_declines_small_allocation():
    pool = Pool()
    small = pool.palloc(8)
    small.write(b"abc")
    assert pool.pfree(small) is False
    assert small.read(3) == b"abc"


def test_large_link_reused_after_free():
    pool = Pool()
    first = pool.palloc(MAX_ALLOC_FROM_POOL + 1)
    pool.pfree(first)
    used = pool.blocks()[0].last
    second = pool.palloc(MAX_ALLOC_FROM_POOL + 1)
    assert pool.blocks()[0].last == used
    assert pool.large_allocations() == [second]


@pytest.mark.parametrize("alignment", [16, 32, 64, 256])
def test_pmemalign_respects_alignment(alignment):
    pool = Pool()
    allocation = pool.pmemalign(128, alignment)
    assert allocation.address % alignment == 0
    assert allocation in pool.large_allocations()


def test_pmemalign_rejects_non_power_of_two():
    with pytest.raises(PoolError):
        Pool().pmemalign(128, 3)


def test_reset_releases_large_allocations():
    pool = Pool()
    big = pool.palloc(MAX_ALLOC_FROM_POOL + 10)
    pool.reset()
    assert big.freed
    assert pool.large_allocations() == []


def test_cleanups_run_newest_first_on_destroy():
    calls = []
    pool = Pool()
    registered = [_register(pool, calls, label) for label in ("a", "b", "c")]
    assert registered[0].handler == calls.append
    assert not pool.destroyed
    pool.destroy()
    assert pool.destroyed
    assert calls == ["c", "b", "a"]


def test_cleanup_add_allocates_data():
    cleanup = Pool().cleanup_add(40)
    assert cleanup.data.size == 40
    assert cleanup.handler is None


def test_reset_with_clean_runs_and_clears_cleanups():
    calls = []
    pool = Pool()
    _register(pool, calls, "x")
    pool.palloc(64)
    pool.reset(clean=True)
    assert calls == ["x"]
    assert pool.current_index == 0
    assert pool.blocks()[0].last == pool.address + POOL_HEADER_SIZE
    pool.destroy()
    assert pool.destroyed
    assert calls == ["x"]


def test_reset_without_clean_keeps_cleanups():
    calls = []
    pool = Pool()
    _register(pool, calls, "x")
    pool.palloc(64)
    pool.reset(False)
    assert calls == []
    assert pool.current_index == 0
    assert pool.blocks()[0].last == pool.address + POOL_HEADER_SIZE
    pool.destroy()
    assert pool.destroyed
    assert calls == ["x"]


def test_destroyed_pool_rejects_use():
    pool = Pool()
    pool.destroy()
    with pytest.raises(PoolError):
        pool.palloc(8)
    with pytest.raises(PoolError):
        pool.destroy()


def test_context_manager_destroys_pool():
    calls = []
    with Pool() as pool:
        _register(pool, calls, "ctx")
    assert calls == ["ctx"]
    assert pool.destroyed


def test_run_cleanup_file_closes_matching_descriptor(tmp_path):
    path = tmp_path / "f"
    fd = os.open(path, os.O_CREAT | os.O_WRONLY)
    pool = Pool()
    cleanup = pool.cleanup_add(16)
    cleanup.data = CleanupFile(fd, str(path))
    cleanup.handler = cleanup_file
    pool.run_cleanup_file(fd)
    assert cleanup.handler is None
    with pytest.raises(OSError):
        os.fstat(fd)
    assert path.exists()
    pool.destroy()


def test_run_cleanup_file_ignores_other_descriptors(tmp_path):
    path = tmp_path / "g"
    fd = os.open(path, os.O_CREAT | os.O_WRONLY)
    pool = Pool()
    cleanup = pool.cleanup_add(16)
    cleanup.data = CleanupFile(fd, str(path))
    cleanup.handler = cleanup_file
    pool.run_cleanup_file(fd + 1000)
    assert cleanup.handler is cleanup_file
    assert os.fstat(fd).st_size == 0
    pool.destroy()
    with pytest.raises(OSError):
        os.fstat(fd)


def test_delete_file_removes_on_destroy(tmp_path):
    path = tmp_path / "h"
    fd = os.open(path, os.O_CREAT | os.O_WRONLY)
    pool = Pool()
    cleanup = pool.cleanup_add(16)
    cleanup.data = CleanupFile(fd, str(path))
    cleanup.handler = delete_file
    pool.destroy()
    assert not path.exists()


def test_cleanup_file_reports_close_failure(capsys):
    cleanup_file(CleanupFile(-1, "missing"))
    assert "failed" in capsys.readouterr().err