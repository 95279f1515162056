# hpool

`hpool` is a region-style memory pool. Small allocations come out of
fixed-size blocks that the pool chains together as they fill up. Larger
allocations are kept separately and can be released one at a time. When the
pool is destroyed, or reset with `clean=True`, the cleanup hooks registered on
it run.

## Installing

```
pip install .
```

## Using the pool

```python
from hpool.palloc import Pool

with Pool(16 * 1024) as pool:
    msg = pool.palloc(50)             # aligned small allocation
    raw = pool.pnalloc(64)            # unaligned small allocation
    nums = pool.pcalloc(16)           # zero-filled allocation

    msg.write(b"hello")
    print(msg.read(5))                # b'hello'

    big = pool.palloc(8192)           # larger than the small-block limit
    aligned = pool.pmemalign(128, 32) # 128 bytes at a multiple of 32
    pool.pfree(big)                   # True: large allocations can be freed

    hook = pool.cleanup_add(0)
    hook.handler = lambda data: print("pool cleaned up")
```

`Pool(size)` defaults to 16 KiB per block. Requests up to `pool.max` bytes
(at most 4095) are served from the blocks. Larger requests become separate
large allocations.

Every allocation is an `Allocation` object with `address`, `size` and
`large` attributes. It also has these methods:

- `write(data, offset=0)` copies bytes in.
- `read(size=None, offset=0)` returns bytes.
- `zero()` fills the allocation with zero bytes.

Reading or writing outside the allocation raises `PoolError`. So does using
an allocation that has been freed.

`Pool.pfree(allocation)` frees a large allocation and returns `True`. For
anything else, such as a small allocation, it returns `False` and changes
nothing.

Leaving the `with` block calls `Pool.destroy()` if the pool is still alive.
`destroy()` runs every cleanup handler and then releases the pool's memory.
`Pool.reset(clean=False)` keeps the blocks the pool already has and starts
allocating from their beginning again. It also frees the large allocations.
When `clean` is true it runs the cleanup handlers and drops them.

`PoolError` is raised in these cases:

- any call on a destroyed pool;
- a negative allocation size;
- a `pmemalign` alignment that is not a power of two;
- a pool size smaller than the pool header.

### File cleanups

`CleanupFile(fd, name)` pairs an open file descriptor with a path. Register
it by calling `Pool.cleanup_add(size)` and setting the returned `Cleanup`'s
`data` to the `CleanupFile`. Then set its `handler` to one of these:

- `cleanup_file` closes the descriptor when the pool goes away.
- `delete_file` closes the descriptor and also removes the file.

Failures are reported on standard error. `Pool.run_cleanup_file(fd)` runs the
matching `cleanup_file` hook straight away and disarms it.

### Inspecting a pool

`Pool.blocks()` returns one entry per block. Each entry holds the block's
`address`, its fill position `last`, its `end` and its `failed` count.
`Pool.large_allocations()` lists the live large allocations, newest first.

## Limits

The pool manages Python byte buffers. The addresses it reports are simulated
and only reflect the layout and alignment rules. They are not real process
memory, and nothing here hands memory to native code.

## Demo

```
hpool
```

The demo walks through these steps:

1. creating a pool;
2. making small and large allocations;
3. registering cleanup hooks for temporary files;
4. resetting the pool;
5. destroying it.

It prints each step to standard output. The same walk-through is available
from Python as `hpool.demo.run_demo(out)`.