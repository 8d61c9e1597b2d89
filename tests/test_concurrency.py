# -*- coding: utf-8 -*-
"""
tests/test_concurrency.py
写锁：同一 task 可重入，不同 task 互斥；并发 ingest 不丢行、不重复作者。
"""

import asyncio

from geohub.storage import Storage, WriteLock


def test_write_lock_is_reentrant_within_a_task():
    async def main():
        lock = WriteLock()
        async with lock:
            async with lock:
                assert lock.locked()
            assert lock.locked()
        assert not lock.locked()

    asyncio.run(main())


def test_write_lock_excludes_other_tasks():
    trace = []

    async def worker(lock, name):
        async with lock:
            trace.append(f"{name}-in")
            await asyncio.sleep(0)
            async with lock:
                await asyncio.sleep(0)
            trace.append(f"{name}-out")

    async def main():
        lock = WriteLock()
        await asyncio.gather(*(worker(lock, n) for n in "abc"))

    asyncio.run(main())
    # 每个 in 后面紧跟同名 out，不会交错
    assert len(trace) == 6
    for i in range(0, 6, 2):
        assert trace[i].split("-")[0] == trace[i + 1].split("-")[0]


def test_write_lock_released_on_error():
    async def main():
        lock = WriteLock()
        try:
            async with lock:
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert not lock.locked()
        async with lock:
            pass

    asyncio.run(main())


def test_concurrent_ingest(tmp_path, resolver, make_post):
    db_path = tmp_path / "geo.db"
    n = 60

    async def main():
        storage = await Storage.open(db_path, resolver)
        posts = [
            make_post(i, author_id=i % 7, lat=40.0 + (i % 5) * 0.1, lon=-75.0)
            for i in range(n)
        ]
        # 每条推文再投递一次，模拟重试
        results = await asyncio.gather(*(storage.ingest(p) for p in posts + posts))
        counts = await storage.counts()
        await storage.close()
        return results, counts

    results, counts = asyncio.run(main())
    assert all(results)
    assert counts["post"] == n
    assert counts["author"] == 7
