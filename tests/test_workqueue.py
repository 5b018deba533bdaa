import asyncio

from istio_ingress_sidekick.workqueue import WorkQueue


def test_key_is_queued_once():
    async def scenario():
        queue = WorkQueue()
        queue.add("default/a")
        queue.add("default/a")
        queue.add("default/b")
        assert len(queue) == 2
        assert await queue.get() == "default/a"
        assert await queue.get() == "default/b"

    asyncio.run(scenario())


def test_key_added_while_processing_waits_for_done():
    async def scenario():
        queue = WorkQueue()
        queue.add("default/a")
        key = await queue.get()

        queue.add(key)
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == key

    asyncio.run(scenario())


def test_rate_limited_backoff():
    async def scenario():
        queue = WorkQueue(base_delay=0.01, max_delay=0.04)
        delays = [queue.add_rate_limited("default/a") for _ in range(4)]
        assert delays == [0.01, 0.02, 0.04, 0.04]
        assert queue.num_requeues("default/a") == 4

        assert await asyncio.wait_for(queue.get(), timeout=1) == "default/a"
        queue.forget("default/a")
        assert queue.num_requeues("default/a") == 0
        queue.shutdown()

    asyncio.run(scenario())


def test_shutdown_cancels_pending_retries():
    async def scenario():
        queue = WorkQueue()
        queue.add_after("default/a", 0.05)
        queue.shutdown()
        await asyncio.sleep(0.1)
        assert len(queue) == 0

    asyncio.run(scenario())
