import asyncio

from flowrouter.services.side_effects import SideEffectRunner


class TestSideEffectRunner:
    def test_detached_failure_is_counted_not_raised(self):
        runner = SideEffectRunner()

        async def boom():
            raise RuntimeError("webhook down")

        async def scenario():
            await runner.run("webhook", boom(), context={"bot_id": "b"})
            assert runner.pending == 1
            await runner.drain(timeout=1)

        asyncio.run(scenario())
        assert runner.failures == 1
        assert runner.pending == 0

    def test_detached_success(self):
        runner = SideEffectRunner()
        done = []

        async def work():
            done.append(True)

        async def scenario():
            await runner.run("integration", work())
            await runner.drain(timeout=1)

        asyncio.run(scenario())
        assert done == [True]
        assert runner.completed == 1

    def test_serverless_awaits_inline(self):
        runner = SideEffectRunner(serverless=True)
        done = []

        async def work():
            done.append(True)

        async def scenario():
            await runner.run("webhook", work())
            return list(done)

        assert asyncio.run(scenario()) == [True]
        assert runner.completed == 1

    def test_serverless_timeout(self):
        runner = SideEffectRunner(serverless=True, await_timeout=0.01)

        async def slow():
            await asyncio.sleep(5)

        asyncio.run(runner.run("webhook", slow()))
        assert runner.failures == 1

    def test_drain_cancels_stragglers(self):
        runner = SideEffectRunner()

        async def slow():
            await asyncio.sleep(5)

        async def scenario():
            task = runner.spawn("slow", slow())
            await runner.drain(timeout=0.01)
            await asyncio.gather(task, return_exceptions=True)
            assert task.cancelled()

        asyncio.run(scenario())
        assert runner.pending == 0
        assert runner.failures == 0
