import asyncio

from conftest import BOT_ID

from flowrouter.services.pending_input import PendingInput, PendingKind, pending_key


class TestPendingInputTracker:
    def test_set_and_get(self, pending_tracker, fake_redis):
        async def scenario():
            await pending_tracker.set(BOT_ID, 42, PendingKind.CONTACT, "thanks", "menu")
            return await pending_tracker.get(BOT_ID, 42)

        pending = asyncio.run(scenario())

        assert pending.kind == PendingKind.CONTACT
        assert pending.target_state == "thanks"
        assert pending.origin_state == "menu"
        assert fake_redis.expirations[pending_key(BOT_ID, 42)] == 3600

    def test_clear(self, pending_tracker):
        async def scenario():
            await pending_tracker.set(BOT_ID, 42, PendingKind.EMAIL, "done", "ask_email")
            await pending_tracker.clear(BOT_ID, 42)
            return await pending_tracker.get(BOT_ID, 42)

        assert asyncio.run(scenario()) is None

    def test_users_are_independent(self, pending_tracker):
        async def scenario():
            await pending_tracker.set(BOT_ID, 1, PendingKind.EMAIL, "done", "ask_email")
            return await pending_tracker.get(BOT_ID, 2)

        assert asyncio.run(scenario()) is None

    def test_malformed_entry_ignored(self, pending_tracker, fake_redis):
        fake_redis.data[pending_key(BOT_ID, 42)] = '{"kind": "fax", "target_state": "x"}'
        assert asyncio.run(pending_tracker.get(BOT_ID, 42)) is None

    def test_to_dict_round_trip(self):
        pending = PendingInput(PendingKind.EMAIL, "done", "ask_email", 12.5)
        assert pending.to_dict()["kind"] == "email"
        assert PendingInput.from_dict(pending.to_dict()) == pending
