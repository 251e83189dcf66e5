from flowrouter.schemas.telegram import TelegramCallbackQuery, TelegramUpdate, TelegramUser


class TestTelegramUpdateParsing:
    def test_parse_message_with_contact(self):
        raw = {
            "update_id": 123456789,
            "message": {
                "message_id": 100,
                "date": 1702000000,
                "chat": {"id": 111222333, "type": "private"},
                "from": {"id": 111222333, "is_bot": False, "first_name": "Ann", "language_code": "en"},
                "contact": {"phone_number": "+15550001111", "first_name": "Ann", "user_id": 111222333},
            },
        }

        update = TelegramUpdate(**raw)

        assert update.message.contact.phone_number == "+15550001111"
        assert update.message.contact.user_id == 111222333
        assert update.sender.language_code == "en"
        assert update.chat_id == 111222333

    def test_unknown_fields_kept(self):
        raw = {
            "update_id": 1,
            "message_reaction": {"chat": {"id": 1}},
            "message": {"message_id": 1, "chat": {"id": 5}, "text": "hi", "via_bot": {"id": 9}},
        }

        update = TelegramUpdate(**raw)

        assert update.model_extra["message_reaction"] == {"chat": {"id": 1}}
        assert update.message.model_extra["via_bot"] == {"id": 9}

    def test_callback_query(self):
        raw = {
            "update_id": 2,
            "callback_query": {
                "id": "query_123",
                "from": {"id": 42, "first_name": "Ann"},
                "message": {"message_id": 7, "chat": {"id": -100, "type": "group"}},
                "data": "broadcast:bm-1:menu",
            },
        }

        update = TelegramUpdate(**raw)

        assert update.callback_query.data == "broadcast:bm-1:menu"
        assert update.sender.id == 42
        assert update.chat_id == -100

    def test_callback_without_message_uses_sender_chat(self):
        callback = TelegramCallbackQuery(id="q", data="menu", **{"from": TelegramUser(id=42)})
        update = TelegramUpdate(update_id=3, callback_query=callback)
        assert update.chat_id == 42

    def test_reply_to_message(self):
        raw = {
            "update_id": 4,
            "message": {
                "message_id": 2,
                "chat": {"id": 5},
                "text": "yes",
                "reply_to_message": {"message_id": 1, "chat": {"id": 5}, "text": "Sale today"},
            },
        }

        update = TelegramUpdate(**raw)

        assert update.message.reply_to_message.message_id == 1

    def test_empty_update(self):
        update = TelegramUpdate(update_id=5)
        assert update.sender is None
        assert update.chat_id is None
