from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class TelegramChat(BaseModel):
    id: int
    type: str = "private"  # private, group, supergroup, channel
    title: Optional[str] = None
    username: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class TelegramContact(BaseModel):
    phone_number: str
    first_name: str = ""
    last_name: Optional[str] = None
    user_id: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class TelegramMessage(BaseModel):
    message_id: int
    date: int = 0
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")  # "from" is reserved in Python
    text: Optional[str] = None
    caption: Optional[str] = None
    contact: Optional[TelegramContact] = None
    reply_to_message: Optional["TelegramMessage"] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class TelegramCallbackQuery(BaseModel):
    id: str
    from_user: TelegramUser = Field(alias="from")
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None  # callback_data from button

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None

    model_config = ConfigDict(extra="allow")

    @property
    def sender(self) -> Optional[TelegramUser]:
        if self.callback_query is not None:
            return self.callback_query.from_user
        if self.message is not None:
            return self.message.from_user
        return None

    @property
    def chat_id(self) -> Optional[int]:
        if self.message is not None:
            return self.message.chat.id
        if self.callback_query is not None and self.callback_query.message is not None:
            return self.callback_query.message.chat.id
        if self.callback_query is not None:
            return self.callback_query.from_user.id
        return None


class WebhookAck(BaseModel):
    ok: bool
    error: Optional[str] = None
    detail: Optional[Any] = None
