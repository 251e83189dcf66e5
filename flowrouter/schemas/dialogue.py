"""Declarative dialogue definitions: states, buttons, media and side-effect configs."""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from flowrouter.exceptions import DefinitionError

DEFINITION_VERSION = 1

MAX_STATES = 50
MAX_BUTTONS_PER_STATE = 10
MAX_MESSAGE_LENGTH = 4096
MAX_BUTTON_TEXT_LENGTH = 64
MAX_STATE_KEY_LENGTH = 100

MAX_URL_LENGTH = 2048
MAX_CAPTION_LENGTH = 1024
MIN_MEDIA_GROUP = 2
MAX_MEDIA_GROUP = 10

MAX_WEBHOOK_HEADERS = 10
MAX_WEBHOOK_HEADER_VALUE_LENGTH = 512
MAX_WEBHOOK_RETRY_COUNT = 3
MAX_WEBHOOK_TIMEOUT_MS = 10000


class ParseMode(str, Enum):
    HTML = "HTML"
    MARKDOWN = "Markdown"
    MARKDOWN_V2 = "MarkdownV2"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _check_http_url(value: str, *, https_only: bool = False) -> str:
    value = value.strip()
    if len(value) > MAX_URL_LENGTH:
        raise ValueError(f"url longer than {MAX_URL_LENGTH} characters")
    allowed = ("https://",) if https_only else ("https://", "http://")
    if not value.startswith(allowed):
        raise ValueError("url must use " + (" or ".join(prefix.rstrip(":/") for prefix in allowed)))
    return value


class NavigationButton(_Model):
    type: Literal["navigation"] = "navigation"
    text: str = Field(min_length=1, max_length=MAX_BUTTON_TEXT_LENGTH)
    next_state: str = Field(alias="nextState", min_length=1)


class UrlButton(_Model):
    type: Literal["url"]
    text: str = Field(min_length=1, max_length=MAX_BUTTON_TEXT_LENGTH)
    url: str

    @field_validator("url")
    @classmethod
    def _valid_url(cls, value: str) -> str:
        return _check_http_url(value)


class RequestContactButton(_Model):
    type: Literal["request_contact"]
    text: str = Field(min_length=1, max_length=MAX_BUTTON_TEXT_LENGTH)
    next_state: str = Field(alias="nextState", min_length=1)


class RequestEmailButton(_Model):
    type: Literal["request_email"]
    text: str = Field(min_length=1, max_length=MAX_BUTTON_TEXT_LENGTH)
    next_state: str = Field(alias="nextState", min_length=1)


Button = Annotated[
    Union[NavigationButton, UrlButton, RequestContactButton, RequestEmailButton],
    Field(discriminator="type"),
]

REQUEST_BUTTON_TYPES = (RequestContactButton, RequestEmailButton)


def button_target(button: Any) -> Optional[str]:
    return getattr(button, "next_state", None)


class MediaItem(_Model):
    type: Literal["photo", "video", "document", "audio"]
    url: str
    caption: Optional[str] = Field(default=None, max_length=MAX_CAPTION_LENGTH)
    cover: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _valid_url(cls, value: str) -> str:
        return _check_http_url(value, https_only=True)

    @field_validator("cover")
    @classmethod
    def _valid_cover(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _check_http_url(value, https_only=True)


class WebhookConfig(_Model):
    url: str
    method: Literal["POST", "GET"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    signing_secret: Optional[str] = Field(default=None, alias="signingSecret")
    enabled: bool = True
    retry_count: int = Field(default=MAX_WEBHOOK_RETRY_COUNT, alias="retryCount", ge=0, le=MAX_WEBHOOK_RETRY_COUNT)
    timeout: int = Field(default=MAX_WEBHOOK_TIMEOUT_MS, ge=100, le=MAX_WEBHOOK_TIMEOUT_MS)

    @field_validator("url")
    @classmethod
    def _valid_url(cls, value: str) -> str:
        return _check_http_url(value)

    @field_validator("headers")
    @classmethod
    def _valid_headers(cls, value: dict[str, str]) -> dict[str, str]:
        if len(value) > MAX_WEBHOOK_HEADERS:
            raise ValueError(f"at most {MAX_WEBHOOK_HEADERS} headers allowed")
        for name, header_value in value.items():
            if not name.strip():
                raise ValueError("header names must be non-empty")
            if len(header_value) > MAX_WEBHOOK_HEADER_VALUE_LENGTH:
                raise ValueError(f"header {name} longer than {MAX_WEBHOOK_HEADER_VALUE_LENGTH} characters")
        return value


class IntegrationConfig(_Model):
    type: Literal["google_sheets", "telegram_channel", "custom"]
    config: dict[str, Any] = Field(default_factory=dict)


class State(_Model):
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    parse_mode: ParseMode = Field(default=ParseMode.HTML, alias="parseMode")
    buttons: list[Button] = Field(default_factory=list, max_length=MAX_BUTTONS_PER_STATE)
    media: Optional[MediaItem] = None
    media_group: Optional[list[MediaItem]] = Field(
        default=None,
        alias="mediaGroup",
        min_length=MIN_MEDIA_GROUP,
        max_length=MAX_MEDIA_GROUP,
    )
    webhook: Optional[WebhookConfig] = None
    integration: Optional[IntegrationConfig] = None

    @field_validator("buttons", mode="before")
    @classmethod
    def _default_button_type(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        normalized = []
        for item in value:
            if isinstance(item, dict) and "type" not in item:
                item = {**item, "type": "navigation"}
            normalized.append(item)
        return normalized

    @field_validator("media_group")
    @classmethod
    def _group_items(cls, value: Optional[list[MediaItem]]) -> Optional[list[MediaItem]]:
        if value is None:
            return value
        for item in value:
            if item.type not in ("photo", "video"):
                raise ValueError("media groups may contain only photo and video items")
        return value

    @model_validator(mode="after")
    def _check_layout(self) -> "State":
        if self.media is not None and self.media_group:
            raise ValueError("a state may define media or mediaGroup, not both")
        request_buttons = [b for b in self.buttons if isinstance(b, REQUEST_BUTTON_TYPES)]
        if len(request_buttons) > 1:
            raise ValueError("a state may contain at most one contact/email request button")
        if request_buttons and len(request_buttons) != len(self.buttons):
            raise ValueError("request buttons cannot be combined with inline buttons")
        return self

    @property
    def request_button(self) -> Optional[Union[RequestContactButton, RequestEmailButton]]:
        for button in self.buttons:
            if isinstance(button, REQUEST_BUTTON_TYPES):
                return button
        return None


class DialogueDefinition(_Model):
    version: Literal[1] = DEFINITION_VERSION
    initial_state: str = Field(alias="initialState", min_length=1)
    states: dict[str, State] = Field(min_length=1)

    @field_validator("states")
    @classmethod
    def _state_keys(cls, value: dict[str, State]) -> dict[str, State]:
        if len(value) > MAX_STATES:
            raise ValueError(f"at most {MAX_STATES} states allowed")
        for key in value:
            if not key or not key.strip():
                raise ValueError("state keys must be non-empty")
            if len(key) > MAX_STATE_KEY_LENGTH:
                raise ValueError(f"state key {key[:20]}... longer than {MAX_STATE_KEY_LENGTH} characters")
        return value

    @model_validator(mode="after")
    def _check_references(self) -> "DialogueDefinition":
        if self.initial_state not in self.states:
            raise ValueError(f"initialState '{self.initial_state}' is not a defined state")
        for key, state in self.states.items():
            for button in state.buttons:
                target = button_target(button)
                if target is not None and target not in self.states:
                    raise ValueError(f"state '{key}' has a button pointing to unknown state '{target}'")
        return self

    def get_state(self, key: Optional[str]) -> Optional[State]:
        if not key:
            return None
        return self.states.get(key)


def parse_definition(raw: Any) -> DialogueDefinition:
    """Build a definition from stored JSON, raising DefinitionError on any violation."""
    if isinstance(raw, DialogueDefinition):
        return raw
    try:
        return DialogueDefinition.model_validate(raw)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid dialogue definition: {exc.error_count()} error(s)", errors=exc.errors()) from exc
