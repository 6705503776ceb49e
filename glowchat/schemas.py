"""
Pydantic schemas for the GlowChat API.

Request fields are optional so that missing values produce the API's own
400 responses instead of FastAPI's 422.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RegisterRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    display_name: Optional[str] = None
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UserOut(BaseModel):
    id: int
    display_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None


class AuthResponse(BaseModel):
    token: str
    user: UserOut


class SendOtpRequest(BaseModel):
    phone: Optional[str] = None


class SendOtpResponse(BaseModel):
    ok: bool
    code: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    phone: Optional[str] = None
    code: Optional[str] = None
    display_name: Optional[str] = None


class PresignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: Optional[str] = None
    content_type: Optional[str] = Field(default=None, alias="contentType")


class PresignResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: Literal[True] = True
    key: str
    url: Optional[str] = None
    public_url: Optional[str] = Field(default=None, alias="publicUrl")
    fallback: Optional[bool] = None
    upload_url: Optional[str] = Field(default=None, alias="uploadUrl")


class LocalUploadResponse(BaseModel):
    ok: Literal[True] = True
    filename: str


class StoryOut(BaseModel):
    id: int
    uploader_id: int
    filename: str
    created_at: int
    expires_at: int


class ListStoriesResponse(BaseModel):
    stories: list[StoryOut]


class CreateChatRequest(BaseModel):
    title: Optional[str] = None
    type: Optional[str] = None
    member_ids: Optional[list[int]] = None
    locked: Optional[bool] = None
    # Accepted for client compatibility; chat PINs are not enforced.
    pin: Optional[str] = None


class CreateChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: Literal[True] = True
    chat_id: int = Field(alias="chatId")


class ChatOut(BaseModel):
    id: int
    title: str
    type: str
    owner_id: int
    locked: bool
    created_at: int


class ListChatsResponse(BaseModel):
    chats: list[ChatOut]


class SendMessageRequest(BaseModel):
    text: Optional[str] = None


class MessageOut(BaseModel):
    id: int
    chat_id: int
    sender_id: int
    content: str
    created_at: int
    sender_name: str


class SendMessageResponse(BaseModel):
    ok: Literal[True] = True
    msg: MessageOut


class ListMessagesResponse(BaseModel):
    messages: list[MessageOut]


class StatsResponse(BaseModel):
    users: int
    messages: int
    stories: int
