"""
HTTP and WebSocket routes for the GlowChat backend.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Query,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import FileResponse

from glowchat.auth import get_current_user, hash_password, issue_token, verify_password
from glowchat.config import Settings, get_settings
from glowchat.db import DbClient, DuplicateRecordError, UserRecord, now_ms
from glowchat.dependencies import (
    get_db_client,
    get_fanout,
    get_otp_store,
    get_presign_client,
    get_sms_sender,
    get_upload_store,
)
from glowchat.otp import OtpStore, generate_code
from glowchat.realtime import (
    STORIES_UPDATE,
    FanOut,
    WebSocketConnection,
    decode_frame,
    handle_frame,
)
from glowchat.schemas import (
    AuthResponse,
    ChatOut,
    CreateChatRequest,
    CreateChatResponse,
    ListChatsResponse,
    ListMessagesResponse,
    ListStoriesResponse,
    LocalUploadResponse,
    LoginRequest,
    MessageOut,
    PresignRequest,
    PresignResponse,
    RegisterRequest,
    SendMessageRequest,
    SendMessageResponse,
    SendOtpRequest,
    SendOtpResponse,
    StatsResponse,
    StoryOut,
    UserOut,
    VerifyOtpRequest,
)
from glowchat.sms import SmsSender
from glowchat.storage import LocalUploadStore, PresignClient, make_upload_key

logger = logging.getLogger(__name__)

# Mounted under the API prefix.
router = APIRouter()
# Mounted at the root: local upload fallback and the realtime socket.
root_router = APIRouter()


def _user_out(user: UserRecord) -> UserOut:
    return UserOut(**user.as_dict())


@router.post("/register", response_model=AuthResponse)
def register(payload: RegisterRequest, db: DbClient = Depends(get_db_client)):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="missing")
    try:
        user = db.create_user(
            email=payload.email,
            password_hash=hash_password(payload.password),
            display_name=payload.display_name or payload.email.split("@")[0],
            phone=payload.phone or None,
        )
    except DuplicateRecordError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    token = issue_token({"id": user.id, "email": user.email})
    logger.info("Registered user %s", user.id)
    return AuthResponse(token=token, user=_user_out(user))


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: DbClient = Depends(get_db_client)):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="missing")
    user = db.get_user_by_email(payload.email)
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="invalid")
    token = issue_token({"id": user.id, "email": user.email})
    return AuthResponse(token=token, user=_user_out(user))


@router.post(
    "/send-otp", response_model=SendOtpResponse, response_model_exclude_none=True
)
def send_otp(
    payload: SendOtpRequest,
    otp_store: OtpStore = Depends(get_otp_store),
    sms: SmsSender = Depends(get_sms_sender),
    settings: Settings = Depends(get_settings),
):
    if not payload.phone:
        raise HTTPException(status_code=400, detail="missing phone")
    code = generate_code()
    try:
        sms.send_code(payload.phone, code)
    except Exception as exc:
        logger.error("Failed to send OTP to %s: %s", payload.phone, exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))
    otp_store.save(payload.phone, code, settings.otp_ttl_seconds)
    if sms.demo:
        # No SMS provider configured: hand the code back to the caller.
        return SendOtpResponse(ok=True, code=code)
    return SendOtpResponse(ok=True)


@router.post("/verify-otp", response_model=AuthResponse)
def verify_otp(
    payload: VerifyOtpRequest,
    db: DbClient = Depends(get_db_client),
    otp_store: OtpStore = Depends(get_otp_store),
):
    if not payload.phone or not payload.code:
        raise HTTPException(status_code=400, detail="missing")
    if not otp_store.verify(payload.phone, payload.code):
        raise HTTPException(status_code=401, detail="invalid code")

    user = db.get_user_by_phone(payload.phone)
    if not user:
        try:
            user = db.create_user(
                email=None,
                password_hash=None,
                display_name=payload.display_name or payload.phone,
                phone=payload.phone,
            )
        except DuplicateRecordError:
            # Created concurrently by another verification.
            user = db.get_user_by_phone(payload.phone)
            if not user:
                raise
    token = issue_token({"id": user.id, "phone": payload.phone})
    return AuthResponse(token=token, user=_user_out(user))


@router.post(
    "/presign", response_model=PresignResponse, response_model_exclude_none=True
)
def presign_upload(
    payload: PresignRequest,
    user: dict = Depends(get_current_user),
    signer: Optional[PresignClient] = Depends(get_presign_client),
    settings: Settings = Depends(get_settings),
):
    if not payload.filename or not payload.content_type:
        raise HTTPException(status_code=400, detail="missing")
    key = make_upload_key(payload.filename)
    if signer is None:
        return PresignResponse(key=key, fallback=True, upload_url="/upload-local")
    try:
        url = signer.presign_put(
            key, payload.content_type, expires_in=settings.presign_expires_seconds
        )
    except Exception as exc:
        logger.error("Presign failed for %s: %s", key, exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))
    return PresignResponse(key=key, url=url, public_url=signer.public_url(key))


@router.get("/stories", response_model=ListStoriesResponse)
def list_stories(
    user: dict = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    stories = db.list_active_stories(now_ms())
    return ListStoriesResponse(stories=[StoryOut(**s.as_dict()) for s in stories])


@router.post("/chats", response_model=CreateChatResponse)
def create_chat(
    payload: CreateChatRequest,
    user: dict = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    chat = db.create_chat(
        owner_id=user["id"],
        title=payload.title or "Chat",
        chat_type=payload.type or "group",
        locked=bool(payload.locked),
        member_ids=payload.member_ids or [],
    )
    logger.info("User %s created chat %s", user["id"], chat.id)
    return CreateChatResponse(chat_id=chat.id)


@router.get("/chats", response_model=ListChatsResponse)
def list_chats(
    user: dict = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    chats = db.list_chats_for_user(user["id"])
    return ListChatsResponse(chats=[ChatOut(**c.as_dict()) for c in chats])


@router.post("/chats/{chat_id}/messages", response_model=SendMessageResponse)
async def send_message(
    chat_id: int,
    payload: SendMessageRequest,
    user: dict = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    fanout: FanOut = Depends(get_fanout),
):
    """
    Persist a message, then push it to everyone joined to the chat room.
    """
    if not payload.text:
        raise HTTPException(status_code=400, detail="missing")
    record = db.create_message(chat_id, user["id"], payload.text)
    sender = db.get_user(user["id"])
    msg = MessageOut(
        **record.as_dict(),
        sender_name=sender.display_name if sender else "anon",
    )
    # Only reached once the insert has committed.
    await fanout.broadcast_message(chat_id, msg.model_dump())
    return SendMessageResponse(msg=msg)


@router.get("/chats/{chat_id}/messages", response_model=ListMessagesResponse)
def list_messages(
    chat_id: int,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[int] = Query(None, description="Only messages with a smaller id"),
    user: dict = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not db.is_chat_member(chat_id, user["id"]):
        raise HTTPException(status_code=403, detail="not a member")
    records = db.list_messages(chat_id, limit=limit, before_id=before)
    names: dict[int, str] = {}
    for sender_id in {r.sender_id for r in records}:
        sender = db.get_user(sender_id)
        names[sender_id] = sender.display_name if sender else "anon"
    return ListMessagesResponse(
        messages=[
            MessageOut(**r.as_dict(), sender_name=names[r.sender_id]) for r in records
        ]
    )


@router.get("/admin/stats", response_model=StatsResponse)
def admin_stats(
    user: dict = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return StatsResponse(**db.get_stats())


@root_router.post("/upload-local", response_model=LocalUploadResponse)
async def upload_local(
    file: Optional[UploadFile] = File(None),
    user: dict = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    store: LocalUploadStore = Depends(get_upload_store),
    fanout: FanOut = Depends(get_fanout),
    settings: Settings = Depends(get_settings),
):
    """
    Fallback for clients that got ``fallback: true`` from presign: accept the
    file directly, record it as a story and notify every connected client.
    """
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="no file")
    data = await file.read()
    created_at = now_ms()
    expires = created_at + settings.story_ttl_seconds * 1000
    filename = store.save(file.filename, data, now_ms=created_at)
    try:
        db.create_story(user["id"], filename, created_at, expires)
    except Exception:
        store.discard(filename)
        raise
    await fanout.emit_all(
        STORIES_UPDATE,
        {
            "uploader_id": user["id"],
            "filename": filename,
            "created_at": created_at,
            "expires": expires,
        },
    )
    return LocalUploadResponse(filename=filename)


@root_router.get("/uploads/{name}")
def serve_upload(name: str, store: LocalUploadStore = Depends(get_upload_store)):
    path = store.resolve(name)
    if path is None:
        raise HTTPException(status_code=404, detail="not found")
    return FileResponse(path)


@root_router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, fanout: FanOut = Depends(get_fanout)):
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    fanout.connect(connection)
    logger.info("Socket connected %s", connection.sid)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            text = message.get("text")
            if text is None:
                logger.debug("Ignoring binary frame from %s", connection.sid)
                continue
            await handle_frame(fanout, connection, decode_frame(text))
    except WebSocketDisconnect:
        logger.info("Socket disconnected %s", connection.sid)
    finally:
        fanout.disconnect(connection)
