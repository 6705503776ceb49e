"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging
import os

from glowchat.auth import verify_token
from glowchat.config import get_settings
from glowchat.db import DbClient, InMemoryDbClient, SqlDbClient
from glowchat.otp import InMemoryOtpStore, OtpStore, RedisOtpStore
from glowchat.realtime import FanOut
from glowchat.sms import DemoSmsSender, SmsSender, TwilioSmsSender
from glowchat.storage import LocalUploadStore, PresignClient, S3PresignClient

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_presign_client: PresignClient | None = None
_presign_resolved = False
_upload_store: LocalUploadStore | None = None
_otp_store: OtpStore | None = None
_sms_sender: SmsSender | None = None
_fanout: FanOut | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends:
        _db_client = InMemoryDbClient()
    else:
        if not settings.database_url:
            sqlite_dir = os.path.dirname(settings.sqlite_path)
            if sqlite_dir:
                os.makedirs(sqlite_dir, exist_ok=True)
        _db_client = SqlDbClient(settings.resolved_database_url)
        logger.info(
            "Using SQL database %s",
            _db_client.engine.url.render_as_string(hide_password=True),
        )
    return _db_client


def get_presign_client() -> PresignClient | None:
    """
    Return the S3 signer, or None when uploads should fall back to the local
    upload endpoint.
    """
    global _presign_client, _presign_resolved
    if _presign_resolved:
        return _presign_client

    settings = get_settings()
    if settings.s3_bucket:
        _presign_client = S3PresignClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )
    _presign_resolved = True
    return _presign_client


def get_upload_store() -> LocalUploadStore:
    global _upload_store
    if _upload_store:
        return _upload_store
    _upload_store = LocalUploadStore(get_settings().upload_dir)
    return _upload_store


def get_otp_store() -> OtpStore:
    global _otp_store
    if _otp_store:
        return _otp_store

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _otp_store = RedisOtpStore(url=settings.redis_url)
    else:
        _otp_store = InMemoryOtpStore()
    return _otp_store


def get_sms_sender() -> SmsSender:
    global _sms_sender
    if _sms_sender:
        return _sms_sender

    settings = get_settings()
    if settings.twilio_account_sid and settings.twilio_auth_token:
        _sms_sender = TwilioSmsSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number or "",
        )
    else:
        _sms_sender = DemoSmsSender()
    return _sms_sender


def get_fanout() -> FanOut:
    global _fanout
    if _fanout:
        return _fanout
    settings = get_settings()
    _fanout = FanOut(token_verifier=lambda token: verify_token(token, settings))
    return _fanout


def reset_dependencies() -> None:
    """Drop cached clients so the next request rebuilds them from settings."""
    global _db_client, _presign_client, _presign_resolved
    global _upload_store, _otp_store, _sms_sender, _fanout
    _db_client = None
    _presign_client = None
    _presign_resolved = False
    _upload_store = None
    _otp_store = None
    _sms_sender = None
    _fanout = None
