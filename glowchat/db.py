"""
Database abstraction over SQLAlchemy (Postgres or SQLite) and an in-memory
implementation for development and tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker


def now_ms() -> int:
    return int(time.time() * 1000)


class DuplicateRecordError(Exception):
    """Raised when an insert violates a uniqueness constraint."""


class DbClient(Protocol):
    """Interface for database access."""

    def create_user(
        self,
        *,
        email: Optional[str],
        password_hash: Optional[str],
        display_name: str,
        phone: Optional[str] = None,
    ) -> "UserRecord":
        ...

    def get_user(self, user_id: int) -> Optional["UserRecord"]:
        ...

    def get_user_by_email(self, email: str) -> Optional["UserRecord"]:
        ...

    def get_user_by_phone(self, phone: str) -> Optional["UserRecord"]:
        ...

    def create_chat(
        self,
        *,
        owner_id: int,
        title: str,
        chat_type: str,
        locked: bool,
        member_ids: Iterable[int] = (),
    ) -> "ChatRecord":
        ...

    def list_chats_for_user(self, user_id: int) -> list["ChatRecord"]:
        ...

    def is_chat_member(self, chat_id: int, user_id: int) -> bool:
        ...

    def create_message(
        self, chat_id: int, sender_id: int, content: str
    ) -> "MessageRecord":
        ...

    def list_messages(
        self, chat_id: int, limit: int = 50, before_id: Optional[int] = None
    ) -> list["MessageRecord"]:
        ...

    def create_story(
        self, uploader_id: int, filename: str, created_at: int, expires_at: int
    ) -> "StoryRecord":
        ...

    def list_active_stories(self, now: int) -> list["StoryRecord"]:
        ...

    def purge_expired_stories(self, now: int) -> int:
        ...

    def get_stats(self) -> dict:
        ...


@dataclass
class UserRecord:
    id: int
    email: Optional[str]
    password_hash: Optional[str]
    display_name: str
    phone: Optional[str] = None
    avatar: Optional[str] = None
    created_at: int = field(default_factory=now_ms)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "phone": self.phone,
            "avatar": self.avatar,
        }


@dataclass
class ChatRecord:
    id: int
    title: str
    type: str
    owner_id: int
    locked: bool = False
    created_at: int = field(default_factory=now_ms)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "owner_id": self.owner_id,
            "locked": self.locked,
            "created_at": self.created_at,
        }


@dataclass
class MessageRecord:
    id: int
    chat_id: int
    sender_id: int
    content: str
    created_at: int = field(default_factory=now_ms)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "created_at": self.created_at,
        }


@dataclass
class StoryRecord:
    id: int
    uploader_id: int
    filename: str
    created_at: int
    expires_at: int

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "uploader_id": self.uploader_id,
            "filename": self.filename,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[int, UserRecord] = {}
        self.chats: Dict[int, ChatRecord] = {}
        self.members: Dict[tuple[int, int], str] = {}
        self.messages: Dict[int, MessageRecord] = {}
        self.stories: Dict[int, StoryRecord] = {}
        self._next_ids: Dict[str, int] = {}

    def _next_id(self, table: str) -> int:
        value = self._next_ids.get(table, 0) + 1
        self._next_ids[table] = value
        return value

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.chats.clear()
        self.members.clear()
        self.messages.clear()
        self.stories.clear()
        self._next_ids.clear()

    def create_user(
        self,
        *,
        email: Optional[str],
        password_hash: Optional[str],
        display_name: str,
        phone: Optional[str] = None,
    ) -> UserRecord:
        for user in self.users.values():
            if email and user.email == email:
                raise DuplicateRecordError("email already registered")
            if phone and user.phone == phone:
                raise DuplicateRecordError("phone already registered")
        record = UserRecord(
            id=self._next_id("users"),
            email=email,
            password_hash=password_hash,
            display_name=display_name,
            phone=phone,
        )
        self.users[record.id] = record
        return record

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.phone == phone:
                return user
        return None

    def create_chat(
        self,
        *,
        owner_id: int,
        title: str,
        chat_type: str,
        locked: bool,
        member_ids: Iterable[int] = (),
    ) -> ChatRecord:
        chat = ChatRecord(
            id=self._next_id("chats"),
            title=title,
            type=chat_type,
            owner_id=owner_id,
            locked=locked,
        )
        self.chats[chat.id] = chat
        self.members[(chat.id, owner_id)] = "owner"
        for uid in member_ids:
            self.members.setdefault((chat.id, uid), "member")
        return chat

    def list_chats_for_user(self, user_id: int) -> list[ChatRecord]:
        chat_ids = sorted(cid for cid, uid in self.members if uid == user_id)
        return [self.chats[cid] for cid in chat_ids if cid in self.chats]

    def is_chat_member(self, chat_id: int, user_id: int) -> bool:
        return (chat_id, user_id) in self.members

    def create_message(
        self, chat_id: int, sender_id: int, content: str
    ) -> MessageRecord:
        record = MessageRecord(
            id=self._next_id("messages"),
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
        )
        self.messages[record.id] = record
        return record

    def list_messages(
        self, chat_id: int, limit: int = 50, before_id: Optional[int] = None
    ) -> list[MessageRecord]:
        rows = [
            m
            for m in self.messages.values()
            if m.chat_id == chat_id and (before_id is None or m.id < before_id)
        ]
        rows.sort(key=lambda m: m.id)
        return rows[-limit:] if limit else []

    def create_story(
        self, uploader_id: int, filename: str, created_at: int, expires_at: int
    ) -> StoryRecord:
        record = StoryRecord(
            id=self._next_id("stories"),
            uploader_id=uploader_id,
            filename=filename,
            created_at=created_at,
            expires_at=expires_at,
        )
        self.stories[record.id] = record
        return record

    def list_active_stories(self, now: int) -> list[StoryRecord]:
        active = [s for s in self.stories.values() if s.expires_at > now]
        return sorted(active, key=lambda s: s.created_at, reverse=True)

    def purge_expired_stories(self, now: int) -> int:
        expired = [sid for sid, s in self.stories.items() if s.expires_at <= now]
        for sid in expired:
            del self.stories[sid]
        return len(expired)

    def get_stats(self) -> dict:
        return {
            "users": len(self.users),
            "messages": len(self.messages),
            "stories": len(self.stories),
        }


def normalize_database_url(database_url: str) -> str:
    # Hosted Postgres providers still hand out the legacy scheme.
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://"):]
    return database_url


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (Postgres in
    production, SQLite for local runs and tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("A database URL is required for SqlDbClient")
        self.engine = create_engine(
            normalize_database_url(database_url),
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _to_user_record(row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            email=row.email,
            password_hash=row.password_hash,
            display_name=row.display_name,
            phone=row.phone,
            avatar=row.avatar,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_chat_record(row: "ChatRow") -> ChatRecord:
        return ChatRecord(
            id=row.id,
            title=row.title,
            type=row.type,
            owner_id=row.owner_id,
            locked=bool(row.locked),
            created_at=row.created_at,
        )

    @staticmethod
    def _to_message_record(row: "MessageRow") -> MessageRecord:
        return MessageRecord(
            id=row.id,
            chat_id=row.chat_id,
            sender_id=row.sender_id,
            content=row.content,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_story_record(row: "StoryRow") -> StoryRecord:
        return StoryRecord(
            id=row.id,
            uploader_id=row.uploader_id,
            filename=row.filename,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    def create_user(
        self,
        *,
        email: Optional[str],
        password_hash: Optional[str],
        display_name: str,
        phone: Optional[str] = None,
    ) -> UserRecord:
        with self.Session() as session:
            row = UserRow(
                email=email,
                password_hash=password_hash,
                display_name=display_name,
                phone=phone,
                created_at=now_ms(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateRecordError(str(exc.orig)) from exc
            session.refresh(row)
            return self._to_user_record(row)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.email == email)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.phone == phone)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def create_chat(
        self,
        *,
        owner_id: int,
        title: str,
        chat_type: str,
        locked: bool,
        member_ids: Iterable[int] = (),
    ) -> ChatRecord:
        now = now_ms()
        with self.Session() as session:
            chat = ChatRow(
                title=title,
                type=chat_type,
                owner_id=owner_id,
                locked=locked,
                created_at=now,
            )
            session.add(chat)
            session.flush()
            session.add(
                ChatMemberRow(
                    chat_id=chat.id, user_id=owner_id, role="owner", joined_at=now
                )
            )
            seen = {owner_id}
            for uid in member_ids:
                if uid in seen:
                    continue
                seen.add(uid)
                session.add(
                    ChatMemberRow(
                        chat_id=chat.id, user_id=uid, role="member", joined_at=now
                    )
                )
            session.commit()
            session.refresh(chat)
            return self._to_chat_record(chat)

    def list_chats_for_user(self, user_id: int) -> list[ChatRecord]:
        with self.Session() as session:
            stmt = (
                select(ChatRow)
                .join(ChatMemberRow, ChatMemberRow.chat_id == ChatRow.id)
                .where(ChatMemberRow.user_id == user_id)
                .order_by(ChatRow.id.asc())
            )
            return [self._to_chat_record(row) for row in session.execute(stmt).scalars()]

    def is_chat_member(self, chat_id: int, user_id: int) -> bool:
        with self.Session() as session:
            return session.get(ChatMemberRow, (chat_id, user_id)) is not None

    def create_message(
        self, chat_id: int, sender_id: int, content: str
    ) -> MessageRecord:
        with self.Session() as session:
            row = MessageRow(
                chat_id=chat_id,
                sender_id=sender_id,
                content=content,
                created_at=now_ms(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_message_record(row)

    def list_messages(
        self, chat_id: int, limit: int = 50, before_id: Optional[int] = None
    ) -> list[MessageRecord]:
        with self.Session() as session:
            stmt = select(MessageRow).where(MessageRow.chat_id == chat_id)
            if before_id is not None:
                stmt = stmt.where(MessageRow.id < before_id)
            stmt = stmt.order_by(MessageRow.id.desc()).limit(limit)
            rows = list(session.execute(stmt).scalars())
            rows.reverse()
            return [self._to_message_record(row) for row in rows]

    def create_story(
        self, uploader_id: int, filename: str, created_at: int, expires_at: int
    ) -> StoryRecord:
        with self.Session() as session:
            row = StoryRow(
                uploader_id=uploader_id,
                filename=filename,
                created_at=created_at,
                expires_at=expires_at,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_story_record(row)

    def list_active_stories(self, now: int) -> list[StoryRecord]:
        with self.Session() as session:
            stmt = (
                select(StoryRow)
                .where(StoryRow.expires_at > now)
                .order_by(StoryRow.created_at.desc())
            )
            return [self._to_story_record(row) for row in session.execute(stmt).scalars()]

    def purge_expired_stories(self, now: int) -> int:
        with self.Session() as session:
            deleted = (
                session.query(StoryRow)
                .filter(StoryRow.expires_at <= now)
                .delete(synchronize_session=False)
            )
            session.commit()
            return deleted or 0

    def get_stats(self) -> dict:
        with self.Session() as session:
            return {
                "users": session.scalar(select(func.count()).select_from(UserRow)),
                "messages": session.scalar(
                    select(func.count()).select_from(MessageRow)
                ),
                "stories": session.scalar(select(func.count()).select_from(StoryRow)),
            }


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=True, unique=True)
    password_hash = Column(String, nullable=True)
    display_name = Column(String, nullable=False)
    phone = Column(String, nullable=True, unique=True)
    avatar = Column(String, nullable=True)
    created_at = Column(BigInteger, nullable=False)


class ChatRow(Base):
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False, default="Chat")
    type = Column(String, nullable=False, default="group")
    owner_id = Column(Integer, nullable=False, index=True)
    locked = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False)


class ChatMemberRow(Base):
    __tablename__ = "chat_members"

    chat_id = Column(Integer, primary_key=True)
    user_id = Column(Integer, primary_key=True, index=True)
    role = Column(String, nullable=False, default="member")
    joined_at = Column(BigInteger, nullable=False)


class MessageRow(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, nullable=False, index=True)
    sender_id = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(BigInteger, nullable=False)


class StoryRow(Base):
    __tablename__ = "stories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uploader_id = Column(Integer, nullable=False, index=True)
    filename = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False, index=True)
