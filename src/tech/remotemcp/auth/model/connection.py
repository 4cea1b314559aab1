"""Third-party app connection data models.

An app connection is a user's stored credential set for one external
application (GitHub, Slack, Notion, ...). The credential itself is kept as an
encrypted JSON object; only the connection metadata is stored in the clear.
"""
from enum import Enum
from typing import Any, Dict
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from tech.remotemcp.auth.model.base import Base, str512, ulidpk


class AppConnectionType(str, Enum):
    OAUTH2 = "OAUTH2"
    SECRET_TEXT = "SECRET_TEXT"
    NO_AUTH = "NO_AUTH"


class AppConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    MISSING = "MISSING"
    ERROR = "ERROR"


class AppConnection(Base):
    """A user's credential for an external app.

    `value` holds an EncryptedObject (`{"iv": ..., "data": ..., "tag": ...}`).
    `version` is bumped on every write of `value` so concurrent refreshes can
    detect that another writer got there first.
    """
    __tablename__ = "app_connections"

    id: Mapped[ulidpk]
    app_name: Mapped[str] = mapped_column(String(128), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    display_name: Mapped[str512]
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AppConnectionStatus.ACTIVE.value
    )
    value: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
