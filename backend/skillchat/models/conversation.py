"""Conversation and participant ORM models."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from skillchat.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin, utcnow


class Conversation(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """Direct or group conversation; aggregate root for participants and messages."""

    __tablename__ = "conversations"

    kind: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(36), index=True, nullable=False)

    participants: Mapped[list["ConversationParticipant"]] = relationship(
        back_populates="conversation",
        order_by="ConversationParticipant.joined_at",
        lazy="selectin",
    )


class ConversationParticipant(Base, IdMixin):
    """Membership row; never deleted, `left_at` marks an inactive member."""

    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participants_conversation_user"),
        Index(
            "ix_conversation_participants_active_user",
            "user_id",
            "conversation_id",
            postgresql_where=text("left_at IS NULL"),
        ),
    )

    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(16), default="member", nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    conversation: Mapped[Conversation] = relationship(back_populates="participants")
