"""User identity ORM model."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from skillchat.models.base import Base, CreatedAtMixin, IdMixin


class User(Base, IdMixin, CreatedAtMixin):
    """Platform user as seen by messaging. Owned by the accounts service, read-only here."""

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(150), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    avatar: Mapped[str | None] = mapped_column(String(1024), nullable=True)
