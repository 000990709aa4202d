"""Display identity schemas."""

from pydantic import BaseModel, ConfigDict

UNKNOWN_USERNAME = "Unknown"


class UserSummary(BaseModel):
    """Identity fields rendered next to messages and participants."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str = ""
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None

    @classmethod
    def unknown(cls, user_id: str) -> "UserSummary":
        return cls(id=user_id, username=UNKNOWN_USERNAME)
