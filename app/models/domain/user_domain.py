from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel


class Role(StrEnum):
    CUSTOMER = "CUSTOMER"
    MECHANIC = "MECHANIC"
    ADMIN = "ADMIN"

    @classmethod
    def parse(cls, raw: str | None) -> "Role":
        if not raw:
            raise ValueError("role is required")
        try:
            return cls(raw.strip().upper())
        except ValueError as e:
            raise ValueError(f"Unknown role: {raw}") from e


class UserAccount(BaseModel):
    """A marketplace user as stored in the users table."""

    id: str
    role: Role
    email: str
    first_name: str
    last_name: str
    is_active: bool = True

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def short_name(self) -> str:
        """First name plus last initial, used on public review listings."""
        initial = f" {self.last_name[0]}." if self.last_name else ""
        return f"{self.first_name}{initial}"


@dataclass(frozen=True, slots=True)
class Principal:
    """Identity resolved from a verified bearer token."""

    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
