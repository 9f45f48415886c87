from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ActorContext:
    user_id: str
    role: str
    name: str | None = None
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return "Admin" if self.is_admin else self.user_id
