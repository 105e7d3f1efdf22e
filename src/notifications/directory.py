"""Recipient directory: who belongs to a client organisation.

The directory knows client admins and client staff (with their project
assignments). It knows nothing about push tokens; the resolver joins the
two.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from src.notifications.config import RecipientType, UserType


@dataclass(frozen=True)
class DirectoryEntry:
    """A user listed under a client."""

    user_id: str
    user_type: UserType
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    role: Optional[str] = None
    project_ids: frozenset = field(default_factory=frozenset)

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        if name:
            return name
        if self.email:
            return self.email.split("@")[0]
        return "Admin" if self.user_type == UserType.ADMIN else "Staff"


class RecipientDirectory(ABC):
    """Lookup of client admins and staff."""

    @abstractmethod
    def admins_for_client(self, client_id: str) -> list[DirectoryEntry]:
        ...

    @abstractmethod
    def staff_for_client(self, client_id: str, project_id: Optional[str] = None) -> list[DirectoryEntry]:
        """Staff of a client, narrowed to those assigned to ``project_id`` when given."""

    def lookup(
        self,
        client_id: str,
        recipient_type: RecipientType,
        project_id: Optional[str] = None,
    ) -> list[DirectoryEntry]:
        """Admins first, then staff, as the recipient type selects."""
        entries: list[DirectoryEntry] = []
        if recipient_type in (RecipientType.ADMINS, RecipientType.ALL):
            entries.extend(self.admins_for_client(client_id))
        if recipient_type in (RecipientType.STAFF, RecipientType.ALL):
            entries.extend(self.staff_for_client(client_id, project_id))
        return entries


class InMemoryRecipientDirectory(RecipientDirectory):
    """Directory backed by dicts; used by tests and the dev server."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._admins: dict[str, list[DirectoryEntry]] = {}
        self._staff: dict[str, list[DirectoryEntry]] = {}

    def add_admin(
        self,
        client_id: str,
        user_id: str,
        first_name: str = "",
        last_name: str = "",
        email: str = "",
    ) -> DirectoryEntry:
        entry = DirectoryEntry(
            user_id=user_id,
            user_type=UserType.ADMIN,
            first_name=first_name,
            last_name=last_name,
            email=email,
        )
        with self._lock:
            self._admins.setdefault(client_id, []).append(entry)
        return entry

    def add_staff(
        self,
        client_id: str,
        user_id: str,
        project_ids: Iterable[str] = (),
        first_name: str = "",
        last_name: str = "",
        email: str = "",
        role: Optional[str] = None,
    ) -> DirectoryEntry:
        entry = DirectoryEntry(
            user_id=user_id,
            user_type=UserType.STAFF,
            first_name=first_name,
            last_name=last_name,
            email=email,
            role=role,
            project_ids=frozenset(project_ids),
        )
        with self._lock:
            self._staff.setdefault(client_id, []).append(entry)
        return entry

    def remove_user(self, client_id: str, user_id: str) -> int:
        removed = 0
        with self._lock:
            for table in (self._admins, self._staff):
                entries = table.get(client_id, [])
                kept = [e for e in entries if e.user_id != user_id]
                removed += len(entries) - len(kept)
                table[client_id] = kept
        return removed

    def admins_for_client(self, client_id: str) -> list[DirectoryEntry]:
        with self._lock:
            return list(self._admins.get(client_id, []))

    def staff_for_client(self, client_id: str, project_id: Optional[str] = None) -> list[DirectoryEntry]:
        with self._lock:
            staff = list(self._staff.get(client_id, []))
        if project_id is None:
            return staff
        return [s for s in staff if project_id in s.project_ids]
