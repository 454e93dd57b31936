from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional

from devportal_auth.service.errors import MemberNotFoundError


class MemoryMemberDirectory:
    """In-memory member directory used for local runs and tests.

    Emails are matched case-insensitively.
    """

    def __init__(self, members: Optional[Dict[str, str]] = None) -> None:
        self._lock = threading.Lock()
        self._members: Dict[str, str] = {}
        for email, member_id in (members or {}).items():
            self.add_member(email, member_id)

    def add_member(self, email: str, member_id: Optional[str] = None) -> str:
        member_id = member_id or str(uuid.uuid4())
        with self._lock:
            self._members[email.strip().lower()] = member_id
        return member_id

    def remove_member(self, email: str) -> None:
        with self._lock:
            self._members.pop(email.strip().lower(), None)

    def lookup_member_id_by_email(self, email: str) -> str:
        with self._lock:
            member_id = self._members.get(email.strip().lower())
        if member_id is None:
            raise MemberNotFoundError("member not found", detail={"resource": "member"})
        return member_id
