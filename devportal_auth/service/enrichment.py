from __future__ import annotations

from typing import Optional, Protocol

from devportal_auth.logging import get_logger
from devportal_auth.service.errors import MemberNotFoundError
from devportal_auth.storage.models import UserProfile

logger = get_logger(__name__)


class MemberLookup(Protocol):
    """Member directory capability owned by the persistence layer."""

    def lookup_member_id_by_email(self, email: str) -> str:
        """Return the member identifier for ``email``.

        Raises:
            MemberNotFoundError: no member record has this email.
        """
        ...


class MemberEnrichment:
    """Attach an internal member id to an external profile, best effort.

    Lookup failures never abort authentication; they yield ``None``.
    """

    def __init__(self, lookup: Optional[MemberLookup] = None) -> None:
        self.lookup = lookup

    def find_member_id(self, email: str) -> Optional[str]:
        if self.lookup is None or not email:
            return None
        try:
            member_id = self.lookup.lookup_member_id_by_email(email)
        except MemberNotFoundError:
            return None
        except Exception as exc:
            logger.warning("member_lookup_failed", error_type=type(exc).__name__, error=str(exc))
            return None
        if member_id is None:
            return None
        member_id = str(member_id)
        return member_id or None

    def enrich(self, profile: UserProfile) -> UserProfile:
        profile.member_id = self.find_member_id(profile.email)
        return profile
