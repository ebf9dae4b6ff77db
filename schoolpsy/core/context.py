"""
Acting identity passed explicitly into every engine operation.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Actor:
    """
    The psychologist (tenant) performing an operation.

    Carried explicitly instead of being read from the request or session,
    so every service call states whose data it touches.
    """
    psychologist_id: int
    ip_address: Optional[str] = None
    user_agent: str = ''

    @classmethod
    def from_request(cls, request) -> 'Actor':
        """Build an actor from an authenticated Django request."""
        return cls(
            psychologist_id=request.user.pk,
            ip_address=request.META.get('REMOTE_ADDR'),
            user_agent=request.META.get('HTTP_USER_AGENT', ''),
        )
