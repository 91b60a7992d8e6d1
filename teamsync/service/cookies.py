from __future__ import annotations

import json
from typing import Optional
from urllib.parse import quote, unquote

from starlette.responses import Response

from teamsync.config import Settings


class CookiePolicy:
    """Names and attributes of the three auth cookies.

    ``session_id`` and ``auth_token`` are httpOnly; ``auth_user`` holds only
    display fields so the frontend can render without a round trip. Set and
    delete share one attribute set, otherwise browsers keep the old cookie.
    """

    def __init__(self, settings: Settings) -> None:
        self.session_cookie = settings.session_cookie_name
        self.token_cookie = settings.token_cookie_name
        self.profile_cookie = settings.profile_cookie_name
        self.session_max_age = settings.session_ttl_minutes * 60
        self.token_max_age = settings.token_ttl_minutes * 60
        self.path = "/"
        self.domain = settings.cookie_domain
        self.secure = settings.cookies_secure
        self.samesite = settings.cookie_samesite

    def _attributes(self, *, httponly: bool) -> dict:
        return {
            "path": self.path,
            "domain": self.domain,
            "secure": self.secure,
            "httponly": httponly,
            "samesite": self.samesite,
        }

    def apply(self, response: Response, session, token) -> None:
        """Write the session, token and profile cookies for a fresh login."""
        response.set_cookie(
            self.session_cookie,
            session.session_id,
            max_age=self.session_max_age,
            **self._attributes(httponly=True),
        )
        response.set_cookie(
            self.token_cookie,
            token.token,
            max_age=self.token_max_age,
            **self._attributes(httponly=True),
        )
        response.set_cookie(
            self.profile_cookie,
            encode_profile(token.profile()),
            max_age=self.token_max_age,
            **self._attributes(httponly=False),
        )

    def clear(self, response: Response) -> None:
        for name, httponly in (
            (self.session_cookie, True),
            (self.token_cookie, True),
            (self.profile_cookie, False),
        ):
            response.delete_cookie(name, **self._attributes(httponly=httponly))


def encode_profile(profile: dict) -> str:
    # percent-encoded JSON, the same shape the frontend decodes
    return quote(json.dumps(profile, separators=(",", ":")), safe="")


def decode_profile(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        value = json.loads(unquote(raw))
    except ValueError:
        return None
    return value if isinstance(value, dict) else None
