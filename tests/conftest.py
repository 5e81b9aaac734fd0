from __future__ import annotations

from collections.abc import Callable

import pytest
from requests.structures import CaseInsensitiveDict


class FakeRawHeaders:
    def __init__(self, set_cookies: list[str]) -> None:
        self._set_cookies = set_cookies

    def getlist(self, name: str) -> list[str]:
        return list(self._set_cookies) if name.lower() == "set-cookie" else []


class FakeRaw:
    def __init__(self, set_cookies: list[str]) -> None:
        self.headers = FakeRawHeaders(set_cookies)


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
        set_cookies: list[str] | None = None,
        url: str = "https://example.com/",
    ) -> None:
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        if set_cookies:
            self.headers["Set-Cookie"] = ", ".join(set_cookies)
        self.raw = FakeRaw(set_cookies or [])
        self.url = url


@pytest.fixture
def make_response() -> Callable[..., FakeResponse]:
    return FakeResponse
