"""Narrow browser capability surface used by discovery.

Discovery only needs to navigate, find-and-act on elements (in the main frame
or any child frame), observe WebSockets and read storage. Keeping the surface
this small lets tests drive discovery with an in-memory fake and keeps the
DevTools backend swappable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from ..selectors import Box
from ..types import BrowserOptions, CapturedWebSocket


@dataclass(frozen=True, slots=True)
class PageOptions:
    headless: bool = True
    viewport: tuple[int, int] | None = None
    user_agent: str | None = None
    proxy: str | None = None

    @classmethod
    def from_browser_options(cls, options: BrowserOptions, *, headless: bool | None = None) -> PageOptions:
        return cls(
            headless=options.headless if headless is None else headless,
            viewport=options.viewport,
            user_agent=options.user_agent,
            proxy=options.proxy,
        )


class BrowserContext(Protocol):
    def cookies(self) -> list[dict[str, Any]]: ...

    def close(self) -> None: ...


class BrowserPage(Protocol):
    context: BrowserContext

    def navigate(self, url: str, *, timeout: float) -> None: ...

    def title(self) -> str: ...

    def url(self) -> str: ...

    def frame_count(self) -> int: ...

    def viewport(self) -> tuple[int, int]: ...

    def click(self, selector: str, *, timeout: float) -> bool:
        """Click the first visible match in any frame; False when nothing matched."""
        ...

    def fill(self, selector: str, value: str, *, timeout: float) -> bool: ...

    def wait_for_selector(self, selector: str, *, timeout: float) -> bool: ...

    def evaluate(self, script: str) -> Any: ...

    def element_boxes(self, selector: str) -> list[Box]: ...

    def click_nth(self, selector: str, index: int) -> bool: ...

    def websockets(self) -> list[CapturedWebSocket]: ...

    def pump(self, duration: float) -> None:
        """Process pending browser events for up to ``duration`` seconds."""
        ...

    def local_storage(self) -> dict[str, str]: ...

    def session_storage(self) -> dict[str, str]: ...

    def close(self) -> None: ...


class BrowserDriver(Protocol):
    def open_page(self, options: PageOptions) -> BrowserPage: ...

    def close(self) -> None: ...


__all__ = ["BrowserContext", "BrowserDriver", "BrowserPage", "PageOptions"]
