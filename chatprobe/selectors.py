"""Chat-widget selectors.

Selectors use CSS plus the ``:has-text("...")`` pseudo-class, which the
browser backend resolves itself (see ``split_text_selector``). Lists are
ordered by specificity: vendor iframes first, generic text matches last.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from .types import WidgetHints

_CHAT_VENDORS = (
    "intercom",
    "drift",
    "zendesk",
    "livechat",
    "tawk",
    "hubspot",
    "crisp",
    "tidio",
    "freshdesk",
    "freshchat",
    "olark",
    "helpscout",
    "chatwoot",
)

IFRAME_SELECTORS: tuple[str, ...] = (
    *(f'iframe[src*="{vendor}"]' for vendor in _CHAT_VENDORS),
    'iframe[title*="chat" i]',
    'iframe[title*="Chat" i]',
    'iframe[name*="chat" i]',
)

ARIA_SELECTORS: tuple[str, ...] = (
    '[aria-label*="chat" i]',
    '[aria-label*="Chat" i]',
    '[aria-label*="support" i]',
    '[aria-label*="help" i]',
    '[data-testid*="chat"]',
    '[data-testid*="widget"]',
)

CLASS_ID_SELECTORS: tuple[str, ...] = (
    '[class*="chat-button"]',
    '[class*="chat-widget"]',
    '[class*="chat-launcher"]',
    '[class*="chatbot"]',
    '[class*="chat-bubble"]',
    '[class*="chat-toggle"]',
    '[class*="chat-icon"]',
    '[class*="widget-launcher"]',
    '[class*="launcher-button"]',
    '[id*="chat-widget"]',
    '[id*="chatbot"]',
    '[id*="chat-button"]',
    '[id*="chat-launcher"]',
    '[id*="live-chat"]',
)

TEXT_SELECTORS: tuple[str, ...] = (
    'button:has-text("Chat")',
    'button:has-text("chat")',
    'button:has-text("Jetzt chatten")',
    'button:has-text("Start chat")',
    'button:has-text("Live chat")',
    'button:has-text("Help")',
    'button:has-text("Support")',
    'a:has-text("Chat")',
    'div[role="button"]:has-text("Chat")',
)

ALL_HEURISTIC_SELECTORS: tuple[str, ...] = tuple(
    dict.fromkeys((*IFRAME_SELECTORS, *ARIA_SELECTORS, *CLASS_ID_SELECTORS, *TEXT_SELECTORS))
)

COOKIE_ACCEPT_SELECTORS: tuple[str, ...] = (
    "#onetrust-accept-btn-handler",
    ".onetrust-close-btn-handler",
    "#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll",
    "#CybotCookiebotDialogBodyButtonAccept",
    '[data-testid="cookie-accept"]',
    'button[data-action="accept"]',
    'button[id*="cookie"][id*="accept"]',
    'button[class*="cookie"][class*="accept"]',
    'button:has-text("Accept all")',
    'button:has-text("Alle akzeptieren")',
    'button:has-text("Accept All Cookies")',
    'button:has-text("Alle Cookies akzeptieren")',
)

ANY_ELEMENT_SELECTOR = 'button, div[role="button"], a, iframe, [class*="chat"], [class*="widget"]'

_HAS_TEXT_RE = re.compile(r':has-text\((["\'])(.*?)\1\)')


def build_selectors_from_hints(hints: WidgetHints | None) -> list[str]:
    """Expand operator hints into candidate selectors, most specific first."""
    if hints is None:
        return []

    selectors: list[str] = []
    for text in hints.button_text:
        selectors.append(f'button:has-text("{text}")')
        selectors.append(f'a:has-text("{text}")')
        selectors.append(f'div[role="button"]:has-text("{text}")')
    selectors.extend(f'[class*="{cls}"]' for cls in hints.contains_class)
    selectors.extend(f'[id*="{ident}"]' for ident in hints.contains_id)
    selectors.extend(f'iframe[src*="{src}"]' for src in hints.iframe_src)
    selectors.extend(f'[{key}="{value}"]' for key, value in hints.data_attributes.items())

    if hints.within_selector:
        return [f"{hints.within_selector} {sel}" for sel in selectors]
    return selectors


@dataclass(frozen=True, slots=True)
class Box:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class PositionalFilter:
    selector: str
    filter_fn: Callable[[Box, int, int], bool]

    def matches(self, box: Box, viewport_width: int, viewport_height: int) -> bool:
        return self.filter_fn(box, viewport_width, viewport_height)


def build_positional_filter(position: str | None, element_type: str | None = "any") -> PositionalFilter:
    selector = ANY_ELEMENT_SELECTOR if (element_type or "any") == "any" else str(element_type)

    def _filter(box: Box, vw: int, vh: int) -> bool:
        is_bottom = box.y > vh * 0.7
        center_x = box.x + box.width / 2
        if position == "bottom-right":
            return is_bottom and center_x > vw * 0.6
        if position == "bottom-left":
            return is_bottom and center_x < vw * 0.4
        if position == "bottom-center":
            return is_bottom and vw * 0.3 <= center_x <= vw * 0.7
        return is_bottom

    return PositionalFilter(selector=selector, filter_fn=_filter)


def split_text_selector(selector: str) -> tuple[str, str | None]:
    """Split ``css:has-text("t")`` into ``(css, "t")``; plain CSS returns ``(css, None)``."""
    match = _HAS_TEXT_RE.search(selector)
    if match is None:
        return selector, None
    css = (selector[: match.start()] + selector[match.end() :]).strip()
    return css or "*", match.group(2)


__all__ = [
    "ALL_HEURISTIC_SELECTORS",
    "ANY_ELEMENT_SELECTOR",
    "ARIA_SELECTORS",
    "CLASS_ID_SELECTORS",
    "COOKIE_ACCEPT_SELECTORS",
    "IFRAME_SELECTORS",
    "TEXT_SELECTORS",
    "Box",
    "PositionalFilter",
    "build_positional_filter",
    "build_selectors_from_hints",
    "split_text_selector",
]
