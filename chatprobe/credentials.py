from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .browser.base import BrowserContext, BrowserPage

_LOGGER = logging.getLogger("chatprobe.credentials")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Credentials:
    cookies: tuple[dict[str, str], ...] = ()
    local_storage: dict[str, str] = field(default_factory=dict)
    session_storage: dict[str, str] = field(default_factory=dict)


def _narrow_cookie(raw: Mapping[str, Any]) -> dict[str, str]:
    return {
        "name": str(raw.get("name") or ""),
        "value": str(raw.get("value") or ""),
        "domain": str(raw.get("domain") or ""),
    }


def _safe_read(label: str, read: Callable[[], T], empty: T) -> T:
    try:
        return read()
    except Exception as exc:  # noqa: BLE001
        _LOGGER.debug("credentials read_failed source=%s error=%s", label, exc)
        return empty


class CredentialExtractor:
    """Read cookies and web storage from a live page, tolerating partial failure."""

    def __init__(self, executor: ThreadPoolExecutor | None = None) -> None:
        self._executor = executor

    def extract(self, page: BrowserPage, context: BrowserContext | None = None) -> Credentials:
        ctx = context if context is not None else page.context

        def _cookies() -> tuple[dict[str, str], ...]:
            return tuple(_narrow_cookie(c) for c in ctx.cookies() if isinstance(c, Mapping))

        def _local() -> dict[str, str]:
            return {str(k): str(v) for k, v in (page.local_storage() or {}).items()}

        def _session() -> dict[str, str]:
            return {str(k): str(v) for k, v in (page.session_storage() or {}).items()}

        if self._executor is not None:
            return self._run(self._executor, _cookies, _local, _session)
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="chatprobe-creds") as pool:
            return self._run(pool, _cookies, _local, _session)

    @staticmethod
    def _run(pool: ThreadPoolExecutor, cookies, local, session) -> Credentials:  # noqa: ANN001
        f_cookies = pool.submit(_safe_read, "cookies", cookies, ())
        f_local = pool.submit(_safe_read, "localStorage", local, {})
        f_session = pool.submit(_safe_read, "sessionStorage", session, {})
        return Credentials(
            cookies=f_cookies.result(),
            local_storage=f_local.result(),
            session_storage=f_session.result(),
        )


def build_cookie_header(cookies: Iterable[Mapping[str, Any]] | None) -> str:
    if not cookies:
        return ""
    return "; ".join(f"{c.get('name', '')}={c.get('value', '')}" for c in cookies)


__all__ = ["CredentialExtractor", "Credentials", "build_cookie_header"]
