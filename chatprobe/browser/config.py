from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from ..config import _bool_env, _float_env

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Avoid snap builds first: they ignore --user-data-dir.
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    "/snap/bin/chromium",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _default_profile() -> str:
    return str(Path(tempfile.gettempdir()) / "chatprobe-profile")


@dataclass
class BrowserConfig:
    binary_path: str
    profile_path: str
    cdp_port: int = 9222
    mode: str = "launch"
    headless: bool = True
    extra_flags: list[str] = field(default_factory=list)
    cdp_timeout: float = 10.0
    launch_timeout: float = 15.0
    ephemeral_profile: bool = False

    @staticmethod
    def normalize_mode(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"attach", "connect", "external"}:
            return "attach"
        return "launch"

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("CHATPROBE_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> BrowserConfig:
        flags_raw = os.environ.get("CHATPROBE_BROWSER_FLAGS", "")
        return cls(
            binary_path=cls.detect_binary(),
            profile_path=expand_path(os.environ.get("CHATPROBE_BROWSER_PROFILE") or _default_profile()),
            cdp_port=int(os.environ.get("CHATPROBE_BROWSER_PORT", "9222")),
            mode=cls.normalize_mode(os.environ.get("CHATPROBE_BROWSER_MODE")),
            headless=_bool_env("CHATPROBE_HEADLESS", True),
            extra_flags=[flag.strip() for flag in flags_raw.split(",") if flag.strip()],
            cdp_timeout=_float_env("CHATPROBE_CDP_TIMEOUT", 10.0, lo=1.0, hi=120.0),
            launch_timeout=_float_env("CHATPROBE_LAUNCH_TIMEOUT", 15.0, lo=1.0, hi=120.0),
        )


__all__ = ["BrowserConfig", "expand_path"]
