from __future__ import annotations

import contextlib
import json
import logging
import shutil
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from ..errors import CdpError
from .config import BrowserConfig, expand_path

_LOGGER = logging.getLogger("chatprobe.browser.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str


class BrowserLauncher:
    def __init__(self, config: BrowserConfig | None = None) -> None:
        self.config = config or BrowserConfig.from_env()
        self.process: subprocess.Popen | None = None

    def owns_running_browser(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def _build_common_flags(self) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.config.cdp_port}",
            f"--user-data-dir={expand_path(self.config.profile_path)}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-background-networking",
            "--disable-dev-shm-usage",
            "--mute-audio",
        ]
        if self.config.headless:
            flags.append("--headless=new")
        else:
            flags.append("--window-size=1280,900")
        return flags

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = self._build_common_flags() + self.config.extra_flags
        if extra:
            flags.extend(extra)
        return [self.config.binary_path, *flags]

    def _port_available(self, timeout: float = 0.2) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                return sock.connect_ex(("127.0.0.1", self.config.cdp_port)) != 0
            except OSError:
                return False

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        endpoint = f"http://127.0.0.1:{self.config.cdp_port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def cdp_version(self, timeout: float = 2.0) -> dict[str, Any]:
        endpoint = f"http://127.0.0.1:{self.config.cdp_port}/json/version"
        try:
            req = Request(endpoint, headers={"User-Agent": "chatprobe"})
            with urlopen(req, timeout=timeout) as resp:
                return json.loads(resp.read().decode())
        except (OSError, URLError, ValueError) as exc:
            raise CdpError(f"CDP not reachable on port {self.config.cdp_port}: {exc}") from exc

    def browser_ws_url(self) -> str:
        ws_url = self.cdp_version().get("webSocketDebuggerUrl")
        if not isinstance(ws_url, str) or not ws_url:
            raise CdpError("CDP /json/version did not report webSocketDebuggerUrl")
        return ws_url

    def ensure_running(self, timeout: float | None = None) -> LaunchResult:
        timeout = self.config.launch_timeout if timeout is None else timeout

        if self.config.mode == "attach":
            if self.cdp_ready():
                return LaunchResult([], False, "Attached to existing Chrome on CDP port")
            return LaunchResult(
                [],
                False,
                f"Attach mode: no Chrome listening on CDP port {self.config.cdp_port}",
            )

        if self.owns_running_browser() and self.cdp_ready():
            return LaunchResult([], False, "Chrome already running")

        if self.cdp_ready() or not self._port_available():
            # Launch mode only drives a Chrome it owns; move off a port someone else holds.
            busy = self.config.cdp_port
            self.config.cdp_port = self.find_free_port()
            if not self.config.ephemeral_profile:
                self.config.profile_path = f"{self.config.profile_path}-{self.config.cdp_port}"
            _LOGGER.info("browser port_busy port=%s relaunch_port=%s", busy, self.config.cdp_port)

        with contextlib.suppress(Exception):
            Path(expand_path(self.config.profile_path)).mkdir(parents=True, exist_ok=True)

        cmd = self.build_launch_command()
        try:
            self.process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            return LaunchResult(cmd, False, str(exc))

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.cdp_ready():
                _LOGGER.info("browser launched port=%s headless=%s", self.config.cdp_port, self.config.headless)
                return LaunchResult(cmd, True, "Chrome launched")
            time.sleep(0.1)
        return LaunchResult(cmd, False, "Chrome launch timed out")

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Best-effort stop of the launcher-owned Chrome process."""
        proc = self.process
        self.process = None
        try:
            if proc is None:
                return False
            if proc.poll() is not None:
                return True

            with contextlib.suppress(Exception):
                proc.terminate()

            deadline = time.time() + max(0.1, float(timeout))
            while time.time() < deadline:
                if proc.poll() is not None:
                    return True
                time.sleep(0.05)

            # Escalate to kill.
            with contextlib.suppress(Exception):
                proc.kill()
                proc.wait(timeout=1.0)
            return True
        finally:
            if self.config.ephemeral_profile:
                shutil.rmtree(expand_path(self.config.profile_path), ignore_errors=True)

    @staticmethod
    def find_free_port() -> int:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]


__all__ = ["BrowserLauncher", "LaunchResult"]
