"""Locate and activate the chat widget on a loaded page.

Three strategies:
- heuristic: hint-derived selectors, then the generic lists, then positional
  matching when both ``position`` and ``element_type`` are hinted;
- selector: click one caller-given selector (main frame or any iframe);
- steps: run an ordered click/type/wait/waitForSelector/evaluate script.

A heuristic click only counts when a WebSocket shows up afterwards.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .browser.base import BrowserPage
from .errors import ActivationError, ConfigurationError
from .selectors import ALL_HEURISTIC_SELECTORS, build_positional_filter, build_selectors_from_hints
from .types import BrowserWebSocketConfig, InteractionStep

_LOGGER = logging.getLogger("chatprobe.widget")

WS_WAIT_AFTER_CLICK = 5.0
CLICK_TIMEOUT = 2.0
DEFAULT_STEP_TIMEOUT_MS = 10_000
_DEFAULT_VIEWPORT = (1280, 720)

ProgressFn = Callable[[str], None]


@dataclass
class DetectionReport:
    strategy: str
    selector: str | None = None
    tried: list[tuple[str, bool]] = field(default_factory=list)


class WidgetDetector:
    def __init__(
        self,
        page: BrowserPage,
        config: BrowserWebSocketConfig,
        *,
        on_progress: ProgressFn | None = None,
        ws_wait: float = WS_WAIT_AFTER_CLICK,
        click_timeout: float = CLICK_TIMEOUT,
    ) -> None:
        self.page = page
        self.config = config
        self._progress = on_progress
        self.ws_wait = ws_wait
        self.click_timeout = click_timeout

    def _emit(self, message: str) -> None:
        if self._progress is not None:
            self._progress(message)

    def ws_detected(self) -> bool:
        return bool(self.page.websockets())

    def _wait_for_ws(self, timeout: float) -> bool:
        deadline = time.time() + timeout
        while True:
            if self.ws_detected():
                return True
            remaining = deadline - time.time()
            if remaining <= 0:
                return False
            self.page.pump(min(0.2, remaining))

    def detect(self) -> DetectionReport:
        detection = self.config.widget_detection
        deadline = time.time() + detection.timeout / 1000.0
        if detection.strategy == "selector":
            if not detection.selector:
                raise ConfigurationError(reason='Widget detection strategy "selector" requires a selector')
            return self._detect_by_selector(detection.selector, deadline)
        if detection.strategy == "steps":
            if not detection.steps:
                raise ConfigurationError(reason='Widget detection strategy "steps" requires at least one step')
            return self._execute_steps(detection.steps, deadline)
        return self._detect_heuristic(deadline)

    # -- heuristic ------------------------------------------------------------

    def _try_click(self, selector: str, deadline: float) -> bool:
        budget = min(self.click_timeout, max(0.0, deadline - time.time()))
        try:
            if not self.page.click(selector, timeout=budget):
                return False
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("widget click_failed selector=%s error=%s", selector, exc)
            return False
        return self._wait_for_ws(min(self.ws_wait, max(0.0, deadline - time.time())))

    def _detect_heuristic(self, deadline: float) -> DetectionReport:
        hints = self.config.widget_detection.hints
        report = DetectionReport(strategy="heuristic")

        candidates = [(sel, "hint") for sel in build_selectors_from_hints(hints)]
        candidates += [(sel, "generic") for sel in ALL_HEURISTIC_SELECTORS]
        for selector, source in candidates:
            if time.time() >= deadline:
                break
            self._emit(f"Trying {source} selector: {selector}")
            found = self._try_click(selector, deadline)
            report.tried.append((selector, found))
            if found:
                self._emit(f"Widget found with {source} selector: {selector}")
                report.selector = selector
                return report

        if hints is not None and hints.position and hints.element_type and time.time() < deadline:
            self._emit(f"Trying positional matching ({hints.position}, {hints.element_type})")
            matched = self._detect_positional(hints.position, hints.element_type, deadline)
            if matched is not None:
                report.selector = matched
                return report

        raise self._failure(report)

    def _detect_positional(self, position: str, element_type: str, deadline: float) -> str | None:
        positional = build_positional_filter(position, element_type)
        try:
            width, height = self.page.viewport()
        except Exception:  # noqa: BLE001
            width, height = 0, 0
        if width <= 0 or height <= 0:
            width, height = self.config.browser.viewport or _DEFAULT_VIEWPORT

        boxes = self.page.element_boxes(positional.selector)
        for index, box in enumerate(boxes):
            if time.time() >= deadline:
                break
            if not positional.matches(box, width, height):
                continue
            try:
                if not self.page.click_nth(positional.selector, index):
                    continue
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("widget positional_click_failed index=%d error=%s", index, exc)
                continue
            if self._wait_for_ws(min(self.ws_wait, max(0.0, deadline - time.time()))):
                return f"{positional.selector} >> nth={index}"
        return None

    def _failure(self, report: DetectionReport) -> ActivationError:
        title, url, iframes = "unknown", "unknown", 0
        try:
            title = self.page.title()
            url = self.page.url()
            iframes = self.page.frame_count()
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("widget debug_info_failed error=%s", exc)
        self._emit("Widget detection failed")
        return ActivationError(
            reason=(
                f"Heuristic widget detection failed: no widget found. "
                f'Tried {len(report.tried)} selectors. Page: "{title}" ({iframes} iframes)'
            ),
            suggestion="Try a different detection strategy or provide more specific hints",
            details={"pageUrl": url, "pageTitle": title, "iframeCount": iframes, "selectorsTried": len(report.tried)},
        )

    # -- selector / steps -----------------------------------------------------

    def _detect_by_selector(self, selector: str, deadline: float) -> DetectionReport:
        self._emit(f"Clicking selector: {selector}")
        if not self.page.click(selector, timeout=max(0.0, deadline - time.time())):
            raise ActivationError(
                reason=f'Widget selector "{selector}" not found on page or in any iframe',
                suggestion="Check the selector against the live page",
                details={"selector": selector},
            )
        return DetectionReport(strategy="selector", selector=selector)

    def _execute_steps(self, steps: tuple[InteractionStep, ...], deadline: float) -> DetectionReport:
        for index, step in enumerate(steps):
            if time.time() >= deadline:
                raise ActivationError(reason=f"Interaction steps timed out before step {index + 1} ({step.action})")
            self._emit(f"Step {index + 1}/{len(steps)}: {step.action}")
            self._execute_step(step, index, deadline)
        return DetectionReport(strategy="steps")

    def _execute_step(self, step: InteractionStep, index: int, deadline: float) -> Any:
        timeout = min((step.timeout or DEFAULT_STEP_TIMEOUT_MS) / 1000.0, max(0.0, deadline - time.time()))
        where = f"step {index + 1} ({step.action})"

        if step.action == "click":
            if not step.selector:
                raise ConfigurationError(reason=f"Click {where} requires a selector")
            if not self.page.click(step.selector, timeout=timeout):
                raise ActivationError(reason=f'{where}: "{step.selector}" not found', details={"step": index})
            return None

        if step.action == "type":
            if not step.selector or not step.value:
                raise ConfigurationError(reason=f"Type {where} requires a selector and a value")
            if not self.page.fill(step.selector, step.value, timeout=timeout):
                raise ActivationError(reason=f'{where}: "{step.selector}" not found', details={"step": index})
            return None

        if step.action == "wait":
            try:
                duration_ms = int(step.value or "")
            except ValueError:
                raise ConfigurationError(reason=f"Wait {where} requires a duration in ms") from None
            self.page.pump(max(0, duration_ms) / 1000.0)
            return None

        if step.action == "waitForSelector":
            if not step.selector:
                raise ConfigurationError(reason=f"WaitForSelector {where} requires a selector")
            if not self.page.wait_for_selector(step.selector, timeout=timeout):
                raise ActivationError(
                    reason=f'{where}: "{step.selector}" did not appear within {timeout:.1f}s',
                    details={"step": index},
                )
            return None

        if step.action == "evaluate":
            if not step.script:
                raise ConfigurationError(reason=f"Evaluate {where} requires a script")
            return self.page.evaluate(step.script)

        raise ConfigurationError(reason=f"Unknown step action: {step.action}")


__all__ = ["CLICK_TIMEOUT", "WS_WAIT_AFTER_CLICK", "DetectionReport", "WidgetDetector"]
