"""JavaScript evaluated in pages by the DevTools backend.

Element lookups walk the main document first and then every same-origin
child frame, translating frame-local rectangles into top-level viewport
coordinates. Text filtering implements the ``:has-text()`` pseudo-class as a
case-insensitive substring match on the element's rendered text.
"""

from __future__ import annotations

import json
from typing import Any

_COLLECT = r"""
const __cpCollect = (css, text) => {
  const out = [];
  const needle = text === null ? null : String(text).toLowerCase();
  const visit = (doc, offX, offY) => {
    let nodes = [];
    try { nodes = Array.from(doc.querySelectorAll(css)); } catch (e) { return; }
    for (const el of nodes) {
      if (needle !== null) {
        const t = String(el.innerText || el.textContent || '').replace(/\s+/g, ' ').toLowerCase();
        if (!t.includes(needle)) continue;
      }
      const r = el.getBoundingClientRect();
      const view = doc.defaultView;
      const st = view ? view.getComputedStyle(el) : null;
      const visible = r.width > 0 && r.height > 0 &&
        (!st || (st.visibility !== 'hidden' && st.display !== 'none' && st.opacity !== '0'));
      out.push({el, visible, x: r.left + offX, y: r.top + offY, width: r.width, height: r.height});
    }
    for (const frame of Array.from(doc.querySelectorAll('iframe, frame'))) {
      let child = null;
      try { child = frame.contentDocument; } catch (e) { child = null; }
      if (!child) continue;
      const fr = frame.getBoundingClientRect();
      visit(child, offX + fr.left, offY + fr.top);
    }
  };
  visit(document, 0, 0);
  return out;
};
"""

BOXES = (
    "(function(css, text) {"
    + _COLLECT
    + """
  return __cpCollect(css, text)
    .filter((m) => m.visible)
    .map((m) => ({x: m.x, y: m.y, width: m.width, height: m.height}));
})"""
)

CLICK_POINT = (
    "(function(css, text, index) {"
    + _COLLECT
    + """
  const visible = __cpCollect(css, text).filter((m) => m.visible);
  if (visible.length <= index) return null;
  const target = visible[index].el;
  try { target.scrollIntoView({block: 'center', inline: 'center'}); } catch (e) {}
  const again = __cpCollect(css, text).find((m) => m.el === target);
  if (!again) return null;
  return {x: again.x + again.width / 2, y: again.y + again.height / 2, tag: target.tagName};
})"""
)

CLICK_ELEMENT = (
    "(function(css, text, index) {"
    + _COLLECT
    + """
  const visible = __cpCollect(css, text).filter((m) => m.visible);
  if (visible.length <= index) return false;
  const el = visible[index].el;
  try { el.scrollIntoView({block: 'center'}); } catch (e) {}
  el.click();
  return true;
})"""
)

FOCUS_AND_CLEAR = (
    "(function(css, text) {"
    + _COLLECT
    + """
  const match = __cpCollect(css, text).find((m) => m.visible);
  if (!match) return false;
  const el = match.el;
  el.focus();
  if ('value' in el) {
    el.value = '';
    el.dispatchEvent(new Event('input', {bubbles: true}));
  } else if (el.isContentEditable) {
    el.textContent = '';
  }
  return true;
})"""
)

STORAGE_DUMP = """(function(kind) {
  try {
    const store = window[kind];
    const out = {};
    for (let i = 0; i < store.length; i++) {
      const key = store.key(i);
      out[key] = store.getItem(key);
    }
    return out;
  } catch (e) {
    return {};
  }
})"""

PAGE_INFO = """(function() {
  return {
    title: document.title || '',
    url: location.href,
    width: window.innerWidth,
    height: window.innerHeight,
    iframes: document.querySelectorAll('iframe, frame').length,
  };
})"""


def call(fn_source: str, *args: Any) -> str:
    """Render an immediately-invoked call of ``fn_source`` with JSON-encoded args."""
    rendered = ", ".join(json.dumps(arg) for arg in args)
    return f"{fn_source}({rendered})"


__all__ = ["BOXES", "CLICK_ELEMENT", "CLICK_POINT", "FOCUS_AND_CLEAR", "PAGE_INFO", "STORAGE_DUMP", "call"]
