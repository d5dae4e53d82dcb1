from __future__ import annotations


def test_heuristic_selectors_are_deduplicated_and_ordered() -> None:
    from chatprobe.selectors import ALL_HEURISTIC_SELECTORS, IFRAME_SELECTORS, TEXT_SELECTORS

    assert len(ALL_HEURISTIC_SELECTORS) == len(set(ALL_HEURISTIC_SELECTORS))
    assert ALL_HEURISTIC_SELECTORS[0] == IFRAME_SELECTORS[0]
    assert ALL_HEURISTIC_SELECTORS[-1] == TEXT_SELECTORS[-1]
    assert 'iframe[src*="intercom"]' in ALL_HEURISTIC_SELECTORS


def test_hints_expand_in_specificity_order() -> None:
    from chatprobe.selectors import build_selectors_from_hints
    from chatprobe.types import WidgetHints

    hints = WidgetHints(
        button_text=("Talk to us",),
        contains_class=("bubble",),
        contains_id=("support",),
        iframe_src=("vendor.example",),
        data_attributes={"data-chat": "open"},
    )
    selectors = build_selectors_from_hints(hints)
    assert selectors == [
        'button:has-text("Talk to us")',
        'a:has-text("Talk to us")',
        'div[role="button"]:has-text("Talk to us")',
        '[class*="bubble"]',
        '[id*="support"]',
        'iframe[src*="vendor.example"]',
        '[data-chat="open"]',
    ]


def test_hints_scoped_by_container() -> None:
    from chatprobe.selectors import build_selectors_from_hints
    from chatprobe.types import WidgetHints

    selectors = build_selectors_from_hints(WidgetHints(contains_class=("launcher",), within_selector="#footer"))
    assert selectors == ['#footer [class*="launcher"]']
    assert build_selectors_from_hints(None) == []


def test_positional_filter_bottom_right() -> None:
    from chatprobe.selectors import ANY_ELEMENT_SELECTOR, Box, build_positional_filter

    flt = build_positional_filter("bottom-right")
    assert flt.selector == ANY_ELEMENT_SELECTOR
    assert flt.matches(Box(x=1200, y=650, width=60, height=60), 1280, 720)
    assert not flt.matches(Box(x=20, y=650, width=60, height=60), 1280, 720)
    assert not flt.matches(Box(x=1200, y=100, width=60, height=60), 1280, 720)


def test_positional_filter_left_center_and_element_type() -> None:
    from chatprobe.selectors import Box, build_positional_filter

    left = build_positional_filter("bottom-left", "button")
    assert left.selector == "button"
    assert left.matches(Box(x=10, y=600, width=50, height=50), 1000, 800)

    center = build_positional_filter("bottom-center")
    assert center.matches(Box(x=480, y=700, width=40, height=40), 1000, 800)
    assert not center.matches(Box(x=900, y=700, width=40, height=40), 1000, 800)


def test_split_text_selector() -> None:
    from chatprobe.selectors import split_text_selector

    assert split_text_selector('button:has-text("Chat")') == ("button", "Chat")
    assert split_text_selector(":has-text('Hilfe')") == ("*", "Hilfe")
    assert split_text_selector("#launcher") == ("#launcher", None)
