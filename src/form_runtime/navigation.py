from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .conditions import evaluate_condition
from .schema import FormField

logger = logging.getLogger(__name__)


def split_pages(fields: Iterable[FormField]) -> list[list[FormField]]:
    pages: list[list[FormField]] = [[]]
    for item in fields:
        pages[-1].append(item)
        if item.type == "pagebreak":
            pages.append([])
    if len(pages) > 1 and not pages[-1]:
        pages.pop()
    return pages


def _page_break(page: list[FormField]) -> FormField | None:
    return next((item for item in page if item.type == "pagebreak"), None)


def next_page(pages: list[list[FormField]], current: int, values: Mapping[str, Any]) -> int:
    """Return the 0-based index of the page that follows ``current``.

    Navigation rules on the page break are tried in order; ``targetPage`` is
    1-based. Out-of-range targets are ignored.
    """
    total = len(pages)
    if current >= total - 1:
        return max(current, 0) if total else 0

    page_break = _page_break(pages[current])
    if page_break is not None:
        for rule in page_break.navigation_rules:
            if not evaluate_condition(rule.condition, values):
                continue
            target = rule.target_page - 1
            if 0 <= target < total:
                logger.debug("navigation_rule_matched", extra={"rule_id": rule.id, "target_page": target})
                return target
            logger.warning("navigation_target_out_of_range", extra={"rule_id": rule.id, "target_page": rule.target_page})

        if page_break.default_next_page is not None:
            target = page_break.default_next_page - 1
            if 0 <= target < total:
                return target

    return min(current + 1, total - 1)


def previous_page(current: int) -> int:
    return max(current - 1, 0)
