"""Inline button factory with optional colour styles.

Recent Bot API versions accept ``InlineKeyboardButton.style``
("danger", "success", "primary"); older aiogram builds reject the field, in
which case the button is created without it.
"""

from __future__ import annotations

from aiogram.types import InlineKeyboardButton

STYLE_DANGER = "danger"
STYLE_SUCCESS = "success"
STYLE_PRIMARY = "primary"

_ALLOWED_STYLES = frozenset({STYLE_DANGER, STYLE_SUCCESS, STYLE_PRIMARY})


def ikb(
    text: str,
    *,
    callback_data: str | None = None,
    url: str | None = None,
    style: str | None = None,
) -> InlineKeyboardButton:
    fields: dict[str, object] = {"text": str(text)}
    if callback_data is not None:
        fields["callback_data"] = str(callback_data)
    if url is not None:
        fields["url"] = str(url)

    normalized = str(style or "").strip().lower()
    if normalized in _ALLOWED_STYLES:
        try:
            return InlineKeyboardButton(**fields, style=normalized)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            pass
    return InlineKeyboardButton(**fields)  # type: ignore[arg-type]
