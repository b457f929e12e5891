"""Input cleaning shared by the pipeline services."""

import html

import bleach


def sanitize(text):
    """Strip all HTML tags from user input.

    Stored values are plain text: entities bleach escapes while stripping
    ("&", "<", ">") are turned back into characters. Escape on render.
    """
    if text is None:
        return text
    cleaned = bleach.clean(str(text), tags=[], strip=True)
    return html.unescape(cleaned).strip()


def sanitize_optional(text):
    """Like sanitize(), but blank becomes None."""
    text = sanitize(text)
    return text or None
