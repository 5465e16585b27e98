import re
from typing import Optional

_TAG = re.compile(r"<[^>]*>")
_SCRIPT_BLOCK = re.compile(r"(?is)<(script|style)\b.*?</\1\s*>")
_HANDLER = re.compile(r"(?i)javascript:|\bon[a-z]+\s*=")


class TextValidator:
    """Checks for catalog fields and clean-up of reader-supplied text."""

    MAX_COMMENT_LENGTH = 2000

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        # a title needs at least one letter; "1984" style titles are spelled out
        return bool(title) and any(ch.isalpha() for ch in title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        name = (author or "").strip()
        return bool(name) and not name.isdigit()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        """Drop markup, script bodies and inline handlers from comment text."""
        if not text:
            return ""
        cleaned = _SCRIPT_BLOCK.sub("", text)
        cleaned = _TAG.sub("", cleaned)
        cleaned = _HANDLER.sub("", cleaned)
        return cleaned.strip()


class RatingValidator:
    """Star ratings attached to comments: 1 to 5, or absent."""

    MIN = 1
    MAX = 5

    @staticmethod
    def is_valid(rating: Optional[int]) -> bool:
        if rating is None:
            return True
        # bool is an int subclass; True is not a rating
        if isinstance(rating, bool) or not isinstance(rating, int):
            return False
        return RatingValidator.MIN <= rating <= RatingValidator.MAX
