from __future__ import annotations

import logging
import re
from typing import Any, Optional


logger = logging.getLogger(__name__)


DEFAULT_APPROVAL_INSTRUCTION = "Approve the sign-in request in your Microsoft Authenticator app."

# Provider phrasing around the number-match challenge, most specific first.
_PREFERRED_RES = [
    re.compile(r"enter\s+(?:the\s+)?number\s+(\d{2})(?!\d)", re.I),
    re.compile(r"number\s+(\d{2})(?!\d)", re.I),
    re.compile(r"code\s+(\d{2})(?!\d)", re.I),
    re.compile(r"(?<![\d#])(\d{2})\s+on\s+your", re.I),
    re.compile(r"(?<![\d#])(\d{2})\s+in\s+the", re.I),
]
_FALLBACK_RE = re.compile(r"\b(\d{2})\b")


def extract_number_match_code(text: Optional[str]) -> Optional[str]:
    """
    Pull the two-digit number-matching challenge out of the sign-in page text.

    Returns None when no challenge is shown; that is not an error (plain "approve" pushes have no number).
    """
    if not text:
        return None
    s = re.sub(r"\s+", " ", text)

    # 1) Phrase-based patterns.
    for r in _PREFERRED_RES:
        m = r.search(s)
        if m:
            return m.group(1)

    # 2) Fallback: any standalone two-digit token, ignoring "#12"-style references.
    for m in _FALLBACK_RE.finditer(s):
        start = m.start(1)
        if start > 0 and s[start - 1] == "#":
            continue
        return m.group(1)

    return None


async def read_number_match_code(page: Any) -> Optional[str]:
    try:
        text = await page.evaluate("() => (document.body && document.body.innerText) || ''")
    except Exception:
        logger.debug("Could not read sign-in page text for number match.", exc_info=True)
        return None
    return extract_number_match_code(text)


def approval_instructions(code: Optional[str]) -> str:
    if code:
        return f"Open Microsoft Authenticator and enter the number {code} to approve the sign-in."
    return DEFAULT_APPROVAL_INSTRUCTION
