"""Detection of link-open requests in terminal output.

Agent CLIs running on a headless host cannot open a browser themselves (OAuth
login, docs links).  They print the URL instead; the relay turns recognised
patterns into ``url_open`` frames so the client can open them.
"""

from __future__ import annotations

import re

_URL = r"(https?://[^\s\x1b\x07'\"<>]+)"

URL_OPEN_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"OPEN_URL:\s*{_URL}"),
    re.compile(rf"(?:xdg-open|open|start)\s+{_URL}"),
    re.compile(rf"Opening\s+{_URL}", re.IGNORECASE),
    re.compile(rf"Visit:\s*{_URL}", re.IGNORECASE),
    re.compile(rf"View at:\s*{_URL}", re.IGNORECASE),
    re.compile(rf"Browse to:\s*{_URL}", re.IGNORECASE),
)

_ANSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_TRAILING = ".,;:)]}"


def find_open_urls(text: str) -> list[str]:
    """Return URLs the output asks to open, in order of appearance, without duplicates."""
    plain = _ANSI.sub("", text)
    found: list[tuple[int, str]] = []
    for pattern in URL_OPEN_PATTERNS:
        for match in pattern.finditer(plain):
            found.append((match.start(1), match.group(1).rstrip(_TRAILING)))

    urls: list[str] = []
    for _, url in sorted(found):
        if url not in urls:
            urls.append(url)
    return urls
