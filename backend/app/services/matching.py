"""Name matching for the contact-knowledge step of the unlock chain.

The default matcher is deliberately loose (case-insensitive containment in
either direction), which is easy to satisfy with very short names. It is
kept behind ``NameMatcher`` so a stricter comparison can be dropped in
without touching the protocol.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

NameMatcher = Callable[[str, str], bool]


def _normalize(name: str) -> str:
    return " ".join(name.split()).casefold()


def substring_name_match(claimed: str, known: str) -> bool:
    a, b = _normalize(claimed), _normalize(known)
    if not a or not b:
        return False
    return a in b or b in a


def exact_name_match(claimed: str, known: str) -> bool:
    a, b = _normalize(claimed), _normalize(known)
    return bool(a) and a == b


def match_contacts(
    claimed: Sequence[str],
    known: Sequence[str],
    matcher: NameMatcher = substring_name_match,
) -> list[tuple[str, str]]:
    """Pair claimed names with known names, each known name used at most once.

    Returns the ``(claimed, known)`` pairs that matched. A single vague
    claim such as "a" can therefore only ever account for one party.
    """
    remaining = list(known)
    pairs: list[tuple[str, str]] = []
    for name in claimed:
        for idx, candidate in enumerate(remaining):
            if matcher(name, candidate):
                pairs.append((name, candidate))
                del remaining[idx]
                break
    return pairs
