from dataclasses import dataclass
from typing import Iterable, List, Sequence, Set

from wikirunner.config import MAX_CANDIDATES
from wikirunner.errors import NoCandidatesError
from wikirunner.models import Node, canonical_title


@dataclass(frozen=True)
class CandidateList:
    candidates: List[str]
    used_fallback: bool


def visited_keys(titles: Iterable[str], current: Node) -> Set[str]:
    """
    Build the visited set: canonical keys of every page on the path, plus the current page.
    """
    keys = {canonical_title(t) for t in titles}
    keys.add(canonical_title(current.title))
    return keys


def filter_candidates(
    current: Node,
    links: Sequence[str],
    visited: Set[str],
    limit: int = MAX_CANDIDATES,
) -> CandidateList:
    """
    Turn the raw outgoing links of `current` into the ordered list a solver ranks.

    Links to pages already in `visited` are dropped. When that leaves nothing (every
    forward edge loops back), the filter falls back to all links except a self-loop
    so the run can keep moving. The result keeps source order and is capped at `limit`.
    """
    unique_links = list(dict.fromkeys(links))

    candidates = [link for link in unique_links if canonical_title(link) not in visited]
    used_fallback = False

    if not candidates:
        current_key = canonical_title(current.title)
        candidates = [link for link in unique_links if canonical_title(link) != current_key]
        used_fallback = True

    candidates = candidates[:limit]

    if not candidates:
        raise NoCandidatesError(f"No usable outgoing links from '{current.title}'.")

    return CandidateList(candidates=candidates, used_fallback=used_fallback)
