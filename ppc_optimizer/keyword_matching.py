"""
Keyword text normalization and match-type semantics.

    exact   the search term equals the keyword
    phrase  the keyword's words appear in the term contiguously and in order
    broad   every keyword word appears somewhere in the term
"""

import re
from typing import Optional

from ppc_optimizer.schemas import MatchType

_WHITESPACE = re.compile(r"\s+")
_BROAD_MODIFIER = re.compile(r"(^|\s)\+(?=\S)")


def infer_match_type(raw_text: str) -> Optional[MatchType]:
    """Match type implied by the keyword's own syntax, if any."""
    text = (raw_text or "").strip()
    if len(text) >= 2 and text.startswith("[") and text.endswith("]"):
        return MatchType.EXACT
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        return MatchType.PHRASE
    if _BROAD_MODIFIER.search(text):
        return MatchType.BROAD
    return None


def normalize_keyword(raw_text: str) -> str:
    """Case-fold, strip match-type syntax and collapse whitespace."""
    text = (raw_text or "").strip().casefold()
    text = text.replace("[", " ").replace("]", " ").replace('"', " ")
    text = _BROAD_MODIFIER.sub(r"\1", text)
    return _WHITESPACE.sub(" ", text).strip()


def _tokens(text: str) -> list[str]:
    normalized = normalize_keyword(text)
    return normalized.split(" ") if normalized else []


def keyword_matches(keyword: str, search_term: str, match_type: MatchType) -> bool:
    kw = _tokens(keyword)
    term = _tokens(search_term)
    if not kw or not term:
        return False
    if match_type == MatchType.EXACT:
        return kw == term
    if match_type == MatchType.PHRASE:
        width = len(kw)
        return any(term[i:i + width] == kw for i in range(len(term) - width + 1))
    return set(kw).issubset(term)


def match_type_breadth(match_type: MatchType) -> int:
    """Exact < phrase < broad."""
    return {MatchType.EXACT: 0, MatchType.PHRASE: 1, MatchType.BROAD: 2}[match_type]
