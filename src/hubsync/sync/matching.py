"""Company lookup by name with duplicate tie-breaking.

Company names are not unique keys remotely, so resolution is a two-step search:
1. Exact (EQ) search on the name; a hit is taken as-is.
2. Token (CONTAINS_TOKEN) search on the normalized name; the candidate whose
   normalized name is most similar wins, if the similarity clears the threshold.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from difflib import SequenceMatcher

import structlog

from src.hubsync.sync.directory import RemoteDirectory
from src.hubsync.sync.schemas import ObjectKind, RemoteRecord, SearchFilter, SearchOperator

logger = structlog.get_logger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_company_name(name: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    name = _PUNCTUATION.sub("", name.strip().lower())
    return _WHITESPACE.sub(" ", name).strip()


def name_similarity(left: str, right: str) -> float:
    """Similarity of two names as a percentage (0-100)."""
    if not left and not right:
        return 100.0
    return SequenceMatcher(None, left, right).ratio() * 100.0


def best_name_match(
    name: str, candidates: Iterable[RemoteRecord], threshold: float
) -> RemoteRecord | None:
    """Pick the candidate most similar to name, scoring at least threshold.

    Ties keep the earliest candidate in result order.
    """
    target = normalize_company_name(name)
    best: RemoteRecord | None = None
    best_score = -1.0

    for candidate in candidates:
        candidate_name = normalize_company_name(str(candidate.properties.get("name") or ""))
        score = name_similarity(target, candidate_name)
        if score >= threshold and score > best_score:
            best, best_score = candidate, score

    return best


class CompanyMatcher:
    """Resolves a company name to a remote company record.

    Args:
        directory: Remote directory used for searches.
        threshold: Minimum similarity percentage for token matches.
    """

    def __init__(self, directory: RemoteDirectory, threshold: float = 80.0) -> None:
        self._directory = directory
        self._threshold = threshold

    async def find_by_name(self, name: str) -> RemoteRecord | None:
        """Find the remote company for a name, or None if nothing close enough exists."""
        clean = normalize_company_name(name)
        if not clean:
            return None

        exact = await self._directory.search(
            ObjectKind.COMPANY,
            SearchFilter(property_name="name", operator=SearchOperator.EQ, value=name.strip()),
        )
        if exact:
            same = [r for r in exact if normalize_company_name(str(r.properties.get("name") or "")) == clean]
            match = same[0] if same else exact[0]
            logger.info(
                "company.exact_match",
                search_name=name,
                found_name=match.properties.get("name"),
                company_id=match.id,
            )
            return match

        candidates = await self._directory.search(
            ObjectKind.COMPANY,
            SearchFilter(property_name="name", operator=SearchOperator.CONTAINS_TOKEN, value=clean),
        )
        match = best_name_match(clean, candidates, self._threshold)
        if match is not None:
            logger.info(
                "company.partial_match",
                search_name=name,
                found_name=match.properties.get("name"),
                company_id=match.id,
            )
        else:
            logger.debug("company.no_match", search_name=name, candidates=len(candidates))
        return match
