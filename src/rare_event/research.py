"""
Interface of the literature-search collaborator.

The collaborator takes a free-text research question and returns a prose
summary plus an ordered list of cited sources. It lives outside the
numerical core: nothing in the engine calls it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Protocol


@dataclass(frozen=True)
class SearchSource:
    title: str
    uri: str


@dataclass(frozen=True)
class ResearchResult:
    summary_text: str
    sources: List[SearchSource] = field(default_factory=list)


class LiteratureSearch(Protocol):
    def search(self, question: str) -> ResearchResult:
        ...


def unique_sources(sources: Iterable[SearchSource]) -> List[SearchSource]:
    """Drop repeated URIs, keeping first-seen order."""
    seen = set()
    unique = []
    for source in sources:
        if source.uri in seen:
            continue
        seen.add(source.uri)
        unique.append(source)
    return unique
