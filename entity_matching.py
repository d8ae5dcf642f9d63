# entity_matching.py
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from rapidfuzz.distance import Levenshtein

from config import settings
from models import EntityRecord
from utils import log

_PUNCTUATION = re.compile(r'[^\w\s]|_')


def normalize_company_name(name: Optional[str], legal_suffixes: Optional[List[str]] = None) -> str:
    """
    Lower-cases a company name, strips punctuation and trailing legal-form suffixes.
    'ABC Trading L.L.C.' -> 'abc', 'Gulf Steel Co., Ltd' -> 'gulf steel'.
    Returns an empty string for names that are blank or consist only of suffixes.
    """
    if not name:
        return ""
    tokens = _PUNCTUATION.sub(' ', name.lower()).split()
    suffixes = [s.split() for s in (legal_suffixes if legal_suffixes is not None else settings.LEGAL_SUFFIXES)]
    # Longest suffixes first so 'general trading' wins over 'trading'
    suffixes.sort(key=len, reverse=True)

    stripped = True
    while tokens and stripped:
        stripped = False
        for suffix in suffixes:
            if len(tokens) >= len(suffix) and tokens[-len(suffix):] == suffix:
                tokens = tokens[:-len(suffix)]
                stripped = True
                break
    return " ".join(tokens)


class EntityMatcher(ABC):
    """Decides whether two entity records refer to the same business party."""

    @abstractmethod
    def match(self, a: Optional[EntityRecord], b: Optional[EntityRecord]) -> bool:
        ...


class FuzzyEntityMatcher(EntityMatcher):
    """
    Name-based matcher. Two names match when, after normalization, they are equal,
    one contains the other and covers enough of it, or their Levenshtein similarity
    clears the threshold. Address, contact, email and country are ignored.
    """

    def __init__(
        self,
        similarity_threshold: Optional[float] = None,
        substring_min_ratio: Optional[float] = None,
        legal_suffixes: Optional[List[str]] = None,
    ):
        self.similarity_threshold = (
            settings.ENTITY_NAME_SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.substring_min_ratio = (
            settings.ENTITY_SUBSTRING_MIN_RATIO if substring_min_ratio is None else substring_min_ratio
        )
        self.legal_suffixes = legal_suffixes

    def normalize(self, name: Optional[str]) -> str:
        return normalize_company_name(name, self.legal_suffixes)

    def match(self, a: Optional[EntityRecord], b: Optional[EntityRecord]) -> bool:
        if a is None or b is None:
            return False
        return self.match_names(a.name, b.name)

    def match_names(self, name_a: Optional[str], name_b: Optional[str]) -> bool:
        left = self.normalize(name_a)
        right = self.normalize(name_b)
        if not left or not right:
            return False
        if left == right:
            return True

        shorter, longer = sorted((left, right), key=len)
        if shorter in longer and len(shorter) >= self.substring_min_ratio * len(longer):
            log.debug(f"Entity substring match: '{name_a}' ~ '{name_b}'")
            return True

        similarity = Levenshtein.normalized_similarity(left, right)
        if similarity >= self.similarity_threshold:
            log.debug(f"Entity fuzzy match: '{name_a}' ~ '{name_b}' (similarity {similarity:.2f})")
            return True
        return False
