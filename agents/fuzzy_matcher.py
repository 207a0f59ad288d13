# agents/fuzzy_matcher.py
from typing import Optional

from rapidfuzz.distance import Levenshtein

from agents.reference_data import ReferenceDataService, normalize_alias

DEFAULT_THRESHOLD = 2


class FuzzyMatcher:
    """
    Resolve misspelled place names to airport codes by Levenshtein distance
    against every known alias.

    Among aliases within ``threshold`` the smallest distance wins; ties go to
    the shortest alias, then the lexicographically smallest, so the answer
    does not depend on set iteration order.
    """

    def __init__(self, reference: ReferenceDataService, threshold: int = DEFAULT_THRESHOLD):
        self._reference = reference
        self.threshold = threshold

    def find_closest_match(self, text: Optional[str], threshold: Optional[int] = None) -> Optional[str]:
        index = self._reference.index
        threshold = self.threshold if threshold is None else threshold
        needle = normalize_alias(text)
        if not needle:
            return None

        direct = index.code_for_alias(needle)
        if direct:
            return direct

        best = None
        for alias in index.all_aliases():
            # score_cutoff makes rapidfuzz bail out early; anything above it comes back as cutoff + 1
            distance = Levenshtein.distance(needle, alias, score_cutoff=threshold)
            if distance > threshold:
                continue
            candidate = (distance, len(alias), alias)
            if best is None or candidate < best:
                best = candidate

        if best is None:
            return None
        return index.code_for_alias(best[2])
