"""
descriptor_dictionary.py
-------------------------
Static bank-descriptor dictionary.

Loads the descriptor_dictionary table from config.yaml and compiles each
entry's keywords into whole-word regexes. This is the always-available tier
of the categorization cascade: no store, no network, pure lookup.

Entries are ordered; the first entry with a matching pattern wins and its
configured confidence is returned unchanged.

Dictionary updates happen in config.yaml, no code changes required.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from config.config_loader import get_descriptor_dictionary
from core.models import DescriptorMatch, TransactionClassification
from core.normalizer import normalize_descriptor


@dataclass(frozen=True)
class _CompiledEntry:
    patterns: tuple[re.Pattern, ...]
    match: DescriptorMatch


class DescriptorDictionary:
    """
    Ordered lookup from a descriptor to category + fixed confidence.

    Built once at init from the config table. Thread-safe for reads.
    """

    def __init__(self, entries: Optional[List[Dict]] = None):
        self._entries: List[_CompiledEntry] = []
        self._load(entries if entries is not None else get_descriptor_dictionary())

    def _load(self, entries: List[Dict]) -> None:
        """Validates and compiles every entry."""
        for position, entry in enumerate(entries):
            confidence = float(entry["confidence"])
            if not 0.0 <= confidence <= 1.0:
                raise ValueError(
                    f"Descriptor entry {position} ({entry.get('description', '?')}) "
                    f"has confidence {confidence} outside [0, 1]"
                )
            if not entry.get("patterns") and not entry.get("regex"):
                raise ValueError(f"Descriptor entry {position} has no patterns")

            compiled = [self._keyword_regex(p) for p in entry.get("patterns", [])]
            compiled += [re.compile(r, re.IGNORECASE) for r in entry.get("regex", [])]

            classification = entry.get("classification")
            self._entries.append(_CompiledEntry(
                patterns=tuple(p for p in compiled if p is not None),
                match=DescriptorMatch(
                    category_id=entry["category_id"],
                    subcategory_id=entry.get("subcategory_id"),
                    classification=TransactionClassification(classification) if classification else None,
                    confidence=confidence,
                    description=entry.get("description", ""),
                ),
            ))

    @staticmethod
    def _keyword_regex(keyword) -> Optional[re.Pattern]:
        """'PAO DE ACUCAR' -> r'\\bPAO DE ACUCAR\\b' on the normalized text."""
        words = normalize_descriptor(str(keyword)).upper()
        if not words:
            return None
        return re.compile(r"\b" + re.escape(words) + r"\b")

    @staticmethod
    def _prepare(descriptor: str) -> str:
        return normalize_descriptor(descriptor).upper()

    def lookup(self, descriptor: str) -> Optional[DescriptorMatch]:
        """
        Look up a raw or normalized descriptor.

        Returns:
            DescriptorMatch of the first matching entry, or None if no match.
        """
        if not descriptor:
            return None
        text = self._prepare(descriptor)
        if not text:
            return None

        for entry in self._entries:
            if any(p.search(text) for p in entry.patterns):
                return entry.match
        return None

    def get_category(self, descriptor: str) -> Optional[str]:
        """Shortcut: returns just the category_id or None."""
        match = self.lookup(descriptor)
        return match.category_id if match else None

    def get_all_categories(self) -> set[str]:
        """Returns every category the dictionary can suggest."""
        return {e.match.category_id for e in self._entries}

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"DescriptorDictionary(entries={len(self)}, categories={len(self.get_all_categories())})"
