"""
Query Understanding Service

Pure, deterministic pre-retrieval query processing: normalization, intent
detection with entity lookup, and synonym-based query expansion.
"""
from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..models.search import EntityMatch, QueryExpansion, QueryIntent, SynonymGroup
from .keyword_search_service import extract_keywords

INTENT_PATTERNS: Dict[str, List[str]] = {
    "greeting": ["hello", "hi", "hey", "good morning", "good afternoon", "good evening"],
    "contact": ["contact", "email", "phone", "reach", "connect", "get in touch"],
    "experience": ["experience", "work", "job", "career", "employment", "professional"],
    "projects": ["project", "build", "develop", "create", "portfolio", "work"],
    "skills": ["skill", "technology", "programming", "language", "tool", "expertise"],
    "education": ["education", "degree", "study", "university", "college", "academic"],
    "personal": ["about", "who", "person", "background", "biography", "profile"],
    "technical": ["technical", "code", "implementation", "architecture", "system"],
    "availability": ["available", "hire", "opportunity", "job", "position", "freelance"],
}

SYNONYM_MAPPINGS: Dict[str, List[str]] = {
    "experience": ["work", "job", "career", "employment", "professional background"],
    "skills": ["abilities", "expertise", "competencies", "technologies", "proficiencies"],
    "projects": ["work", "portfolio", "applications", "systems", "developments"],
    "education": ["academic", "degree", "studies", "qualification", "learning"],
    "contact": ["reach", "connect", "get in touch", "communication", "details"],
    "build": ["develop", "create", "construct", "implement", "design"],
    "technology": ["tech", "tool", "framework", "platform", "software"],
}

# (entity type, confidence, vocabulary)
ENTITY_VOCABULARIES: List[Tuple[str, float, List[str]]] = [
    ("technology", 0.9, ["python", "javascript", "react", "node.js", "typescript", "html", "css", "sql"]),
    ("company", 0.8, ["consuy", "google", "microsoft", "amazon", "meta"]),
]

DEFAULT_INTENT = "general"
DEFAULT_INTENT_CONFIDENCE = 0.5

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


class QueryUnderstandingService:
    """Normalizes, classifies and expands queries. No I/O."""

    def __init__(
        self,
        *,
        intent_patterns: Optional[Mapping[str, Sequence[str]]] = None,
        synonym_mappings: Optional[Mapping[str, Sequence[str]]] = None,
        entity_vocabularies: Optional[Sequence[Tuple[str, float, Sequence[str]]]] = None,
    ):
        self.intent_patterns = {
            label: list(triggers)
            for label, triggers in (INTENT_PATTERNS if intent_patterns is None else intent_patterns).items()
        }
        self.synonym_mappings = {
            word.lower(): list(synonyms)
            for word, synonyms in (SYNONYM_MAPPINGS if synonym_mappings is None else synonym_mappings).items()
        }
        self.entity_vocabularies = list(ENTITY_VOCABULARIES if entity_vocabularies is None else entity_vocabularies)
        self._trigger_res = {
            trigger: re.compile(rf"\b{re.escape(trigger.lower())}")
            for triggers in self.intent_patterns.values()
            for trigger in triggers
        }

    @staticmethod
    def normalize(raw: str) -> str:
        """Trim, lower-case, replace non-word characters, collapse whitespace."""
        text = _NON_WORD_RE.sub(" ", (raw or "").strip().lower())
        return _WHITESPACE_RE.sub(" ", text).strip()

    def detect_intent(self, text: str) -> QueryIntent:
        """Pick the label whose triggers cover the largest share of the text.

        Triggers match at the start of a word, so ``project`` also matches
        ``projects``. Ties go to the label listed first.
        """
        lowered = (text or "").lower()
        best_label = DEFAULT_INTENT
        best_confidence = 0.0
        for label, triggers in self.intent_patterns.items():
            if not triggers:
                continue
            hits = sum(1 for trigger in triggers if self._trigger_res[trigger].search(lowered))
            confidence = hits / len(triggers)
            if hits > 0 and confidence > best_confidence:
                best_label = label
                best_confidence = confidence

        if best_confidence == 0.0:
            best_confidence = DEFAULT_INTENT_CONFIDENCE

        return QueryIntent(
            intent=best_label,
            confidence=best_confidence,
            entities=self.extract_entities(lowered),
            keywords=extract_keywords(lowered),
        )

    def extract_entities(self, text: str) -> List[EntityMatch]:
        words = set((text or "").lower().split())
        entities: List[EntityMatch] = []
        for entity_type, confidence, vocabulary in self.entity_vocabularies:
            for term in vocabulary:
                if term in words:
                    entities.append(EntityMatch(entity=term, type=entity_type, confidence=confidence))
        return entities

    def expand_query(self, text: str) -> QueryExpansion:
        """Whole-word synonym substitution; the original text is always first."""
        expansions = [text]
        groups: List[SynonymGroup] = []
        seen_words = set()
        for word in (text or "").lower().split():
            synonyms = self.synonym_mappings.get(word)
            if not synonyms or word in seen_words:
                continue
            seen_words.add(word)
            groups.append(SynonymGroup(original=word, synonyms=list(synonyms)))
            pattern = re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
            for synonym in synonyms:
                expanded = pattern.sub(lambda _match, value=synonym: value, text)
                if expanded not in expansions:
                    expansions.append(expanded)

        return QueryExpansion(
            original_query=text,
            expanded_queries=expansions,
            synonym_groups=groups,
        )
