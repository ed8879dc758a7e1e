"""Unit tests for query normalization, intent detection and expansion."""

import pytest

from portfolio_rag.services.query_understanding_service import QueryUnderstandingService


@pytest.fixture
def service():
    return QueryUnderstandingService()


def test_normalize_lowercases_strips_punctuation_and_collapses_whitespace(service):
    assert service.normalize("  Hello,   World!!  What's\tup? ") == "hello world what s up"
    assert service.normalize("???") == ""


def test_detect_intent_uses_share_of_matched_triggers(service):
    intent = service.detect_intent("tell me about your work experience")

    assert intent.intent == "experience"
    assert intent.confidence == pytest.approx(2 / 6)
    assert intent.keywords == ["tell", "your", "work", "experience"]


def test_detect_intent_matches_trigger_prefixes(service):
    intent = service.detect_intent("which skills do you have")

    assert intent.intent == "skills"
    assert intent.confidence == pytest.approx(1 / 6)


def test_detect_intent_ties_resolve_by_table_order(service):
    # "job" is a trigger for both experience and availability.
    intent = service.detect_intent("job")

    assert intent.intent == "experience"


def test_detect_intent_defaults_to_general(service):
    intent = service.detect_intent("xyzzy plugh")

    assert intent.intent == "general"
    assert intent.confidence == 0.5
    assert intent.entities == []


def test_detect_intent_extracts_fixed_vocabulary_entities(service):
    intent = service.detect_intent("did you use python and react at google")

    assert [(e.entity, e.type, e.confidence) for e in intent.entities] == [
        ("python", "technology", 0.9),
        ("react", "technology", 0.9),
        ("google", "company", 0.8),
    ]


def test_expand_query_substitutes_synonyms_once_each():
    service = QueryUnderstandingService(synonym_mappings={"skills": ["abilities", "expertise"]})

    expansion = service.expand_query("my skills")

    assert expansion.original_query == "my skills"
    assert expansion.expanded_queries == ["my skills", "my abilities", "my expertise"]
    assert [(g.original, g.synonyms) for g in expansion.synonym_groups] == [
        ("skills", ["abilities", "expertise"])
    ]


def test_expand_query_is_whole_word_and_case_insensitive():
    service = QueryUnderstandingService(synonym_mappings={"build": ["develop"]})

    expansion = service.expand_query("What did you Build and who builds it")

    assert expansion.expanded_queries == [
        "What did you Build and who builds it",
        "What did you develop and who builds it",
    ]


def test_expand_query_never_emits_duplicates():
    service = QueryUnderstandingService(synonym_mappings={"skills": ["skills", "talents", "talents"]})

    expansion = service.expand_query("skills and skills")

    assert expansion.expanded_queries == ["skills and skills", "talents and talents"]
    assert len(expansion.synonym_groups) == 1


def test_expand_query_without_synonyms_returns_original_only(service):
    expansion = service.expand_query("hello there")

    assert expansion.expanded_queries == ["hello there"]
    assert expansion.synonym_groups == []


def test_query_understanding_is_deterministic(service):
    text = "what projects did you build with python"

    first = (service.normalize(text), service.detect_intent(text), service.expand_query(text))
    second = (service.normalize(text), service.detect_intent(text), service.expand_query(text))

    assert first == second
