"""
test_fact_normalizer.py — Unit tests for raw record → Citation normalization.

Tests cover:
  - Canonical records pass through unchanged (camelCase keys accepted)
  - Legacy question/answer records mapped through LEGACY_KEY_MAP
  - Unmapped keys fall back to an uppercased free-form tag
  - Malformed input is coerced, never dropped, never raises
  - Order preservation and deterministic legacy ids

All tests are pure unit tests; no database or external services required.
"""

import pytest

from app.models.fact_schema import CiteType, Provenance
from app.services.fact_normalizer import (
    FALLBACK_TYPE, normalize_record, normalize_records, resolve_cite_type,
)


class TestCanonicalPassthrough:

    def test_canonical_record_fields_preserved(self):
        record = {
            "id": "c-1",
            "cite_type": "GFA_LOCK",
            "question_key": "gfa",
            "answer": "1,200 sq ft",
            "value": 1200,
            "metadata": {"gfa_value": 1200},
            "timestamp": "2026-01-05T10:00:00+00:00",
            "provenance": "user_input",
        }
        c = normalize_record(record)
        assert c.id == "c-1"
        assert c.cite_type == "GFA_LOCK"
        assert c.value == 1200
        assert c.metadata == {"gfa_value": 1200}
        assert c.timestamp == "2026-01-05T10:00:00+00:00"
        assert c.provenance == Provenance.USER_INPUT

    def test_camel_case_question_key_accepted(self):
        c = normalize_record({"id": "c-2", "cite_type": "LOCATION", "questionKey": "project_address",
                              "answer": "12 King St"})
        assert c.question_key == "project_address"
        assert c.cite_type == CiteType.LOCATION.value

    def test_unknown_provenance_falls_back_to_default(self):
        c = normalize_record({"id": "c-3", "cite_type": "BUDGET", "answer": "$10", "provenance": "bogus"})
        assert c.provenance == Provenance.USER_INPUT

    def test_non_string_answer_rendered(self):
        c = normalize_record({"id": "c-4", "cite_type": "TEAM_SIZE", "answer": 4})
        assert c.answer == "4"


class TestLegacyMapping:

    @pytest.mark.parametrize("key,expected", [
        ("gfa", CiteType.GFA_LOCK.value),
        ("project_address", CiteType.LOCATION.value),
        ("project_name", CiteType.PROJECT_NAME.value),
        ("start_date", CiteType.TIMELINE.value),
        ("end_date", CiteType.END_DATE.value),
        ("site_condition", CiteType.SITE_CONDITION.value),
        ("GFA", CiteType.GFA_LOCK.value),
    ])
    def test_known_keys(self, key, expected):
        assert resolve_cite_type(key) == expected

    def test_unmapped_key_becomes_free_form_tag(self):
        assert resolve_cite_type("roof pitch") == "ROOF_PITCH"
        assert resolve_cite_type("") == FALLBACK_TYPE

    def test_legacy_record_gets_legacy_provenance_and_key_metadata(self):
        c = normalize_record({"questionKey": "gfa", "answer": "1500"}, index=3)
        assert c.cite_type == CiteType.GFA_LOCK.value
        assert c.provenance == Provenance.LEGACY_MIGRATED
        assert c.metadata["legacy_key"] == "gfa"
        assert c.id.startswith("legacy-")

    def test_legacy_id_is_deterministic(self):
        record = {"question_key": "budget", "answer": "$5,000"}
        assert normalize_record(record, 0).id == normalize_record(dict(record), 0).id


class TestMalformedInput:

    @pytest.mark.parametrize("junk", [None, 42, "free text", ["a", "b"]])
    def test_non_mapping_records_coerced(self, junk):
        c = normalize_record(junk)
        assert c.metadata.get("coerced") is True
        assert c.provenance == Provenance.LEGACY_MIGRATED
        assert c.cite_type == FALLBACK_TYPE

    def test_bad_canonical_record_keeps_declared_type(self):
        c = normalize_record({"cite_type": "BUDGET", "metadata": "x", "timestamp": None,
                              "question_key": ["not", "a", "string"]})
        assert c.cite_type == "BUDGET"

    def test_none_collection_yields_empty_list(self):
        assert normalize_records(None) == []


class TestCollectionProperties:

    def test_every_record_yields_one_citation_in_order(self):
        records = [
            {"id": "a", "cite_type": "PROJECT_NAME", "answer": "Reno"},
            {"questionKey": "gfa", "answer": "900"},
            17,
            {"questionKey": "mystery field", "answer": "?"},
        ]
        out = normalize_records(records)
        assert len(out) == len(records)
        assert [c.cite_type for c in out] == ["PROJECT_NAME", "GFA_LOCK", FALLBACK_TYPE, "MYSTERY_FIELD"]
        assert out[0].id == "a"

    def test_normalizing_twice_is_stable(self):
        records = [{"questionKey": "gfa", "answer": "900"}, {"id": "b", "cite_type": "BUDGET", "answer": "$1"}]
        first = normalize_records(records)
        second = normalize_records([c.model_dump(mode="json") for c in first])
        assert [c.id for c in first] == [c.id for c in second]
        assert [c.cite_type for c in first] == [c.cite_type for c in second]
