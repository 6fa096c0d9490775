"""
Tests for region key matching and the provenance ledger.
"""

import pytest
from find_promoter_regions import ProvenanceLedger, region_key_base


class TestRegionKeyBase:
    @pytest.mark.parametrize(
        "name",
        [
            "Chr1:799-999()",
            "Chr1:799-999(+)",
            "Chr1:799-999(-)",
            "Chr1:799-999",
            "S1::Chr1:799-999(+)",
            " Chr1:799-999(+) ",
        ],
    )
    def test_normalizes_to_coordinates(self, name):
        assert region_key_base(name) == "Chr1:799-999"

    def test_sequence_ids_with_colons_are_kept(self):
        assert region_key_base("chrUn:KI270302v1:1-50(+)") == "chrUn:KI270302v1:1-50"


class TestProvenanceLedger:
    def test_lookup_extracted_name(self):
        ledger = ProvenanceLedger({"S1": "Q1"})
        ledger.record("Chr1:799-999()", "S1")
        assert ledger.lookup("Chr1:799-999(+)") == ("S1", "Q1")
        assert len(ledger) == 1

    def test_unknown_region_returns_empty_strings(self):
        ledger = ProvenanceLedger({"S1": "Q1"})
        ledger.record("Chr1:799-999()", "S1")
        assert ledger.lookup("Chr1:800-999(+)") == ("", "")

    def test_subject_without_query(self):
        ledger = ProvenanceLedger({})
        ledger.record("Chr1:1-50()", "S5")
        assert ledger.lookup("Chr1:1-50(-)") == ("S5", "")

    def test_first_subject_for_a_region_is_kept(self):
        ledger = ProvenanceLedger({"S1": "Q1", "S2": "Q2"})
        ledger.record("Chr1:1-50()", "S1")
        ledger.record("Chr1:1-50()", "S2")
        assert ledger.lookup("Chr1:1-50(+)") == ("S1", "Q1")
        assert len(ledger) == 1
        assert ledger.collisions == 1

    def test_same_subject_twice_is_not_a_collision(self):
        ledger = ProvenanceLedger({"S1": "Q1"})
        ledger.record("Chr1:1-50()", "S1")
        ledger.record("Chr1:1-50()", "S1")
        assert ledger.collisions == 0

    def test_subject_query_mapping_is_copied(self):
        mapping = {"S1": "Q1"}
        ledger = ProvenanceLedger(mapping)
        mapping["S1"] = "changed"
        ledger.record("Chr1:1-50()", "S1")
        assert ledger.lookup("Chr1:1-50()") == ("S1", "Q1")
