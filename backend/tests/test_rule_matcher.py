"""Tests for trigger compilation and record matching."""

from datetime import date

import pytest

from rxopps.exceptions import TriggerConfigError
from rxopps.models import DispensingRecord, Trigger
from rxopps.services.rule_matcher import (
    CompiledTrigger,
    keywords_match,
    matches,
    normalize_drug_text,
)


def _trigger(**overrides) -> Trigger:
    fields = {
        "id": 1,
        "trigger_code": "T1",
        "display_name": "Losartan to combo",
        "detection_keywords": ["LOSARTAN"],
        "recommended_drug": "Losartan-HCTZ",
    }
    fields.update(overrides)
    return Trigger(**fields)


def _record(drug_name="LOSARTAN POTASSIUM 50MG", **overrides) -> DispensingRecord:
    fields = {
        "id": 10,
        "pharmacy_id": 1,
        "patient_id": 100,
        "rx_number": "RX1",
        "dispensed_date": date(2026, 6, 1),
        "drug_name": drug_name,
        "insurance_bin": "610097",
        "insurance_group": None,
        "days_supply": 30,
    }
    fields.update(overrides)
    return DispensingRecord(**fields)


def _matches(trigger: Trigger, record: DispensingRecord, history=()) -> bool:
    return matches(CompiledTrigger.compile(trigger), record, [normalize_drug_text(d) for d in history])


# ── Normalization ────────────────────────────────────────────────────────────

class TestNormalizeDrugText:
    def test_punctuation_becomes_single_space(self):
        assert normalize_drug_text("Losartan*50#") == "LOSARTAN 50 "

    def test_whitespace_collapsed(self):
        assert normalize_drug_text("metformin   er\t500") == "METFORMIN ER 500"

    def test_none(self):
        assert normalize_drug_text(None) == ""

    def test_keyword_modes(self):
        text = normalize_drug_text("AMLODIPINE BESYLATE 10MG")
        assert keywords_match(["AMLODIPINE", "XYZ"], text, "any")
        assert not keywords_match(["AMLODIPINE", "XYZ"], text, "all")
        assert keywords_match(["AMLODIPINE", "BESYLATE"], text, "all")
        assert not keywords_match([], text, "any")


# ── Compilation ──────────────────────────────────────────────────────────────

class TestCompile:
    def test_keywords_normalized_and_blanks_dropped(self):
        compiled = CompiledTrigger.compile(_trigger(detection_keywords=["losartan", " ", ""]))
        assert compiled.keywords == ("LOSARTAN",)

    def test_missing_keywords_rejected(self):
        with pytest.raises(TriggerConfigError):
            CompiledTrigger.compile(_trigger(detection_keywords=[]))

    def test_missing_recommended_drug_rejected(self):
        with pytest.raises(TriggerConfigError):
            CompiledTrigger.compile(_trigger(recommended_drug=" "))

    def test_bad_match_mode_rejected(self):
        with pytest.raises(TriggerConfigError):
            CompiledTrigger.compile(_trigger(keyword_match_mode="most"))

    def test_bad_bin_restriction_rejected(self):
        with pytest.raises(TriggerConfigError):
            CompiledTrigger.compile(_trigger(bin_restriction="ONLY"))


# ── Matching ─────────────────────────────────────────────────────────────────

class TestMatches:
    def test_keyword_match(self):
        assert _matches(_trigger(), _record())

    def test_keyword_miss(self):
        assert not _matches(_trigger(), _record("LISINOPRIL 10MG"))

    def test_all_mode_requires_every_keyword(self):
        trigger = _trigger(detection_keywords=["LOSARTAN", "100"], keyword_match_mode="all")
        assert not _matches(trigger, _record("LOSARTAN POTASSIUM 50MG"))
        assert _matches(trigger, _record("LOSARTAN POTASSIUM 100MG"))

    def test_exclude_keyword_wins(self):
        trigger = _trigger(exclude_keywords=["HCTZ"])
        assert not _matches(trigger, _record("LOSARTAN-HCTZ 50-12.5MG"))

    def test_pharmacy_inclusion(self):
        assert _matches(_trigger(pharmacy_inclusions=[1, 2]), _record(pharmacy_id=1))
        assert not _matches(_trigger(pharmacy_inclusions=[2]), _record(pharmacy_id=1))

    def test_bin_restriction(self):
        trigger = _trigger(bin_restriction="ONLY 610097")
        assert _matches(trigger, _record(insurance_bin="610097"))
        assert not _matches(trigger, _record(insurance_bin="999999"))

    def test_bin_exclusion(self):
        trigger = _trigger(bin_restriction="ALL EXCEPT 004336")
        assert not _matches(trigger, _record(insurance_bin="004336"))
        assert _matches(trigger, _record(insurance_bin="610097"))

    def test_group_restriction(self):
        trigger = _trigger(group_restriction="ONLY RXGRP1")
        assert _matches(trigger, _record(insurance_group="rxgrp1"))
        assert not _matches(trigger, _record(insurance_group="OTHER"))

    def test_record_without_group_passes_group_rule(self):
        trigger = _trigger(group_restriction="ONLY RXGRP1")
        assert _matches(trigger, _record(insurance_group=None))

    def test_bin_scoped_group_rule(self):
        trigger = _trigger(group_restriction="610097:ONLY RXGRP1")
        assert _matches(trigger, _record(insurance_bin="610097", insurance_group="RXGRP1"))
        assert not _matches(trigger, _record(insurance_bin="610097", insurance_group="OTHER"))
        assert _matches(trigger, _record(insurance_bin="004336", insurance_group="OTHER"))

    def test_contract_prefix_exclusion(self):
        trigger = _trigger(contract_prefix_exclusions=["H"])
        assert not _matches(trigger, _record(contract_id="H1234"))
        assert _matches(trigger, _record(contract_id="S5601"))
        assert _matches(trigger, _record(contract_id=None))

    def test_if_has_uses_patient_history(self):
        trigger = _trigger(if_has_keywords=["METFORMIN"])
        assert not _matches(trigger, _record(), history=["LOSARTAN POTASSIUM 50MG"])
        assert _matches(trigger, _record(), history=["LOSARTAN POTASSIUM 50MG", "METFORMIN 500MG"])

    def test_if_not_has_uses_patient_history(self):
        trigger = _trigger(if_not_has_keywords=["HCTZ"])
        assert _matches(trigger, _record(), history=["LOSARTAN POTASSIUM 50MG"])
        assert not _matches(trigger, _record(), history=["LOSARTAN POTASSIUM 50MG", "HCTZ 25MG"])
