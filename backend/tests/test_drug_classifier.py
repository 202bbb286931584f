import pytest

from rxopps.models import TherapeuticCategory
from rxopps.services.drug_classifier import (
    DrugClassifier,
    broad_area_pattern,
    detect_drug_class,
    display_name,
    infer_conditions,
)


class TestDetectDrugClass:
    @pytest.mark.parametrize("drug, expected", [
        ("ATORVASTATIN CALCIUM 40 MG TAB", "statins"),
        ("Lisinopril 10mg", "ace_inhibitors"),
        ("losartan potassium 50mg", "arbs"),
        ("FreeStyle Lite Test Strips", "glucose_test_strips"),
        ("OMEPRAZOLE DR 20MG", "ppi"),
    ])
    def test_known_classes(self, drug, expected):
        assert detect_drug_class(drug) == expected

    def test_first_pattern_wins(self):
        # combination product: ARB listed before thiazides
        assert detect_drug_class("LOSARTAN-HCTZ 50-12.5MG") == "arbs"

    def test_unknown_and_empty(self):
        assert detect_drug_class("UNOBTAINIUM 5MG") is None
        assert detect_drug_class("") is None
        assert detect_drug_class(None) is None

    def test_display_name_falls_back_to_key(self):
        assert display_name("ppi") == "Proton Pump Inhibitors"
        assert display_name("custom_class") == "custom_class"


class TestBroadAreaPattern:
    def test_area_union_matches_sibling_classes(self):
        area_key, pattern = broad_area_pattern("arbs")
        assert area_key == "hypertension"
        assert pattern.search("AMLODIPINE 5MG")
        assert pattern.search("Metoprolol Tartrate")
        assert not pattern.search("METFORMIN 500MG")

    def test_single_class_area_has_no_broad_search(self):
        assert broad_area_pattern("statins") is None

    def test_class_without_area(self):
        assert broad_area_pattern("benzo") is None


class TestInferConditions:
    def test_sorted_and_deduplicated(self):
        conditions = infer_conditions(["LISINOPRIL 10MG", "LOSARTAN 50MG", "METFORMIN 500MG"])
        assert conditions == ["CVD", "Diabetes", "HTN", "Heart Failure"]

    def test_unclassified_drugs_ignored(self):
        assert infer_conditions(["UNOBTAINIUM", "FREESTYLE LITE STRIPS"]) == []


# ── Category table tier ──────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDrugClassifier:
    async def test_builtin_tier_first(self, db_session):
        classifier = DrugClassifier(db_session)
        assert await classifier.classify("ROSUVASTATIN 10MG") == ("statins", "builtin")

    async def test_category_table_fallback(self, db_session):
        db_session.add(TherapeuticCategory(
            category_code="vitamin_d", display_name="Vitamin D", drug_patterns=["Ergocalciferol", "cholecalciferol"],
        ))
        db_session.add(TherapeuticCategory(
            category_code="retired", display_name="Retired", drug_patterns=["ergocalciferol"], is_active=False,
        ))
        await db_session.flush()

        classifier = DrugClassifier(db_session)

        assert await classifier.classify("ERGOCALCIFEROL 50000 UNIT CAP") == ("vitamin_d", "category_table")
        assert await classifier.classify("UNOBTAINIUM") is None

    async def test_pattern_for_both_tiers(self, db_session):
        db_session.add(TherapeuticCategory(
            category_code="vitamin_d", display_name="Vitamin D", drug_patterns=["ergocalciferol", "vit d3"],
        ))
        await db_session.flush()
        classifier = DrugClassifier(db_session)

        statins = await classifier.pattern_for("statins")
        vitamin_d = await classifier.pattern_for("vitamin_d")

        assert statins.search("Pravastatin Sodium")
        assert vitamin_d.search("VIT D3 1000 UNIT")
        assert not vitamin_d.search("CALCIUM CARBONATE")
        assert await classifier.pattern_for("nope") is None
