"""
Drug Classifier

Maps free-text drug names to therapeutic classes using an ordered regex
table (first match wins), groups classes into broader therapeutic areas,
and infers chronic conditions from a patient's drug history.
"""

import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.models import TherapeuticCategory

# Order matters: the first pattern that matches decides the class.
_CLASS_PATTERNS: list[tuple[str, str]] = [
    # Cardiovascular
    ("statins", r"atorvastatin|simvastatin|rosuvastatin|pravastatin|lovastatin|fluvastatin|pitavastatin|lipitor|crestor|zocor"),
    ("ace_inhibitors", r"lisinopril|enalapril|ramipril|benazepril|captopril|fosinopril|quinapril|moexipril|perindopril|trandolapril|prinivil|zestril|vasotec|altace"),
    ("arbs", r"losartan|valsartan|irbesartan|olmesartan|candesartan|telmisartan|azilsartan|cozaar|diovan|avapro"),
    ("beta_blockers", r"metoprolol|atenolol|carvedilol|bisoprolol|propranolol|nadolol|nebivolol|labetalol|lopressor|toprol|coreg"),
    ("ccb", r"amlodipine|nifedipine|diltiazem|verapamil|felodipine|nicardipine|norvasc|cardizem|procardia"),
    ("thiazides", r"hydrochlorothiazide|chlorthalidone|indapamide|metolazone|hctz"),
    ("loop_diuretics", r"furosemide|bumetanide|torsemide|lasix|bumex"),
    # Diabetes
    ("metformin", r"metformin|glucophage|fortamet|glumetza|riomet"),
    ("sulfonylureas", r"glipizide|glyburide|glimepiride|glucotrol|diabeta|micronase|amaryl"),
    ("sglt2", r"canagliflozin|dapagliflozin|empagliflozin|ertugliflozin|invokana|farxiga|jardiance|steglatro"),
    ("glp1", r"semaglutide|liraglutide|dulaglutide|exenatide|ozempic|wegovy|victoza|trulicity|byetta|bydureon"),
    ("dpp4", r"sitagliptin|saxagliptin|linagliptin|alogliptin|januvia|onglyza|tradjenta|nesina"),
    ("insulin", r"insulin|novolog|humalog|lantus|levemir|basaglar|tresiba|toujeo|admelog|fiasp"),
    # Respiratory
    ("laba", r"salmeterol|formoterol|vilanterol|olodaterol|indacaterol|serevent|foradil"),
    ("lama", r"tiotropium|umeclidinium|aclidinium|glycopyrrolate|spiriva|incruse|tudorza"),
    ("ics", r"fluticasone|budesonide|beclomethasone|mometasone|ciclesonide|flovent|pulmicort|qvar|asmanex|alvesco"),
    ("ics_laba", r"advair|symbicort|breo|dulera|wixela|airduo"),
    ("saba", r"albuterol|levalbuterol|proair|proventil|ventolin|xopenex"),
    # Mental health
    ("ssri", r"fluoxetine|sertraline|paroxetine|escitalopram|citalopram|fluvoxamine|prozac|zoloft|paxil|lexapro|celexa"),
    ("snri", r"venlafaxine|duloxetine|desvenlafaxine|levomilnacipran|effexor|cymbalta|pristiq|fetzima"),
    ("benzo", r"alprazolam|lorazepam|clonazepam|diazepam|temazepam|xanax|ativan|klonopin|valium|restoril"),
    # Pain
    ("opioids", r"oxycodone|hydrocodone|morphine|fentanyl|tramadol|codeine|hydromorphone|oxycontin|percocet|vicodin|norco|dilaudid"),
    ("nsaids", r"ibuprofen|naproxen|meloxicam|diclofenac|celecoxib|indomethacin|ketorolac|motrin|advil|aleve|mobic|voltaren|celebrex"),
    # GI
    ("ppi", r"omeprazole|esomeprazole|lansoprazole|pantoprazole|rabeprazole|dexlansoprazole|prilosec|nexium|prevacid|protonix|aciphex|dexilant"),
    # Other
    ("thyroid", r"levothyroxine|synthroid|levoxyl|tirosint|unithroid|armour thyroid|liothyronine"),
    ("bisphosphonates", r"alendronate|risedronate|ibandronate|zoledronic|fosamax|actonel|boniva|reclast"),
    ("anticoagulants", r"warfarin|apixaban|rivaroxaban|dabigatran|edoxaban|coumadin|eliquis|xarelto|pradaxa|savaysa"),
    # Diabetic supplies
    ("glucose_test_strips", r"freestyle|onetouch|one touch|contour|accu-chek|accu chek|true metrix|truemetrix|prodigy|relion|embrace|test strip|blood glucose strip"),
    ("lancets", r"lancet|microlet|unistik"),
    ("pen_needles", r"pen needle|novofine|novotwist|nano pen|bd nano"),
]

DRUG_PATTERNS: list[tuple[str, re.Pattern]] = [
    (name, re.compile(pattern, re.IGNORECASE)) for name, pattern in _CLASS_PATTERNS
]

CLASS_DISPLAY_NAMES: dict[str, str] = {
    "statins": "Statins",
    "ace_inhibitors": "ACE Inhibitors",
    "arbs": "ARBs",
    "beta_blockers": "Beta Blockers",
    "ccb": "Calcium Channel Blockers",
    "thiazides": "Thiazide Diuretics",
    "loop_diuretics": "Loop Diuretics",
    "metformin": "Metformin",
    "sulfonylureas": "Sulfonylureas",
    "sglt2": "SGLT2 Inhibitors",
    "glp1": "GLP-1 Agonists",
    "dpp4": "DPP-4 Inhibitors",
    "insulin": "Insulin",
    "laba": "Long-Acting Beta Agonists",
    "lama": "Long-Acting Muscarinic Antagonists",
    "ics": "Inhaled Corticosteroids",
    "ics_laba": "ICS/LABA Combinations",
    "saba": "Short-Acting Beta Agonists",
    "ssri": "SSRIs",
    "snri": "SNRIs",
    "benzo": "Benzodiazepines",
    "opioids": "Opioids",
    "nsaids": "NSAIDs",
    "ppi": "Proton Pump Inhibitors",
    "thyroid": "Thyroid Agents",
    "bisphosphonates": "Bisphosphonates",
    "anticoagulants": "Anticoagulants",
    "glucose_test_strips": "Glucose Test Strips",
    "lancets": "Lancets",
    "pen_needles": "Pen Needles",
}

# Broader grouping used when no same-class alternative exists
THERAPEUTIC_AREAS: dict[str, dict] = {
    "diabetes": {"name": "Diabetes Agents", "classes": ["metformin", "sulfonylureas", "sglt2", "glp1", "dpp4", "insulin"]},
    "hypertension": {"name": "Antihypertensives", "classes": ["ace_inhibitors", "arbs", "beta_blockers", "ccb", "thiazides", "loop_diuretics"]},
    "respiratory": {"name": "Respiratory Agents", "classes": ["laba", "lama", "ics", "ics_laba", "saba"]},
    "mental_health": {"name": "Antidepressants", "classes": ["ssri", "snri"]},
    "pain": {"name": "Pain Management", "classes": ["nsaids", "opioids"]},
    "gi": {"name": "GI Agents", "classes": ["ppi"]},
    "cholesterol": {"name": "Cholesterol Agents", "classes": ["statins"]},
    "anticoagulation": {"name": "Anticoagulants", "classes": ["anticoagulants"]},
    "bone_health": {"name": "Bone Health", "classes": ["bisphosphonates"]},
    "thyroid": {"name": "Thyroid Agents", "classes": ["thyroid"]},
    "diabetic_supplies": {"name": "Diabetic Supplies", "classes": ["glucose_test_strips", "lancets", "pen_needles"]},
}

DRUG_CLASS_CONDITIONS: dict[str, list[str]] = {
    "statins": ["CVD", "Hyperlipidemia"],
    "ace_inhibitors": ["HTN", "CVD", "Heart Failure"],
    "arbs": ["HTN", "CVD", "Heart Failure"],
    "beta_blockers": ["HTN", "CVD", "Heart Failure", "Arrhythmia"],
    "ccb": ["HTN", "Angina"],
    "thiazides": ["HTN"],
    "loop_diuretics": ["Heart Failure", "Edema"],
    "metformin": ["Diabetes"],
    "sulfonylureas": ["Diabetes"],
    "sglt2": ["Diabetes", "Heart Failure"],
    "glp1": ["Diabetes", "Obesity"],
    "dpp4": ["Diabetes"],
    "insulin": ["Diabetes"],
    "laba": ["COPD", "Asthma"],
    "lama": ["COPD"],
    "ics": ["Asthma", "COPD"],
    "ics_laba": ["Asthma", "COPD"],
    "saba": ["Asthma", "COPD"],
    "ssri": ["Depression", "Anxiety"],
    "snri": ["Depression", "Anxiety", "Chronic Pain"],
    "benzo": ["Anxiety", "Insomnia"],
    "opioids": ["Chronic Pain", "Acute Pain"],
    "nsaids": ["Pain", "Inflammation"],
    "ppi": ["GERD", "Ulcer"],
    "thyroid": ["Hypothyroidism"],
    "bisphosphonates": ["Osteoporosis"],
    "anticoagulants": ["AFib", "DVT", "PE"],
}


def detect_drug_class(drug_name: str | None) -> str | None:
    """Return the first matching class key for a drug name, or None."""
    if not drug_name:
        return None
    for class_name, pattern in DRUG_PATTERNS:
        if pattern.search(drug_name):
            return class_name
    return None


def class_pattern(class_name: str) -> re.Pattern | None:
    for name, pattern in DRUG_PATTERNS:
        if name == class_name:
            return pattern
    return None


def therapeutic_area_for(class_name: str) -> tuple[str, dict] | None:
    for area_key, area in THERAPEUTIC_AREAS.items():
        if class_name in area["classes"]:
            return area_key, area
    return None


def broad_area_pattern(class_name: str) -> tuple[str, re.Pattern] | None:
    """
    Union pattern over every class in the drug's therapeutic area.

    Returns None when the area holds only this one class, since the broad
    search would then repeat the same-class search.
    """
    found = therapeutic_area_for(class_name)
    if found is None:
        return None
    area_key, area = found
    if len(area["classes"]) <= 1:
        return None
    combined = "|".join(pattern for name, pattern in _CLASS_PATTERNS if name in area["classes"])
    return area_key, re.compile(combined, re.IGNORECASE)


def display_name(class_name: str) -> str:
    return CLASS_DISPLAY_NAMES.get(class_name, class_name)


def infer_conditions(drug_names: list[str]) -> list[str]:
    """Chronic conditions implied by a set of drug names, sorted and de-duplicated."""
    conditions: set[str] = set()
    for name in drug_names:
        drug_class = detect_drug_class(name)
        if drug_class:
            conditions.update(DRUG_CLASS_CONDITIONS.get(drug_class, []))
    return sorted(conditions)


class DrugClassifier:
    """Two-tier classifier: built-in regex table, then the therapeutic_categories table."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._categories: list[tuple[str, list[str]]] | None = None

    async def load_categories(self) -> None:
        result = await self.session.execute(
            select(TherapeuticCategory).where(TherapeuticCategory.is_active.is_(True))
        )
        self._categories = [
            (row.category_code, [p.lower() for p in (row.drug_patterns or []) if p])
            for row in result.scalars()
        ]

    async def classify(self, drug_name: str | None) -> tuple[str, str] | None:
        """Return (class_key, source) where source is builtin or category_table."""
        builtin = detect_drug_class(drug_name)
        if builtin:
            return builtin, "builtin"
        if not drug_name:
            return None
        if self._categories is None:
            await self.load_categories()
        lowered = drug_name.lower()
        for code, patterns in self._categories or []:
            if any(p in lowered for p in patterns):
                return code, "category_table"
        return None

    async def pattern_for(self, class_key: str) -> re.Pattern | None:
        """Regex matching any member of a class, whichever tier defined it."""
        builtin = class_pattern(class_key)
        if builtin is not None:
            return builtin
        if self._categories is None:
            await self.load_categories()
        for code, patterns in self._categories or []:
            if code == class_key and patterns:
                return re.compile("|".join(re.escape(p) for p in patterns), re.IGNORECASE)
        return None
