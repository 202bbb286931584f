"""
Rule Matcher

Decides whether one trigger matches one dispensing record, given the
patient's recent drug history. Triggers are compiled once per scan so the
restriction text is parsed up front and keyword lists are pre-normalized.

Check order (first failure wins):
    1. pharmacy inclusion
    2. detection keywords (any / all)
    3. exclude keywords
    4. BIN restriction, then Group restriction (optionally per BIN)
    5. contract-ID prefix exclusion
    6. if_has against the patient's recent drugs
    7. if_not_has against the patient's recent drugs
"""

import re
from dataclasses import dataclass
from typing import Sequence

from rxopps.exceptions import TriggerConfigError
from rxopps.models import DispensingRecord, Trigger
from rxopps.services.restrictions import (
    BinScopedGroupRule,
    GroupRestriction,
    MembershipRule,
    parse_bin_restriction,
    parse_group_restriction,
)

_NON_ALNUM = re.compile(r"[^A-Z0-9\s]")
_WHITESPACE = re.compile(r"\s+")

VALID_MATCH_MODES = {"any", "all"}
VALID_TRIGGER_TYPES = {"standard", "conditional", "combo"}


def normalize_drug_text(text: str | None) -> str:
    """Upper-case and collapse punctuation to single spaces: 'Losartan*50#' -> 'LOSARTAN 50 '."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", _NON_ALNUM.sub(" ", text.upper()))


def _keyword_list(values) -> tuple[str, ...]:
    normalized = (normalize_drug_text(str(v)) for v in (values or []))
    return tuple(k for k in normalized if k.strip())


@dataclass(frozen=True)
class CompiledTrigger:
    trigger: Trigger
    code: str
    keywords: tuple[str, ...]
    match_mode: str
    exclude_keywords: tuple[str, ...]
    if_has: tuple[str, ...]
    if_not_has: tuple[str, ...]
    pharmacy_ids: frozenset[str]
    bin_rule: MembershipRule
    group_rule: GroupRestriction
    contract_prefixes: tuple[str, ...]

    @classmethod
    def compile(cls, trigger: Trigger) -> "CompiledTrigger":
        """Parse a trigger's fields. Raises TriggerConfigError for unusable definitions."""
        code = (trigger.trigger_code or "").strip()
        if not code:
            raise TriggerConfigError(None, f"trigger id={trigger.id} has no trigger_code")
        if not (trigger.recommended_drug or "").strip():
            raise TriggerConfigError(code, "no recommended drug")

        mode = (trigger.keyword_match_mode or "any").lower()
        if mode not in VALID_MATCH_MODES:
            raise TriggerConfigError(code, f"unknown keyword match mode {trigger.keyword_match_mode!r}")

        keywords = _keyword_list(trigger.detection_keywords)
        if not keywords:
            raise TriggerConfigError(code, "no detection keywords")

        return cls(
            trigger=trigger,
            code=code,
            keywords=keywords,
            match_mode=mode,
            exclude_keywords=_keyword_list(trigger.exclude_keywords),
            if_has=_keyword_list(trigger.if_has_keywords),
            if_not_has=_keyword_list(trigger.if_not_has_keywords),
            pharmacy_ids=frozenset(str(p) for p in (trigger.pharmacy_inclusions or [])),
            bin_rule=parse_bin_restriction(trigger.bin_restriction, trigger_code=code),
            group_rule=parse_group_restriction(trigger.group_restriction, trigger_code=code),
            contract_prefixes=tuple(
                p.strip().upper() for p in (trigger.contract_prefix_exclusions or []) if p and p.strip()
            ),
        )


def keywords_match(keywords: Sequence[str], drug_text: str, mode: str = "any") -> bool:
    if not keywords:
        return False
    if mode == "all":
        return all(k in drug_text for k in keywords)
    return any(k in drug_text for k in keywords)


def _payer_permitted(compiled: CompiledTrigger, record: DispensingRecord) -> bool:
    insurance_bin = (record.insurance_bin or "").strip()
    if not compiled.bin_rule.permits(insurance_bin):
        return False

    # A record without a Group is not rejected by a Group restriction
    group = (record.insurance_group or "").strip()
    if not group:
        return True
    if isinstance(compiled.group_rule, BinScopedGroupRule):
        return compiled.group_rule.permits(group, insurance_bin)
    return compiled.group_rule.permits(group)


def matches(
    compiled: CompiledTrigger,
    record: DispensingRecord,
    patient_recent_drugs: Sequence[str],
) -> bool:
    """
    True when the trigger applies to this record.

    patient_recent_drugs must already be passed through normalize_drug_text.
    """
    if compiled.pharmacy_ids and str(record.pharmacy_id) not in compiled.pharmacy_ids:
        return False

    drug_text = normalize_drug_text(record.drug_name)
    if not keywords_match(compiled.keywords, drug_text, compiled.match_mode):
        return False

    if any(k in drug_text for k in compiled.exclude_keywords):
        return False

    if not _payer_permitted(compiled, record):
        return False

    if compiled.contract_prefixes and record.contract_id:
        contract = record.contract_id.strip().upper()
        if any(contract.startswith(p) for p in compiled.contract_prefixes):
            return False

    if compiled.if_has:
        if not any(k in drug for k in compiled.if_has for drug in patient_recent_drugs):
            return False

    if compiled.if_not_has:
        if any(k in drug for k in compiled.if_not_has for drug in patient_recent_drugs):
            return False

    return True
