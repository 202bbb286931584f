"""
Membership rule parsing for trigger BIN/Group restrictions.

Admin-entered restriction text is parsed once per scan into a small closed
set of rule objects:

    "ALL" / empty              -> AllowAll
    "ONLY a,b" / "a,b"         -> OnlyList({a, b})
    "ALL EXCEPT a,b" / "EXCEPT a,b" -> ExceptList({a, b})
    "610097:ONLY X, 004740:ALL EXCEPT Y"  -> BinScopedGroupRule (Group only)

Matching never re-reads the original text.
"""

import re
from dataclasses import dataclass, field

from rxopps.exceptions import TriggerConfigError

_BIN_SCOPED = re.compile(r"(\d{6})\s*:\s*([^:]+?)(?=\s*,?\s*\d{6}\s*:|$)")
_BARE_LIST = re.compile(r"^[A-Z0-9][A-Z0-9 ,._/\-]*$")


def _canon(value: str | None) -> str:
    return " ".join((value or "").upper().split())


@dataclass(frozen=True)
class AllowAll:
    def permits(self, value: str | None) -> bool:
        return True


@dataclass(frozen=True)
class OnlyList:
    values: frozenset[str]

    def permits(self, value: str | None) -> bool:
        return _canon(value) in self.values


@dataclass(frozen=True)
class ExceptList:
    values: frozenset[str]

    def permits(self, value: str | None) -> bool:
        return _canon(value) not in self.values


MembershipRule = AllowAll | OnlyList | ExceptList

ALLOW_ALL = AllowAll()


@dataclass
class BinScopedGroupRule:
    """Group rules keyed by BIN. A BIN that is not listed is unrestricted."""

    rules: dict[str, MembershipRule] = field(default_factory=dict)

    def rule_for(self, insurance_bin: str | None) -> MembershipRule:
        return self.rules.get((insurance_bin or "").strip(), ALLOW_ALL)

    def permits(self, value: str | None, insurance_bin: str | None = None) -> bool:
        return self.rule_for(insurance_bin).permits(value)


GroupRestriction = MembershipRule | BinScopedGroupRule


def _split_values(text: str) -> list[str]:
    return [_canon(v) for v in text.split(",") if v.strip()]


def parse_membership_rule(
    text: str | None, *, trigger_code: str | None = None, field_name: str = "restriction",
) -> MembershipRule:
    """Parse a plain (not BIN-scoped) restriction string."""
    cleaned = _canon(text)
    if not cleaned or cleaned == "ALL":
        return ALLOW_ALL

    for keyword, rule_cls in (("ALL EXCEPT", ExceptList), ("EXCEPT", ExceptList), ("ONLY", OnlyList)):
        if cleaned == keyword or cleaned.startswith(keyword + " "):
            values = _split_values(cleaned[len(keyword):])
            if not values:
                raise TriggerConfigError(trigger_code, f"{field_name} {text!r} lists no values")
            return rule_cls(frozenset(values))

    if _BARE_LIST.match(cleaned):
        return OnlyList(frozenset(_split_values(cleaned)))

    raise TriggerConfigError(trigger_code, f"unparseable {field_name} {text!r}")


def parse_bin_restriction(text: str | None, *, trigger_code: str | None = None) -> MembershipRule:
    return parse_membership_rule(text, trigger_code=trigger_code, field_name="BIN restriction")


def parse_group_restriction(text: str | None, *, trigger_code: str | None = None) -> GroupRestriction:
    """Parse a Group restriction, which may be scoped per BIN ("BIN:RULE, BIN:RULE")."""
    if not text or ":" not in text:
        return parse_membership_rule(text, trigger_code=trigger_code, field_name="Group restriction")

    matches = _BIN_SCOPED.findall(text.upper())
    if not matches:
        raise TriggerConfigError(trigger_code, f"unparseable per-BIN Group restriction {text!r}")

    rules: dict[str, MembershipRule] = {}
    for bin_value, fragment in matches:
        fragment = fragment.strip().rstrip(",").strip()
        rules[bin_value] = parse_membership_rule(
            fragment, trigger_code=trigger_code, field_name=f"Group restriction for BIN {bin_value}",
        )
    return BinScopedGroupRule(rules)
