"""Tests for BIN / Group membership rule parsing."""

import pytest

from rxopps.exceptions import TriggerConfigError
from rxopps.services.restrictions import (
    ALLOW_ALL,
    BinScopedGroupRule,
    ExceptList,
    OnlyList,
    parse_bin_restriction,
    parse_group_restriction,
)


# ── Plain rules ──────────────────────────────────────────────────────────────

class TestParseMembershipRule:
    @pytest.mark.parametrize("text", [None, "", "   ", "ALL", "all"])
    def test_empty_and_all_allow_everything(self, text):
        rule = parse_bin_restriction(text)
        assert rule is ALLOW_ALL
        assert rule.permits("999999")

    def test_only_list(self):
        rule = parse_bin_restriction("ONLY 610097, 004336")
        assert rule == OnlyList(frozenset({"610097", "004336"}))
        assert rule.permits("610097")
        assert not rule.permits("999999")

    def test_bare_list_means_only(self):
        rule = parse_bin_restriction("610097,004336")
        assert isinstance(rule, OnlyList)
        assert rule.permits("004336")
        assert not rule.permits("015581")

    @pytest.mark.parametrize("text", ["ALL EXCEPT 610097", "EXCEPT 610097", "all except 610097"])
    def test_except_list(self, text):
        rule = parse_bin_restriction(text)
        assert isinstance(rule, ExceptList)
        assert not rule.permits("610097")
        assert rule.permits("004336")

    def test_comparison_ignores_case_and_extra_spaces(self):
        rule = parse_group_restriction("ONLY rx  group1")
        assert rule.permits("RX GROUP1")
        assert rule.permits(" rx group1 ")

    def test_only_without_values_is_config_error(self):
        with pytest.raises(TriggerConfigError) as exc:
            parse_bin_restriction("ONLY", trigger_code="T9")
        assert exc.value.trigger_code == "T9"
        assert "T9" in str(exc.value)

    def test_garbage_is_config_error(self):
        with pytest.raises(TriggerConfigError):
            parse_bin_restriction("#@!")


# ── Per-BIN Group rules ──────────────────────────────────────────────────────

class TestBinScopedGroupRule:
    def test_rules_apply_per_bin(self):
        rule = parse_group_restriction("610097:ONLY RXGRP1, 004740:ALL EXCEPT BADGRP")
        assert isinstance(rule, BinScopedGroupRule)
        assert rule.permits("RXGRP1", "610097")
        assert not rule.permits("OTHER", "610097")
        assert rule.permits("OTHER", "004740")
        assert not rule.permits("BADGRP", "004740")

    def test_unlisted_bin_is_unrestricted(self):
        rule = parse_group_restriction("610097:ONLY RXGRP1")
        assert rule.rule_for("015581") is ALLOW_ALL
        assert rule.permits("ANYTHING", "015581")

    def test_scoped_rule_with_multiple_groups(self):
        rule = parse_group_restriction("610097:ONLY A1,B2, 004740:ALL")
        assert rule.permits("A1", "610097")
        assert rule.permits("B2", "610097")
        assert not rule.permits("C3", "610097")
        assert rule.rule_for("004740") is ALLOW_ALL

    def test_unparseable_scoped_rule(self):
        with pytest.raises(TriggerConfigError):
            parse_group_restriction("ABC:ONLY X", trigger_code="T2")
