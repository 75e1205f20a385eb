"""Tests for attribute-based condition evaluation."""

from datetime import datetime

import pytest

from rbac.conditions import (
    RequestContext,
    evaluate_condition,
    evaluate_conditions,
    failing_conditions,
    normalize_conditions,
)
from rbac.schemas import ConditionSchema

NOON = datetime(2026, 3, 2, 12, 0, 0)


def _ctx(**kwargs):
    kwargs.setdefault("now", NOON)
    return RequestContext(user_id="u1", **kwargs)


# ── normalize_conditions ─────────────────────────────────────────────


class TestNormalize:
    def test_empty_forms(self):
        assert normalize_conditions(None) == []
        assert normalize_conditions([]) == []
        assert normalize_conditions({}) == []

    def test_single_mapping(self):
        cond = {"type": "department", "value": "CS"}
        assert normalize_conditions(cond) == [cond]

    def test_shorthand_mapping(self):
        result = normalize_conditions({"department": ["CS", "EE"], "semester": "2026S"})
        assert {"type": "department", "operator": "in", "value": ["CS", "EE"]} in result
        assert {"type": "semester", "operator": "equals", "value": "2026S"} in result

    def test_pydantic_models(self):
        result = normalize_conditions([ConditionSchema(type="location", value="campus")])
        assert result[0]["type"] == "location"
        assert result[0]["operator"] == "equals"


# ── Attribute conditions ─────────────────────────────────────────────


class TestAttributes:
    def test_department_equals(self):
        cond = {"type": "department", "operator": "equals", "value": "CS"}
        assert evaluate_condition(cond, _ctx(department="CS"))
        assert not evaluate_condition(cond, _ctx(department="EE"))

    def test_in_and_not_in(self):
        assert evaluate_condition({"type": "semester", "operator": "in", "value": ["2026S", "2026F"]},
                                  _ctx(semester="2026F"))
        assert not evaluate_condition({"type": "location", "operator": "not_in", "value": ["remote"]},
                                      _ctx(location="remote"))

    def test_missing_attribute_fails_closed(self):
        assert not evaluate_condition({"type": "department", "value": "CS"}, _ctx())

    def test_unknown_type_or_operator_fails_closed(self):
        assert not evaluate_condition({"type": "weather", "value": "sunny"}, _ctx())
        assert not evaluate_condition({"type": "department", "operator": "contains", "value": "C"},
                                      _ctx(department="CS"))


# ── IP conditions ────────────────────────────────────────────────────


class TestIp:
    def test_cidr_match(self):
        cond = {"type": "ip", "operator": "in", "value": ["10.0.0.0/8"]}
        assert evaluate_condition(cond, _ctx(ip_address="10.1.2.3"))
        assert not evaluate_condition(cond, _ctx(ip_address="192.168.1.1"))

    def test_assignment_alias(self):
        cond = {"type": "ip_restriction", "value": "192.168.1.10"}
        assert evaluate_condition(cond, _ctx(ip_address="192.168.1.10"))

    def test_not_in(self):
        cond = {"type": "ip", "operator": "not_in", "value": "172.16.0.0/12"}
        assert evaluate_condition(cond, _ctx(ip_address="8.8.8.8"))

    @pytest.mark.parametrize("address", [None, "testclient", "not-an-ip"])
    def test_unusable_address_fails(self, address):
        assert not evaluate_condition({"type": "ip", "value": "10.0.0.0/8"}, _ctx(ip_address=address))

    def test_bad_network_fails(self):
        assert not evaluate_condition({"type": "ip", "value": "10.0.0.0/99"}, _ctx(ip_address="10.0.0.1"))


# ── Time conditions ──────────────────────────────────────────────────


class TestTime:
    def test_office_hours(self):
        cond = {"type": "time", "operator": "between", "value": ["09:00", "17:00"]}
        assert evaluate_condition(cond, _ctx())
        assert not evaluate_condition(cond, _ctx(now=datetime(2026, 3, 2, 20, 0)))

    def test_overnight_window(self):
        cond = {"type": "time_range", "operator": "between", "value": ["22:00", "06:00"]}
        assert evaluate_condition(cond, _ctx(now=datetime(2026, 3, 2, 23, 30)))
        assert evaluate_condition(cond, _ctx(now=datetime(2026, 3, 3, 5, 0)))
        assert not evaluate_condition(cond, _ctx())

    def test_datetime_window(self):
        cond = {"type": "time", "operator": "between",
                "value": ["2026-03-01T00:00:00Z", "2026-03-31T23:59:59Z"]}
        assert evaluate_condition(cond, _ctx())
        assert not evaluate_condition(cond, _ctx(now=datetime(2026, 4, 1)))

    def test_greater_and_less_than(self):
        assert evaluate_condition({"type": "time", "operator": "greater_than", "value": "08:00"}, _ctx())
        assert evaluate_condition({"type": "time", "operator": "less_than", "value": "2026-12-31T00:00:00"}, _ctx())

    def test_malformed_window_fails(self):
        assert not evaluate_condition({"type": "time", "operator": "between", "value": ["09:00"]}, _ctx())
        assert not evaluate_condition({"type": "time", "operator": "between", "value": "09:00-17:00"}, _ctx())

    def test_temporary(self):
        cond = {"type": "temporary", "value": "2026-03-05T00:00:00"}
        assert evaluate_condition(cond, _ctx())
        assert not evaluate_condition(cond, _ctx(now=datetime(2026, 3, 6)))


# ── Combined ─────────────────────────────────────────────────────────


class TestEvaluateConditions:
    def test_no_conditions_always_hold(self):
        assert evaluate_conditions([], None)
        assert evaluate_conditions(None, _ctx())

    def test_conditions_without_context_fail(self):
        assert not evaluate_conditions([{"type": "department", "value": "CS"}], None)

    def test_all_must_hold(self):
        conditions = [
            {"type": "department", "value": "CS"},
            {"type": "time", "operator": "between", "value": ["09:00", "17:00"]},
        ]
        assert evaluate_conditions(conditions, _ctx(department="CS"))
        assert not evaluate_conditions(conditions, _ctx(department="EE"))

    def test_failing_conditions_lists_only_failures(self):
        conditions = [{"type": "department", "value": "CS"}, {"type": "location", "value": "campus"}]
        failed = failing_conditions(conditions, _ctx(department="CS", location="remote"))
        assert [c["type"] for c in failed] == ["location"]

    def test_context_at(self):
        later = datetime(2026, 3, 2, 18, 0)
        ctx = _ctx(department="CS").at(later)
        assert ctx.now == later
        assert ctx.department == "CS"
