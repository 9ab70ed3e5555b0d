"""Tests for fleet health scoring."""
from types import SimpleNamespace

import pytest

from fleethub.services import fleet_health
from fleethub.services.fleet_health import AT_RISK, COMPLIANCE_ISSUE, MAINTENANCE_DUE


def vehicle(**kwargs):
    values = {"year": 2020, "mileage": 1000, "odometer": 1000, "vin": "1HT", "state": "WA"}
    values.update(kwargs)
    return SimpleNamespace(**values)


class TestClassify:

    def test_healthy(self):
        assert fleet_health.classify(vehicle()) == set()

    def test_high_mileage_is_at_risk_and_due(self):
        assert fleet_health.classify(vehicle(mileage=120000)) == {AT_RISK, MAINTENANCE_DUE}

    def test_old_year_is_at_risk(self):
        assert fleet_health.classify(vehicle(year=2005)) == {AT_RISK}

    def test_boundaries_are_exclusive(self):
        assert fleet_health.classify(vehicle(mileage=100000, year=2010)) == {MAINTENANCE_DUE}
        assert fleet_health.classify(vehicle(mileage=50000, odometer=50000)) == set()

    def test_odometer_alone_triggers_maintenance(self):
        assert fleet_health.classify(vehicle(odometer=50001)) == {MAINTENANCE_DUE}

    @pytest.mark.parametrize("field,value", [("vin", ""), ("vin", None), ("state", "  "), ("state", None)])
    def test_missing_compliance_fields(self, field, value):
        assert fleet_health.classify(vehicle(**{field: value})) == {COMPLIANCE_ISSUE}

    def test_unknown_values_are_not_defects(self):
        assert fleet_health.classify(vehicle(year=None, mileage=None, odometer=None)) == set()


class TestScore:

    def test_empty_fleet(self):
        result = fleet_health.score([])
        assert result.health_index == 100
        assert result.total_assets == 0

    @pytest.mark.parametrize("n", [1, 2, 7, 50])
    def test_uniformly_at_risk_fleet_is_seventy(self, n):
        result = fleet_health.score([vehicle(year=2005) for _ in range(n)])
        assert result.health_index == 70
        assert result.at_risk == n
        assert result.maintenance_due == 0
        assert result.compliance_issues == 0

    def test_defects_are_additive(self):
        # at risk + maintenance due + compliance on a single asset
        result = fleet_health.score([vehicle(mileage=120000, vin="")])
        assert (result.at_risk, result.maintenance_due, result.compliance_issues) == (1, 1, 1)
        assert result.health_index == 10

    def test_rounds_half_up(self):
        fleet = [vehicle(state=None), vehicle(), vehicle(), vehicle()]
        # 100 - 30/4 = 92.5
        assert fleet_health.score(fleet).health_index == 93

    def test_healthy_fleet(self):
        assert fleet_health.score([vehicle(), vehicle()]).health_index == 100

    def test_accepts_generator(self):
        assert fleet_health.score(vehicle() for _ in range(3)).total_assets == 3
