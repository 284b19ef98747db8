"""
Unit Tests: cost layer arithmetic (FIFO, LIFO, weighted average).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from core.errors import InsufficientLayers, UnknownMethod
from inventory.costing import (
    CostMethod,
    decode_slices,
    encode_slices,
    layer_value,
    order_layers,
    parse_method,
    plan_consumption,
    quantize_cost,
    receive_average,
    recompute_average,
    weighted_average,
)

T0 = datetime(2024, 1, 1)


@dataclass
class Layer:
    id: int
    received_at: datetime
    remaining_qty: int
    unit_cost: Decimal


def _layers():
    return [
        Layer(1, T0, 100, Decimal("10")),
        Layer(2, T0 + timedelta(hours=1), 50, Decimal("12")),
    ]


class TestParseMethod:
    def test_case_insensitive(self):
        assert parse_method("fifo") is CostMethod.FIFO
        assert parse_method(" Lifo ") is CostMethod.LIFO

    def test_default_when_missing(self):
        assert parse_method(None) is CostMethod.FIFO
        assert parse_method("", "AVERAGE") is CostMethod.AVERAGE

    def test_unknown_method_raises(self):
        with pytest.raises(UnknownMethod) as exc_info:
            parse_method("HIFO")
        assert exc_info.value.details["method"] == "HIFO"


class TestWeightedAverage:
    def test_first_receipt_takes_unit_cost(self):
        assert weighted_average(0, Decimal("0"), 10, Decimal("4.5")) == Decimal("4.500000")

    def test_blends_existing_stock(self):
        # (100*10 + 50*12) / 150
        assert weighted_average(100, Decimal("10"), 50, Decimal("12")) == Decimal("10.666667")

    def test_multi_slice_receipt(self):
        wac = receive_average(0, Decimal("0"), [(30, Decimal("10")), (10, Decimal("14"))])
        assert wac == Decimal("11.000000")

    def test_quantize_rounds_half_up(self):
        assert quantize_cost("1.0000005") == Decimal("1.000001")


class TestPlanConsumption:
    def test_fifo_draws_oldest_first(self):
        plan = plan_consumption(_layers(), 120, CostMethod.FIFO)
        assert [(d.layer_id, d.qty) for d in plan.draws] == [(1, 100), (2, 20)]
        assert plan.total_cost == Decimal("1240.000000")
        assert plan.cost_slices() == [(100, Decimal("10")), (20, Decimal("12"))]

    def test_lifo_draws_newest_first(self):
        plan = plan_consumption(_layers(), 60, CostMethod.LIFO)
        assert [(d.layer_id, d.qty) for d in plan.draws] == [(2, 50), (1, 10)]
        assert plan.total_cost == Decimal("700.000000")

    def test_average_costs_at_wac(self):
        plan = plan_consumption(_layers(), 30, CostMethod.AVERAGE, Decimal("10.666667"))
        assert plan.total_cost == Decimal("320.000010")
        # Units are still booked against the oldest layer.
        assert [(d.layer_id, d.qty) for d in plan.draws] == [(1, 30)]
        assert plan.cost_slices() == [(30, plan.unit_cost)]

    def test_does_not_mutate_layers(self):
        layers = _layers()
        plan_consumption(layers, 120, CostMethod.FIFO)
        assert [layer.remaining_qty for layer in layers] == [100, 50]

    def test_insufficient_layers(self):
        with pytest.raises(InsufficientLayers) as exc_info:
            plan_consumption(_layers(), 151, CostMethod.FIFO)
        assert exc_info.value.details == {"layer_units": 150, "requested": 151}

    def test_ties_broken_by_layer_id(self):
        layers = [
            Layer(5, T0, 1, Decimal("2")),
            Layer(3, T0, 1, Decimal("1")),
        ]
        assert [layer.id for layer in order_layers(layers, CostMethod.FIFO)] == [3, 5]
        assert [layer.id for layer in order_layers(layers, CostMethod.LIFO)] == [5, 3]


class TestLayerValue:
    def test_value_and_recomputed_average(self):
        layers = [Layer(2, T0, 30, Decimal("12"))]
        assert layer_value(layers) == Decimal("360.000000")
        assert recompute_average(layers, Decimal("0")) == Decimal("12.000000")

    def test_empty_layers_keep_fallback(self):
        assert recompute_average([], Decimal("7.5")) == Decimal("7.5")


def test_cost_detail_json_form():
    detail = encode_slices([(4, Decimal("10")), (2, Decimal("12.5"))])
    assert detail == [[4, "10.000000"], [2, "12.500000"]]
    assert decode_slices(detail) == [(4, Decimal("10.000000")), (2, Decimal("12.500000"))]
    assert decode_slices(None) == []
