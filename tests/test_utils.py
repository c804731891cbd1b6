from datetime import date
from types import SimpleNamespace

import pytest

from feedlot.errors import ValidationError
from feedlot.utils import (weighted_cost, distribute_deaths, calculate_gmd, project_weight, parse_date,
                           positive_int, first_of_month)


def _allocation(quantity, total_cost, initial_quantity, average_weight=None, lot_code='X', purchase_id=1):
    purchase = SimpleNamespace(
        id=purchase_id,
        lot_code=lot_code,
        initial_quantity=initial_quantity,
        acquisition_cost=total_cost,
        average_weight=average_weight,
    )
    return SimpleNamespace(quantity=quantity, purchase=purchase)


def test_weighted_cost_two_lots():
    allocations = [
        _allocation(30, 300.0, 30, 400.0, 'A', 1),
        _allocation(70, 1400.0, 70, 300.0, 'B', 2),
    ]
    result = weighted_cost(allocations)

    assert result['total_animals'] == 100
    assert result['total_cost'] == pytest.approx(1700.0)
    assert result['average_cost_per_head'] == pytest.approx(17.0)
    assert result['average_weight'] == pytest.approx(330.0)
    assert [lot['percentage_of_pen'] for lot in result['lots']] == pytest.approx([30.0, 70.0])


def test_weighted_cost_uses_lot_cost_per_head_times_animals_in_pen():
    # Only 50 of the 100 animals of the lot are in this pen.
    result = weighted_cost([_allocation(50, 1000.0, 100)])
    assert result['total_cost'] == pytest.approx(500.0)
    assert result['average_cost_per_head'] == pytest.approx(10.0)


def test_weighted_cost_empty_pen():
    result = weighted_cost([])
    assert result['total_animals'] == 0
    assert result['average_cost_per_head'] == 0.0
    assert result['average_weight'] == 0.0
    assert result['lots'] == []


def test_weighted_cost_lot_with_zero_initial_quantity_costs_nothing():
    result = weighted_cost([_allocation(10, 500.0, 0)])
    assert result['total_cost'] == 0.0


def test_distribute_deaths_proportional():
    assert distribute_deaths([30, 70], 10) == [3, 7]


def test_distribute_deaths_rounds_up_then_exhausts():
    # ceil(1/3 * 2) = 1 for each lot until the deaths run out.
    assert distribute_deaths([10, 10, 10], 2) == [1, 1, 0]


def test_distribute_deaths_capped_by_allocation():
    assert distribute_deaths([1, 99], 50) == [1, 49]


def test_distribute_deaths_always_sums_to_deaths():
    for quantities in ([5, 5], [1, 2, 3], [7, 0, 13], [100]):
        for deaths in range(1, sum(quantities) + 1):
            shares = distribute_deaths(quantities, deaths)
            assert sum(shares) == deaths
            assert all(0 <= s <= q for s, q in zip(shares, quantities))


def test_calculate_gmd():
    assert calculate_gmd(400.0, date(2024, 1, 1), 430.0, date(2024, 1, 16)) == pytest.approx(2.0)


def test_calculate_gmd_same_day_is_none():
    assert calculate_gmd(400.0, date(2024, 1, 1), 410.0, date(2024, 1, 1)) is None


def test_project_weight():
    assert project_weight(430.0, 2.0, date(2024, 1, 16), date(2024, 1, 26)) == pytest.approx(450.0)


def test_project_weight_without_gain_is_none():
    assert project_weight(430.0, 0.0, date(2024, 1, 16), date(2024, 1, 26)) is None
    assert project_weight(430.0, None, date(2024, 1, 16), date(2024, 1, 26)) is None


def test_project_weight_with_weight_loss():
    assert project_weight(430.0, -1.0, date(2024, 1, 16), date(2024, 1, 26)) == pytest.approx(420.0)


def test_project_weight_past_slaughter_date_is_none():
    assert project_weight(430.0, 2.0, date(2024, 1, 16), date(2024, 1, 10)) is None


def test_parse_date():
    assert parse_date('2024-03-05', 'd') == date(2024, 3, 5)
    assert parse_date(None, 'd', required=False) is None
    with pytest.raises(ValidationError):
        parse_date('05/03/2024', 'd')
    with pytest.raises(ValidationError):
        parse_date('', 'd')


@pytest.mark.parametrize('value', [0, -3, 'abc', 2.5, None])
def test_positive_int_rejects(value):
    with pytest.raises(ValidationError):
        positive_int(value, 'quantity')


def test_positive_int_accepts_numeric_strings():
    assert positive_int('12', 'quantity') == 12


def test_first_of_month():
    assert first_of_month(date(2024, 2, 29)) == date(2024, 2, 1)
