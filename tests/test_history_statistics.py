from datetime import date

import pytest

from feedlot import db, herd, interventions
from feedlot.errors import ValidationError
from feedlot.models import Pen


@pytest.fixture
def busy_pen(shared_pen, make_pen):
    pen, lot_a, lot_b = shared_pen
    other_pen = make_pen(capacity=100)
    interventions.create_health_intervention({
        'purchase_id': lot_a.id, 'pen_id': pen.id, 'intervention_type': 'vaccine',
        'product_name': 'Vac', 'dose': 2, 'application_date': '2024-01-05',
    })
    interventions.register_mortality({'pen_id': pen.id, 'quantity': 10, 'death_date': '2024-01-20'})
    interventions.create_pen_movement({
        'purchase_id': lot_b.id, 'from_pen_id': pen.id, 'to_pen_id': other_pen.id,
        'quantity': 10, 'movement_date': '2024-01-25', 'reason': 'Regrouping',
    })
    interventions.create_weight_reading({
        'purchase_id': lot_a.id, 'pen_id': pen.id, 'average_weight': 400, 'sample_size': 5,
        'weighing_date': '2024-01-01',
    })
    interventions.create_weight_reading({
        'purchase_id': lot_a.id, 'pen_id': pen.id, 'average_weight': 430, 'sample_size': 5,
        'weighing_date': '2024-01-31',
    })
    return pen, other_pen, lot_a, lot_b


def test_history_is_sorted_newest_first_and_tagged(busy_pen):
    history = interventions.get_intervention_history({})

    assert [entry['type'] for entry in history] == ['weight', 'movement', 'mortality', 'health', 'weight']
    for entry in history:
        assert entry['type'] in ('health', 'mortality', 'movement', 'weight')


def test_history_filtered_by_type(busy_pen):
    history = interventions.get_intervention_history({'type': 'weight'})
    assert len(history) == 2
    assert {entry['type'] for entry in history} == {'weight'}


def test_history_filtered_by_lot_finds_spread_mortality(busy_pen):
    pen, other_pen, lot_a, lot_b = busy_pen
    history = interventions.get_intervention_history({'purchase_id': lot_b.id})
    assert [entry['type'] for entry in history] == ['movement', 'mortality']


def test_history_filtered_by_pen_includes_movements_either_way(busy_pen):
    pen, other_pen, lot_a, lot_b = busy_pen
    history = interventions.get_intervention_history({'pen_id': other_pen.id})
    assert [entry['type'] for entry in history] == ['movement']


def test_history_date_range_needs_both_ends(busy_pen):
    both = interventions.get_intervention_history({'start_date': date(2024, 1, 10),
                                                   'end_date': date(2024, 1, 26)})
    assert [entry['type'] for entry in both] == ['movement', 'mortality']

    only_start = interventions.get_intervention_history({'start_date': date(2024, 1, 10)})
    assert len(only_start) == 5


def test_history_rejects_unknown_type(app):
    with pytest.raises(ValidationError):
        interventions.get_intervention_history({'type': 'sale'})


def test_statistics(busy_pen):
    statistics = interventions.get_intervention_statistics()

    assert statistics['degraded'] is False
    assert statistics['health_interventions'] == 1
    assert statistics['mortality_records'] == {'total': 1, 'total_deaths': 10, 'total_loss': 150.0}
    assert statistics['pen_movements'] == 1
    assert statistics['weight_readings'] == 2
    assert statistics['average_gmd'] == pytest.approx(1.0)


def test_statistics_scoped_to_cycle(busy_pen):
    cycle = herd.create_cycle({'name': '2025 season', 'start_date': '2025-01-01'})
    statistics = interventions.get_intervention_statistics(cycle.id)

    assert statistics['health_interventions'] == 0
    assert statistics['mortality_records']['total_deaths'] == 0
    assert statistics['degraded'] is False


def test_statistics_on_empty_database(app):
    statistics = interventions.get_intervention_statistics()
    assert statistics['degraded'] is False
    assert statistics['mortality_records']['total'] == 0
    assert statistics['average_gmd'] == 0.0


def test_statistics_degrade_instead_of_failing(busy_pen, monkeypatch):
    def broken(cycle_id):
        raise RuntimeError('database is locked')

    monkeypatch.setattr(interventions, '_collect_statistics', broken)
    statistics = interventions.get_intervention_statistics()

    assert statistics['degraded'] is True
    assert statistics['error'] == 'database is locked'
    assert statistics['health_interventions'] == 0
    assert statistics['mortality_records'] == {'total': 0, 'total_deaths': 0, 'total_loss': 0.0}


def test_mortality_summary(busy_pen):
    pen, other_pen, lot_a, lot_b = busy_pen
    summary = herd.get_mortality_summary()

    assert [r['lot_code'] for r in summary['records']] == ['A', 'B']
    assert summary['records'][0]['death_count'] == 3
    assert summary['records'][0]['mortality_rate'] == pytest.approx(10.0)
    assert summary['summary']['total_deaths'] == 10
    assert summary['summary']['estimated_total_loss'] == pytest.approx(150.0)


def test_degraded_statistics_keep_pending_work(app, monkeypatch):
    pen = Pen(pen_number='PENDING', capacity=10)
    db.session.add(pen)
    db.session.flush()

    def broken(cycle_id):
        raise RuntimeError('database is locked')

    monkeypatch.setattr(interventions, '_collect_statistics', broken)
    assert interventions.get_intervention_statistics()['degraded'] is True

    db.session.commit()
    assert Pen.query.filter_by(pen_number='PENDING').count() == 1
