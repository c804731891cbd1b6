import pytest

from feedlot import db, interventions
from feedlot.errors import InsufficientCapacityError, InsufficientQuantityError, NotFoundError, ValidationError
from feedlot.models import LotPenLink, PenMovement


def _quantity(lot, pen):
    link = LotPenLink.query.filter_by(purchase_id=lot.id, pen_id=pen.id).first()
    return link.quantity if link else None


def _move(lot, from_pen, to_pen, quantity):
    return interventions.create_pen_movement({
        'purchase_id': lot.id,
        'from_pen_id': from_pen.id,
        'to_pen_id': to_pen.id,
        'quantity': quantity,
        'movement_date': '2024-02-01',
        'reason': 'Regrouping',
    })


def test_move_to_empty_pen_creates_allocation(make_lot, make_pen, allocate):
    source, target = make_pen(capacity=100), make_pen(capacity=50)
    lot = make_lot(initial_quantity=80, total_cost=8000.0)
    allocate(lot, source, 80)

    movement = _move(lot, source, target, 20)

    assert movement.quantity == 20
    assert _quantity(lot, source) == 60
    assert _quantity(lot, target) == 20
    assert PenMovement.query.count() == 1


def test_move_into_existing_allocation_increments_it(make_lot, make_pen, allocate):
    source, target = make_pen(capacity=100), make_pen(capacity=100)
    lot = make_lot(initial_quantity=80)
    allocate(lot, source, 50)
    allocate(lot, target, 30)

    _move(lot, source, target, 10)

    assert _quantity(lot, source) == 40
    assert _quantity(lot, target) == 40
    assert LotPenLink.query.filter_by(purchase_id=lot.id, pen_id=target.id).count() == 1


def test_move_conserves_lot_total(make_lot, make_pen, allocate):
    source, target = make_pen(capacity=100), make_pen(capacity=100)
    lot = make_lot(initial_quantity=80)
    allocate(lot, source, 80)

    _move(lot, source, target, 25)
    _move(lot, target, source, 5)

    total = sum(link.quantity for link in LotPenLink.query.filter_by(purchase_id=lot.id))
    assert total == 80


def test_move_without_capacity_changes_nothing(make_lot, make_pen, allocate):
    source, target = make_pen(capacity=100), make_pen(capacity=10)
    lot = make_lot(initial_quantity=50)
    other = make_lot(initial_quantity=8)
    allocate(lot, source, 50)
    allocate(other, target, 8)

    with pytest.raises(InsufficientCapacityError):
        _move(lot, source, target, 5)

    assert _quantity(lot, source) == 50
    assert _quantity(lot, target) is None
    assert PenMovement.query.count() == 0


def test_move_more_than_source_holds(make_lot, make_pen, allocate):
    source, target = make_pen(capacity=100), make_pen(capacity=100)
    lot = make_lot(initial_quantity=50)
    allocate(lot, source, 20)

    with pytest.raises(InsufficientQuantityError):
        _move(lot, source, target, 21)
    assert _quantity(lot, source) == 20


def test_move_from_pen_without_the_lot(make_lot, make_pen):
    source, target = make_pen(), make_pen()
    lot = make_lot()

    with pytest.raises(InsufficientQuantityError):
        _move(lot, source, target, 1)


def test_move_to_missing_pen(make_lot, make_pen, allocate):
    source = make_pen()
    lot = make_lot()
    allocate(lot, source, 10)

    with pytest.raises(NotFoundError):
        interventions.create_pen_movement({
            'purchase_id': lot.id, 'from_pen_id': source.id, 'to_pen_id': 999,
            'quantity': 1, 'movement_date': '2024-02-01', 'reason': 'x',
        })


def test_move_to_same_pen_is_rejected(make_lot, make_pen, allocate):
    pen = make_pen()
    lot = make_lot()
    allocate(lot, pen, 10)

    with pytest.raises(ValidationError):
        _move(lot, pen, pen, 1)


def test_move_requires_reason(make_lot, make_pen, allocate):
    source, target = make_pen(), make_pen()
    lot = make_lot()
    allocate(lot, source, 10)

    with pytest.raises(ValidationError):
        interventions.create_pen_movement({
            'purchase_id': lot.id, 'from_pen_id': source.id, 'to_pen_id': target.id,
            'quantity': 1, 'movement_date': '2024-02-01',
        })
    assert db.session.get(LotPenLink, 1).quantity == 10
