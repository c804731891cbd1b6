import pytest

from feedlot import create_app, db
from feedlot import herd


@pytest.fixture
def app():
    """An application bound to a fresh in-memory database, with its context pushed."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_lot(app):
    counter = {'n': 0}

    def _make_lot(initial_quantity=100, total_cost=None, average_weight=None, **extra):
        counter['n'] += 1
        data = {
            'lot_code': extra.pop('lot_code', f'LOT-{counter["n"]:03d}'),
            'purchase_date': extra.pop('purchase_date', '2024-01-10'),
            'initial_quantity': initial_quantity,
            'total_cost': total_cost,
            'average_weight': average_weight,
        }
        data.update(extra)
        return herd.create_lot(data)

    return _make_lot


@pytest.fixture
def make_pen(app):
    counter = {'n': 0}

    def _make_pen(capacity=200, **extra):
        counter['n'] += 1
        data = {'pen_number': extra.pop('pen_number', f'P{counter["n"]:02d}'), 'capacity': capacity}
        data.update(extra)
        return herd.create_pen(data)

    return _make_pen


@pytest.fixture
def allocate(app):
    def _allocate(lot, pen, quantity):
        return herd.allocate_lot_to_pen({'purchase_id': lot.id, 'pen_id': pen.id, 'quantity': quantity})

    return _allocate


@pytest.fixture
def shared_pen(make_lot, make_pen, allocate):
    """
    Pen P01 holding two lots: 30 head costing 10 each (lot A, 400 kg) and
    70 head costing 17.1428... each (lot B, 300 kg), so the pen averages 15
    per head over 100 head.
    """
    pen = make_pen(capacity=150)
    lot_a = make_lot(initial_quantity=30, total_cost=300.0, average_weight=400.0, lot_code='A')
    lot_b = make_lot(initial_quantity=70, total_cost=1200.0, average_weight=300.0, lot_code='B')
    allocate(lot_a, pen, 30)
    allocate(lot_b, pen, 70)
    return pen, lot_a, lot_b
