import os
import sys

import pytest

from feedlot.models import CattlePurchase, LotPenLink, Pen

SEED_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'Seed')
sys.path.insert(0, SEED_DIR)

import Seed_Lots  # noqa: E402
import Seed_Pens  # noqa: E402


def test_seed_pens_and_lots(app):
    assert Seed_Pens.seed_pens_database(os.path.join(SEED_DIR, 'pens.csv')) == 4
    assert Seed_Lots.seed_lots_database(os.path.join(SEED_DIR, 'lots.csv')) == 4

    assert Pen.query.count() == 4
    lot = CattlePurchase.query.filter_by(lot_code='L2024-01').one()
    assert lot.acquisition_cost == pytest.approx(2450.0 * 60 + 3200.0 + 1500.0)
    assert lot.estimated_slaughter_date.isoformat() == '2024-05-20'
    assert sum(link.quantity for link in LotPenLink.query.all()) == 60 + 80 + 110 + 95


def test_seeding_twice_skips_existing_rows(app, capsys):
    pens_csv = os.path.join(SEED_DIR, 'pens.csv')
    Seed_Pens.seed_pens_database(pens_csv)
    assert Seed_Pens.seed_pens_database(pens_csv) == 0
    assert 'Skipping this row' in capsys.readouterr().out


def test_missing_csv(app, tmp_path):
    assert Seed_Pens.seed_pens_database(str(tmp_path / 'absent.csv')) == 0
