import sys
import os
import pandas as pd

# --- GPS Block to find the 'feedlot' package ---
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.join(script_dir, '..')
sys.path.insert(0, project_root)

from feedlot import create_app
from feedlot.errors import AppError
from feedlot.models import Pen
from feedlot.herd import create_lot, allocate_lot_to_pen

# --- Mappings and Path ---
CSV_COLUMN_MAP = {
    'lot_col': 'Lot',
    'date_col': 'Purchase Date',
    'quantity_col': 'Head',
    'price_col': 'Unit Price',
    'freight_col': 'Freight',
    'commission_col': 'Commission',
    'weight_col': 'Average Weight (Kg)',
    'slaughter_col': 'Estimated Slaughter',
    'pen_col': 'Pen',
}
CSV_FILE_PATH = os.environ.get('FEEDLOT_LOTS_CSV', os.path.join(script_dir, 'lots.csv'))


def _optional(row, key):
    value = row.get(CSV_COLUMN_MAP[key])
    return None if value is None or pd.isna(value) else value


def seed_lots_database(csv_file_path=CSV_FILE_PATH):
    """
    Registers one lot per CSV row and places all its animals in the pen
    named in the 'Pen' column. Pens must be seeded first.
    """
    try:
        df = pd.read_csv(csv_file_path, parse_dates=[CSV_COLUMN_MAP['date_col']])
        print(f"Found {len(df)} rows in CSV.")
    except FileNotFoundError:
        print(f"Error: {csv_file_path} not found. Aborting.")
        return 0

    pens = {pen.pen_number: pen for pen in Pen.query.all()}
    created = 0
    for index, row in df.iterrows():
        lot_code = str(row[CSV_COLUMN_MAP['lot_col']]).strip()
        try:
            slaughter = _optional(row, 'slaughter_col')
            lot = create_lot({
                'lot_code': lot_code,
                'purchase_date': row[CSV_COLUMN_MAP['date_col']].date(),
                'initial_quantity': int(row[CSV_COLUMN_MAP['quantity_col']]),
                'unit_price': _optional(row, 'price_col'),
                'freight_cost': _optional(row, 'freight_col'),
                'commission': _optional(row, 'commission_col'),
                'average_weight': _optional(row, 'weight_col'),
                'estimated_slaughter_date': str(slaughter) if slaughter is not None else None,
            })
            created += 1

            pen_number = _optional(row, 'pen_col')
            if pen_number is None:
                continue
            pen = pens.get(str(pen_number).strip())
            if pen is None:
                print(f"  > Lot {lot_code}: pen {pen_number} does not exist, left unallocated.")
                continue
            allocate_lot_to_pen({'purchase_id': lot.id, 'pen_id': pen.id, 'quantity': lot.initial_quantity})
            print(f"  > Lot {lot_code}: {lot.initial_quantity} head placed in pen {pen.pen_number}")
        except AppError as e:
            print(f"  > ERROR processing row {index+1} ({lot_code}): {e.message}")
            print("  > Skipping this row.")

    print(f"Lot seeding complete! {created} lots registered.")
    return created


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        seed_lots_database(sys.argv[1] if len(sys.argv) > 1 else CSV_FILE_PATH)
