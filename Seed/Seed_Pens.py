import sys
import os
import pandas as pd

# --- GPS Block to find the 'feedlot' package ---
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.join(script_dir, '..')
sys.path.insert(0, project_root)

from feedlot import create_app
from feedlot.errors import AppError
from feedlot.herd import create_pen

# --- Mappings and Path ---
CSV_COLUMN_MAP = {
    'number_col': 'Pen',
    'capacity_col': 'Capacity',
    'location_col': 'Location',
}
CSV_FILE_PATH = os.environ.get('FEEDLOT_PENS_CSV', os.path.join(script_dir, 'pens.csv'))


def seed_pens_database(csv_file_path=CSV_FILE_PATH):
    """
    Creates one pen per CSV row. Rows whose pen number already exists or
    that fail validation are reported and skipped.
    """
    try:
        df = pd.read_csv(csv_file_path)
        print(f"Found {len(df)} rows in CSV.")
    except FileNotFoundError:
        print(f"Error: {csv_file_path} not found. Aborting.")
        return 0

    created = 0
    for index, row in df.iterrows():
        location = row.get(CSV_COLUMN_MAP['location_col'])
        try:
            pen = create_pen({
                'pen_number': str(row[CSV_COLUMN_MAP['number_col']]).strip(),
                'capacity': int(row[CSV_COLUMN_MAP['capacity_col']]),
                'location': str(location) if not pd.isna(location) else None,
            })
            created += 1
            print(f"  > Created pen {pen.pen_number} (capacity {pen.capacity})")
        except AppError as e:
            print(f"  > ERROR processing row {index+1}: {e.message}")
            print("  > Skipping this row.")

    print(f"Pen seeding complete! {created} pens created.")
    return created


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        seed_pens_database(sys.argv[1] if len(sys.argv) > 1 else CSV_FILE_PATH)
