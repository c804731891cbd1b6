from flask import Blueprint, request, jsonify
from werkzeug.exceptions import HTTPException
from datetime import date, datetime
import logging

from .models import CattlePurchase
from . import db
from .errors import AppError, ValidationError
from .utils import get_or_404, parse_date
from .categories import catalogue
from . import herd, interventions, financial

logger = logging.getLogger(__name__)

# Create a Blueprint. 'api' is the name of the blueprint.
api = Blueprint('api', __name__)


@api.errorhandler(AppError)
def handle_app_error(error):
    return jsonify(error.to_dict()), error.status_code


@api.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({'error': f'An unexpected error occurred: {str(error)}'}), 500


def _int_arg(name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"'{name}' must be a whole number.")


def _bool_arg(name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    return value.lower() in ('1', 'true', 'yes')


# --- General Routes ---

@api.route('/')
def home():
    """A simple test route to confirm the API is running."""
    return "The Feedlot Manager Backend is running!"


@api.route('/categories', methods=['GET'])
def list_categories():
    return jsonify(catalogue())


# --- Herd Routes ---

@api.route('/cycles', methods=['POST'])
def add_cycle():
    cycle = herd.create_cycle(request.get_json(silent=True))
    return jsonify({'message': 'Cycle created successfully!', 'cycle': cycle.to_dict()}), 201


@api.route('/lots', methods=['POST'])
def add_lot():
    lot = herd.create_lot(request.get_json(silent=True))
    return jsonify({'message': 'Lot registered successfully!', 'lot': lot.to_dict()}), 201


@api.route('/lots/<int:purchase_id>', methods=['GET'])
def get_lot(purchase_id):
    """Lot detail with its pen allocations."""
    lot = get_or_404(CattlePurchase, purchase_id, 'Lot')
    data = lot.to_dict()
    data['acquisition_cost'] = round(lot.acquisition_cost, 2)
    data['allocations'] = [link.to_dict() for link in lot.pen_links]
    return jsonify(data)


@api.route('/pens', methods=['POST'])
def add_pen():
    pen = herd.create_pen(request.get_json(silent=True))
    return jsonify({'message': 'Pen created successfully!', 'pen': pen.to_dict()}), 201


@api.route('/pens/<int:pen_id>/occupancy', methods=['GET'])
def pen_occupancy(pen_id):
    return jsonify(herd.get_pen_occupancy(pen_id))


@api.route('/pens/<int:pen_id>/weighted-cost', methods=['GET'])
def pen_weighted_cost(pen_id):
    calculation = interventions.calculate_pen_weighted_cost(pen_id)
    calculation['total_cost'] = round(calculation['total_cost'], 2)
    calculation['average_cost_per_head'] = round(calculation['average_cost_per_head'], 2)
    calculation['average_weight'] = round(calculation['average_weight'], 2)
    for lot in calculation['lots']:
        lot['cost_per_animal'] = round(lot['cost_per_animal'], 2)
        lot['percentage_of_pen'] = round(lot['percentage_of_pen'], 2)
    return jsonify(calculation)


@api.route('/allocations', methods=['POST'])
def add_allocation():
    link = herd.allocate_lot_to_pen(request.get_json(silent=True))
    return jsonify({'message': 'Lot allocated successfully!', 'allocation': link.to_dict()}), 201


# --- Intervention Routes ---

@api.route('/interventions/health', methods=['POST'])
def add_health_intervention():
    intervention = interventions.create_health_intervention(request.get_json(silent=True))
    return jsonify({
        'message': 'Health intervention recorded successfully!',
        'intervention': intervention.to_dict()
    }), 201


@api.route('/interventions/mortality', methods=['POST'])
def add_mortality():
    """
    Registers deaths in a pen. Expects 'pen_id' and 'quantity', with an
    optional 'purchase_id' to charge the deaths to a single lot.
    """
    result = interventions.register_mortality(request.get_json(silent=True))
    result['message'] = 'Mortality registered successfully!'
    return jsonify(result), 201


@api.route('/interventions/mortality/preview', methods=['GET'])
def mortality_preview():
    pen_id = _int_arg('pen_id')
    quantity = request.args.get('quantity')
    if pen_id is None or quantity is None:
        raise ValidationError("Missing required parameters: pen_id, quantity")
    return jsonify(interventions.preview_mortality_loss(pen_id, quantity))


@api.route('/interventions/mortality/summary', methods=['GET'])
def mortality_summary():
    return jsonify(herd.get_mortality_summary(_int_arg('cycle_id')))


@api.route('/interventions/movement', methods=['POST'])
def add_movement():
    movement = interventions.create_pen_movement(request.get_json(silent=True))
    return jsonify({'message': 'Animals moved successfully!', 'movement': movement.to_dict()}), 201


@api.route('/interventions/weight', methods=['POST'])
def add_weight_reading():
    reading = interventions.create_weight_reading(request.get_json(silent=True))
    return jsonify({'message': 'Weight reading recorded successfully!', 'reading': reading.to_dict()}), 201


@api.route('/interventions/history', methods=['GET'])
def intervention_history():
    """
    Lists interventions newest first. Optional filters: type, purchase_id,
    pen_id and a start_date/end_date pair.
    """
    filters = {
        'type': request.args.get('type') or None,
        'purchase_id': _int_arg('purchase_id'),
        'pen_id': _int_arg('pen_id'),
        'start_date': parse_date(request.args.get('start_date'), 'start_date', required=False),
        'end_date': parse_date(request.args.get('end_date'), 'end_date', required=False),
    }
    return jsonify(interventions.get_intervention_history(filters))


@api.route('/interventions/statistics', methods=['GET'])
def intervention_statistics():
    return jsonify(interventions.get_intervention_statistics(_int_arg('cycle_id')))


# --- Financial Routes ---

@api.route('/expenses', methods=['POST'])
def add_expense():
    expense = financial.create_expense(request.get_json(silent=True))
    return jsonify({'message': 'Expense created successfully!', 'expense': expense.to_dict()}), 201


@api.route('/expenses', methods=['GET'])
def list_expenses():
    filters = {
        'category': request.args.get('category'),
        'impacts_cash_flow': _bool_arg('impacts_cash_flow'),
        'is_paid': _bool_arg('is_paid'),
        'purchase_id': _int_arg('purchase_id'),
        'start_date': parse_date(request.args.get('start_date'), 'start_date', required=False),
        'end_date': parse_date(request.args.get('end_date'), 'end_date', required=False),
        'search': request.args.get('search'),
    }
    return jsonify([expense.to_dict() for expense in financial.list_expenses(filters)])


@api.route('/expenses/<int:expense_id>/pay', methods=['POST'])
def pay_expense(expense_id):
    data = request.get_json(silent=True) or {}
    payment_date = parse_date(data.get('payment_date'), 'payment_date', required=False)
    expense = financial.pay_expense(expense_id, payment_date)
    return jsonify({'message': 'Expense paid successfully!', 'expense': expense.to_dict()})


@api.route('/expenses/cash-flow', methods=['GET'])
def cash_flow():
    """Cash flow for a period; defaults to the current month."""
    today = date.today()
    start_date = parse_date(request.args.get('start_date'), 'start_date', required=False) or today.replace(day=1)
    end_date = parse_date(request.args.get('end_date'), 'end_date', required=False) or today
    if start_date > end_date:
        raise ValidationError("'start_date' must not be after 'end_date'.")
    return jsonify(financial.cash_flow_summary(start_date, end_date))


@api.route('/financial-analysis/<string:month>', methods=['GET'])
def monthly_analysis(month):
    try:
        reference_date = datetime.strptime(month, '%Y-%m').date()
    except ValueError:
        raise ValidationError("Invalid month. Use the YYYY-MM format.")
    analysis = financial.get_analysis_by_month(reference_date)
    return jsonify(analysis.to_dict(include_items=True))


@api.route('/financial-analysis/year/<int:year>', methods=['GET'])
def yearly_analyses(year):
    return jsonify([analysis.to_dict() for analysis in financial.list_analyses_by_year(year)])
