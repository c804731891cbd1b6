from datetime import datetime, date
import logging

from . import db
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DATE_FORMAT = '%Y-%m-%d'


def parse_date(value, field_name, required=True):
    """
    Converts a 'YYYY-MM-DD' string (or an existing date) into a date object.
    Raises ValidationError naming the offending field.
    """
    if value is None or value == '':
        if required:
            raise ValidationError(f"Missing required field: '{field_name}'")
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), DATE_FORMAT).date()
    except ValueError:
        raise ValidationError(f"Invalid date for '{field_name}'. Use the YYYY-MM-DD format.")


def require_fields(data, required_fields):
    """Raises ValidationError listing every required field missing from data."""
    if not data:
        raise ValidationError(f"Missing required fields: {', '.join(required_fields)}")
    missing = [field for field in required_fields if data.get(field) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def first_of_month(value):
    """Returns the first day of the month containing the given date."""
    return value.replace(day=1)


def lot_cost_per_animal(purchase):
    """
    Acquisition plus accumulated cost of a single head of the lot.
    A lot registered with zero initial animals contributes no cost.
    """
    if not purchase.initial_quantity:
        logger.warning("Lot %s has an initial quantity of zero; its cost per head is taken as 0.",
                       purchase.lot_code)
        return 0.0
    return purchase.acquisition_cost / purchase.initial_quantity


def weighted_cost(allocations):
    """
    Computes the average cost and weight per head across every lot sharing a pen.

    Each allocation must expose `quantity` and `purchase` (the lot). The
    average is weighted by the number of animals each lot has in the pen.

    Returns a dictionary with the totals and a per-lot breakdown.
    """
    total_animals = sum(allocation.quantity for allocation in allocations)
    total_cost = 0.0
    total_weight = 0.0
    lots = []

    for allocation in allocations:
        purchase = allocation.purchase
        cost_per_animal = lot_cost_per_animal(purchase)
        lot_cost = cost_per_animal * allocation.quantity

        total_cost += lot_cost
        total_weight += (purchase.average_weight or 0) * allocation.quantity

        lots.append({
            'purchase_id': purchase.id,
            'lot_code': purchase.lot_code,
            'animals_in_pen': allocation.quantity,
            'cost_per_animal': cost_per_animal,
            'percentage_of_pen': (allocation.quantity / total_animals * 100) if total_animals > 0 else 0.0,
        })

    return {
        'total_animals': total_animals,
        'total_cost': total_cost,
        'average_cost_per_head': total_cost / total_animals if total_animals > 0 else 0.0,
        'average_weight': total_weight / total_animals if total_animals > 0 else 0.0,
        'lots': lots,
    }


def distribute_deaths(allocation_quantities, deaths):
    """
    Splits a death count across allocations in proportion to their size.

    Each share is rounded up, capped by the allocation's own quantity and by
    the deaths still left to assign, so the shares always add up to `deaths`
    when `deaths` does not exceed the total. Integer arithmetic keeps
    exact proportions (30 of 100 animals with 10 deaths is exactly 3).
    """
    total = sum(allocation_quantities)
    shares = []
    remaining = deaths

    for quantity in allocation_quantities:
        if remaining <= 0 or total <= 0:
            shares.append(0)
            continue
        proportional = -(-quantity * deaths // total)  # ceil without floats
        share = min(proportional, quantity, remaining)
        shares.append(share)
        remaining -= share

    return shares


def calculate_gmd(previous_weight, previous_date, new_weight, new_date):
    """
    Average daily gain between two readings, in kg/day.
    Returns None when the readings are not at least one day apart.
    """
    days_between = (new_date - previous_date).days
    if days_between <= 0:
        return None
    return (new_weight - previous_weight) / days_between


def project_weight(average_weight, gmd, weighing_date, slaughter_date):
    """
    Linear projection of the average weight at the estimated slaughter date.
    Returns None without a gain, without a slaughter date, or when the
    slaughter date is not after the weighing.
    """
    if not gmd or slaughter_date is None:
        return None
    days_to_slaughter = (slaughter_date - weighing_date).days
    if days_to_slaughter <= 0:
        return None
    return average_weight + gmd * days_to_slaughter


def get_or_404(model, object_id, label):
    """Loads a row by primary key or raises NotFoundError('<label> not found')."""
    instance = db.session.get(model, object_id) if object_id is not None else None
    if instance is None:
        raise NotFoundError(f'{label} not found')
    return instance


def positive_int(value, field_name):
    """Parses a strictly positive integer field from request data."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a whole number.")
    if number <= 0 or number != float(value):
        raise ValidationError(f"'{field_name}' must be a positive whole number.")
    return number


def optional_float(value, field_name):
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a number.")
