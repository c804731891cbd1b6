"""Lots, pens and the allocation of lots to pens."""
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from . import db
from .models import Cycle, CattlePurchase, Pen, LotPenLink, MortalityAnalysis, ACTIVE
from .errors import ConflictError, InsufficientCapacityError, InsufficientQuantityError, ValidationError
from .utils import get_or_404, optional_float, parse_date, positive_int, require_fields

logger = logging.getLogger(__name__)


def create_cycle(data):
    require_fields(data, ['name', 'start_date'])
    cycle = Cycle(
        name=data['name'].strip(),
        start_date=parse_date(data['start_date'], 'start_date'),
        end_date=parse_date(data.get('end_date'), 'end_date', required=False),
        status=data.get('status') or 'ACTIVE',
    )
    try:
        db.session.add(cycle)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"A cycle named '{cycle.name}' already exists.")
    return cycle


def create_lot(data):
    """
    Registers a purchased lot. The current quantity starts at the initial
    quantity; the purchase value defaults to unit price times head count.
    """
    require_fields(data, ['lot_code', 'purchase_date', 'initial_quantity'])
    initial_quantity = positive_int(data['initial_quantity'], 'initial_quantity')
    unit_price = optional_float(data.get('unit_price'), 'unit_price')
    purchase_value = optional_float(data.get('purchase_value'), 'purchase_value')
    if purchase_value is None and unit_price is not None:
        purchase_value = unit_price * initial_quantity

    if data.get('cycle_id') is not None:
        get_or_404(Cycle, data['cycle_id'], 'Cycle')

    average_weight = optional_float(data.get('average_weight'), 'average_weight')
    lot = CattlePurchase(
        lot_code=str(data['lot_code']).strip(),
        purchase_date=parse_date(data['purchase_date'], 'purchase_date'),
        initial_quantity=initial_quantity,
        current_quantity=initial_quantity,
        death_count=0,
        unit_price=unit_price,
        purchase_value=purchase_value,
        total_cost=optional_float(data.get('total_cost'), 'total_cost'),
        freight_cost=optional_float(data.get('freight_cost'), 'freight_cost'),
        commission=optional_float(data.get('commission'), 'commission'),
        health_cost=optional_float(data.get('health_cost'), 'health_cost'),
        feed_cost=optional_float(data.get('feed_cost'), 'feed_cost'),
        average_weight=average_weight,
        current_weight=average_weight * initial_quantity if average_weight else None,
        estimated_slaughter_date=parse_date(data.get('estimated_slaughter_date'), 'estimated_slaughter_date',
                                            required=False),
        cycle_id=data.get('cycle_id'),
    )
    try:
        db.session.add(lot)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"A lot with code '{lot.lot_code}' already exists.")

    logger.info("Registered lot %s with %d head", lot.lot_code, lot.initial_quantity)
    return lot


def create_pen(data):
    require_fields(data, ['pen_number', 'capacity'])
    pen = Pen(
        pen_number=str(data['pen_number']).strip(),
        capacity=positive_int(data['capacity'], 'capacity'),
        location=data.get('location'),
        is_active=bool(data.get('is_active', True)),
    )
    try:
        db.session.add(pen)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"A pen numbered '{pen.pen_number}' already exists.")
    return pen


def find_active_link(purchase_id, pen_id):
    return LotPenLink.query.filter_by(purchase_id=purchase_id, pen_id=pen_id, status=ACTIVE) \
        .order_by(LotPenLink.id).first()


def allocate_lot_to_pen(data):
    """
    Places animals of a lot into a pen. The pen must have room for them and
    the lot must still have that many animals not yet placed in any pen.
    """
    require_fields(data, ['purchase_id', 'pen_id', 'quantity'])
    quantity = positive_int(data['quantity'], 'quantity')
    purchase = get_or_404(CattlePurchase, data['purchase_id'], 'Lot')
    pen = get_or_404(Pen, data['pen_id'], 'Pen')
    allocation_date = parse_date(data.get('allocation_date'), 'allocation_date', required=False) \
        or purchase.purchase_date

    already_allocated = sum(link.quantity for link in purchase.pen_links if link.status == ACTIVE)
    if purchase.current_quantity - already_allocated < quantity:
        raise InsufficientQuantityError(
            f"Lot {purchase.lot_code} has only {purchase.current_quantity - already_allocated} unallocated animals.")

    available = pen.capacity - pen.occupancy
    if available < quantity:
        raise InsufficientCapacityError(f"Pen {pen.pen_number} has room for only {available} animals.")

    link = find_active_link(purchase.id, pen.id)
    try:
        if link:
            link.quantity += quantity
        else:
            link = LotPenLink(
                purchase_id=purchase.id,
                pen_id=pen.id,
                quantity=quantity,
                percentage_of_lot=quantity / purchase.current_quantity * 100,
                percentage_of_pen=quantity / pen.capacity * 100,
                allocation_date=allocation_date,
                status=ACTIVE,
            )
            db.session.add(link)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to allocate lot %s to pen %s", purchase.lot_code, pen.pen_number)
        raise

    return link


def get_pen_occupancy(pen_id):
    pen = get_or_404(Pen, pen_id, 'Pen')
    allocations = pen.active_allocations()
    occupancy = sum(link.quantity for link in allocations)
    return {
        'pen': pen.to_dict(),
        'capacity': pen.capacity,
        'occupancy': occupancy,
        'available_space': pen.capacity - occupancy,
        'occupancy_rate': round(occupancy / pen.capacity * 100, 2) if pen.capacity else 0.0,
        'allocations': [link.to_dict() for link in allocations],
    }


def get_mortality_summary(cycle_id=None):
    """
    Death count, mortality rate and booked loss per lot, for every lot that
    has lost at least one animal.
    """
    query = CattlePurchase.query.filter(CattlePurchase.death_count > 0)
    if cycle_id is not None:
        query = query.filter(CattlePurchase.cycle_id == cycle_id)
    lots = query.order_by(CattlePurchase.lot_code).all()

    losses = dict(
        db.session.query(MortalityAnalysis.purchase_id, func.sum(MortalityAnalysis.total_loss))
        .group_by(MortalityAnalysis.purchase_id)
        .all()
    )

    records = []
    for lot in lots:
        records.append({
            'purchase_id': lot.id,
            'lot_code': lot.lot_code,
            'death_count': lot.death_count,
            'initial_quantity': lot.initial_quantity,
            'mortality_rate': round(lot.death_count / lot.initial_quantity * 100, 2) if lot.initial_quantity else 0.0,
            'estimated_loss': round(losses.get(lot.id) or 0.0, 2),
            'pens': sorted({link.pen.pen_number for link in lot.pen_links}),
        })

    total_deaths = sum(r['death_count'] for r in records)
    total_animals = sum(r['initial_quantity'] for r in records)
    return {
        'records': records,
        'summary': {
            'total_deaths': total_deaths,
            'total_animals': total_animals,
            'mortality_rate': round(total_deaths / total_animals * 100, 2) if total_animals else 0.0,
            'estimated_total_loss': round(sum(r['estimated_loss'] for r in records), 2),
        },
    }


def validate_pen_and_lot(purchase_id, pen_id):
    """Loads the lot and the pen an intervention refers to, 404 if either is missing."""
    if purchase_id is None or pen_id is None:
        raise ValidationError("Missing required fields: purchase_id, pen_id")
    return get_or_404(CattlePurchase, purchase_id, 'Lot'), get_or_404(Pen, pen_id, 'Pen')
