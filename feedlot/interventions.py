"""
Herd interventions: health events, mortality, pen movements and weight
readings, plus the history and statistics read across all four.

Every write operation is a single unit of work: preconditions are checked
before anything is staged, shared counters are changed with guarded SQL
updates, and the session is committed once at the end or rolled back.
"""
from datetime import date
import logging

from sqlalchemy import update, func, or_

from . import db
from .models import (CattlePurchase, Pen, LotPenLink, HealthIntervention, MortalityRecord, MortalityAnalysis,
                     PenMovement, WeightReading, ACTIVE)
from .errors import (InvalidQuantityError, InsufficientQuantityError, InsufficientCapacityError,
                     ValidationError)
from .financial import record_expense, apply_expense_to_monthly_analysis
from .categories import MORTALITY_CATEGORY
from .herd import find_active_link, validate_pen_and_lot
from .utils import (weighted_cost, distribute_deaths, calculate_gmd, project_weight, get_or_404, parse_date,
                    positive_int, optional_float, require_fields)

logger = logging.getLogger(__name__)

HEALTH_INTERVENTION_TYPES = ('vaccine', 'medication', 'treatment')
MORTALITY_CAUSES = ('disease', 'accident', 'predator', 'poisoning', 'unknown', 'other')
WEIGHING_METHODS = ('individual', 'sample', 'estimated')
HISTORY_TYPES = ('health', 'mortality', 'movement', 'weight')


# --- Guarded counter updates ---

def _decrement_allocation(link, quantity):
    """Takes animals out of an allocation, refusing to go below zero."""
    result = db.session.execute(
        update(LotPenLink)
        .where(LotPenLink.id == link.id, LotPenLink.quantity >= quantity)
        .values(quantity=LotPenLink.quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientQuantityError(
            f"Allocation of lot {link.purchase.lot_code} in pen {link.pen.pen_number} holds fewer than {quantity} animals.")
    db.session.expire(link)


def _increment_allocation(link, quantity):
    db.session.execute(
        update(LotPenLink)
        .where(LotPenLink.id == link.id)
        .values(quantity=LotPenLink.quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(link)


def _record_lot_deaths(purchase, quantity):
    """Lowers the live count of a lot and raises its death count."""
    result = db.session.execute(
        update(CattlePurchase)
        .where(CattlePurchase.id == purchase.id, CattlePurchase.current_quantity >= quantity)
        .values(current_quantity=CattlePurchase.current_quantity - quantity,
                death_count=CattlePurchase.death_count + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientQuantityError(f"Lot {purchase.lot_code} has fewer than {quantity} live animals.")
    db.session.expire(purchase)


# --- Weighted cost and mortality ---

def calculate_pen_weighted_cost(pen_id):
    """Average cost and weight per head across every lot with animals in the pen."""
    pen = get_or_404(Pen, pen_id, 'Pen')
    calculation = weighted_cost(pen.active_allocations())
    calculation['pen_id'] = pen.id
    calculation['pen_number'] = pen.pen_number
    return calculation


def preview_mortality_loss(pen_id, quantity):
    """
    Estimates the loss of `quantity` deaths in a pen without writing
    anything. The loss is split between lots by their share of the pen.
    """
    quantity = positive_int(quantity, 'quantity')
    calculation = calculate_pen_weighted_cost(pen_id)
    if quantity > calculation['total_animals']:
        raise InvalidQuantityError('Death quantity exceeds the number of animals in the pen')

    total_loss = calculation['average_cost_per_head'] * quantity
    lots_affected = [
        {
            'purchase_id': lot['purchase_id'],
            'lot_code': lot['lot_code'],
            'percentage': round(lot['percentage_of_pen'], 2),
            'value': round(lot['percentage_of_pen'] / 100 * total_loss, 2),
        }
        for lot in calculation['lots']
    ]
    details = "\n".join([
        f"Pen: {calculation['pen_number']}",
        f"Animals in pen: {calculation['total_animals']}",
        f"Total value in pen: {calculation['total_cost']:.2f}",
        f"Average cost per head: {calculation['average_cost_per_head']:.2f}",
        f"Deaths: {quantity}",
        f"Total loss: {total_loss:.2f}",
        f"Lots affected: {', '.join(lot['lot_code'] for lot in lots_affected)}",
    ])
    return {
        'pen_id': calculation['pen_id'],
        'quantity': quantity,
        'total_animals': calculation['total_animals'],
        'average_cost_per_head': round(calculation['average_cost_per_head'], 2),
        'average_weight': round(calculation['average_weight'], 2),
        'total_loss': round(total_loss, 2),
        'lots_affected': lots_affected,
        'calculation_details': details,
    }


def _integrate_mortality_loss(expense):
    """
    Folds the mortality expense into the monthly analysis inside a
    savepoint. A failure here is logged and rolled back on its own; it does
    not undo the mortality itself.
    """
    try:
        with db.session.begin_nested():
            apply_expense_to_monthly_analysis(expense)
        return True
    except Exception:
        logger.error("Could not integrate mortality loss %.2f into the monthly analysis",
                     expense.total_amount, exc_info=True)
        return False


def register_mortality(data):
    """
    Records deaths in a pen and books their financial loss.

    The loss is the pen's weighted average cost per head times the number of
    deaths. With a purchase_id the deaths are charged to that lot only;
    otherwise they are spread over the pen's lots in proportion to how many
    animals each has there. Lot averages are left untouched.

    Writes the canonical MortalityRecord, one MortalityAnalysis per affected
    lot, a non-cash 'deaths' Expense, and updates the month's integrated
    analysis unless integrate_financial is false.
    """
    require_fields(data, ['pen_id', 'quantity'])
    quantity = positive_int(data['quantity'], 'quantity')
    death_date = parse_date(data.get('death_date'), 'death_date', required=False) or date.today()
    cause = data.get('cause') or 'unknown'
    if cause not in MORTALITY_CAUSES:
        raise ValidationError(f"Invalid cause '{cause}'. Use one of: {', '.join(MORTALITY_CAUSES)}")

    pen = get_or_404(Pen, data['pen_id'], 'Pen')
    purchase = None
    if data.get('purchase_id') is not None:
        purchase = get_or_404(CattlePurchase, data['purchase_id'], 'Lot')

    allocations = pen.active_allocations()
    calculation = weighted_cost(allocations)
    if quantity > calculation['total_animals']:
        raise InvalidQuantityError('Death quantity exceeds the number of animals in the pen')

    if purchase is not None:
        link = next((a for a in allocations if a.purchase_id == purchase.id), None)
        if link is None:
            raise InsufficientQuantityError(f"Lot {purchase.lot_code} has no animals in pen {pen.pen_number}.")
        distribution = [(link, quantity)]
    else:
        shares = distribute_deaths([a.quantity for a in allocations], quantity)
        distribution = [(link, share) for link, share in zip(allocations, shares) if share > 0]

    unit_cost = calculation['average_cost_per_head']
    total_loss = unit_cost * quantity

    try:
        record = MortalityRecord(
            purchase_id=purchase.id if purchase else None,
            pen_id=pen.id,
            quantity=quantity,
            death_date=death_date,
            cause=cause,
            specific_cause=data.get('specific_cause'),
            estimated_loss=total_loss,
            notes=data.get('notes'),
        )
        db.session.add(record)
        db.session.flush()

        for link, deaths in distribution:
            lot = link.purchase
            _decrement_allocation(link, deaths)
            _record_lot_deaths(lot, deaths)
            db.session.add(MortalityAnalysis(
                mortality_record_id=record.id,
                purchase_id=lot.id,
                pen_id=pen.id,
                quantity=deaths,
                unit_cost=unit_cost,
                total_loss=unit_cost * deaths,
                average_weight=calculation['average_weight'],
                mortality_date=death_date,
                cause=cause,
            ))

        expense = record_expense(
            category=MORTALITY_CATEGORY,
            description=f"Mortality - {quantity} head - pen {pen.pen_number} - {cause}",
            total_amount=total_loss,
            due_date=death_date,
            payment_date=death_date,
            is_paid=True,
            impacts_cash_flow=False,
            purchase_id=purchase.id if purchase else None,
            pen_id=pen.id,
            notes=data.get('notes'),
        )

        integrated = False
        if data.get('integrate_financial', True):
            integrated = _integrate_mortality_loss(expense)

        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to register mortality in pen %s", pen.pen_number)
        raise

    logger.info("Registered %d deaths in pen %s, loss %.2f", quantity, pen.pen_number, total_loss)
    return {
        'mortality': record.to_dict(),
        'expense': expense.to_dict(),
        'calculation': {
            'total_animals': calculation['total_animals'],
            'average_cost_per_head': round(unit_cost, 2),
            'average_weight': round(calculation['average_weight'], 2),
            'total_loss': round(total_loss, 2),
        },
        'distribution': [
            {'purchase_id': link.purchase_id, 'lot_code': link.purchase.lot_code, 'deaths': deaths}
            for link, deaths in distribution
        ],
        'integrated': integrated,
    }


# --- Movements ---

def create_pen_movement(data):
    """
    Moves animals of a lot from one pen to another. Checks the source
    allocation and the destination's free space first; all writes then go
    through in one transaction.
    """
    require_fields(data, ['purchase_id', 'from_pen_id', 'to_pen_id', 'quantity', 'movement_date', 'reason'])
    quantity = positive_int(data['quantity'], 'quantity')
    movement_date = parse_date(data['movement_date'], 'movement_date')

    purchase = get_or_404(CattlePurchase, data['purchase_id'], 'Lot')
    from_pen = get_or_404(Pen, data['from_pen_id'], 'Source pen')
    to_pen = get_or_404(Pen, data['to_pen_id'], 'Destination pen')
    if from_pen.id == to_pen.id:
        raise ValidationError('Source and destination pens must be different.')

    from_link = find_active_link(purchase.id, from_pen.id)
    if from_link is None or from_link.quantity < quantity:
        raise InsufficientQuantityError('Insufficient quantity in the source pen')

    available_space = to_pen.capacity - to_pen.occupancy
    if available_space < quantity:
        raise InsufficientCapacityError('Insufficient capacity in the destination pen')

    try:
        movement = PenMovement(
            purchase_id=purchase.id,
            from_pen_id=from_pen.id,
            to_pen_id=to_pen.id,
            quantity=quantity,
            movement_date=movement_date,
            reason=data['reason'],
            responsible_user=data.get('responsible_user'),
            notes=data.get('notes'),
        )
        db.session.add(movement)

        _decrement_allocation(from_link, quantity)

        to_link = find_active_link(purchase.id, to_pen.id)
        if to_link:
            _increment_allocation(to_link, quantity)
        else:
            db.session.add(LotPenLink(
                purchase_id=purchase.id,
                pen_id=to_pen.id,
                quantity=quantity,
                percentage_of_lot=quantity / purchase.current_quantity * 100 if purchase.current_quantity else 0.0,
                percentage_of_pen=quantity / to_pen.capacity * 100,
                allocation_date=movement_date,
                status=ACTIVE,
            ))

        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to move lot %s from pen %s to pen %s",
                         purchase.lot_code, from_pen.pen_number, to_pen.pen_number)
        raise

    logger.info("Moved %d head of lot %s from pen %s to pen %s",
                quantity, purchase.lot_code, from_pen.pen_number, to_pen.pen_number)
    return movement


# --- Weight readings ---

def create_weight_reading(data):
    """
    Stores a weight reading and makes it the lot's current weight.

    The daily gain (gmd) is measured against the latest earlier reading of
    the same lot in the same pen, and projected to the lot's estimated
    slaughter date when there is one ahead.
    """
    require_fields(data, ['purchase_id', 'pen_id', 'average_weight', 'sample_size', 'weighing_date'])
    purchase, pen = validate_pen_and_lot(data['purchase_id'], data['pen_id'])
    average_weight = optional_float(data['average_weight'], 'average_weight')
    if average_weight <= 0:
        raise ValidationError("'average_weight' must be positive.")
    total_weight = optional_float(data.get('total_weight'), 'total_weight')
    sample_size = positive_int(data['sample_size'], 'sample_size')
    weighing_date = parse_date(data['weighing_date'], 'weighing_date')
    weighing_method = data.get('weighing_method')
    if weighing_method is not None and weighing_method not in WEIGHING_METHODS:
        raise ValidationError(f"Invalid weighing method '{weighing_method}'.")

    last_reading = WeightReading.query.filter_by(purchase_id=purchase.id, pen_id=pen.id) \
        .order_by(WeightReading.weighing_date.desc(), WeightReading.id.desc()).first()

    gmd = None
    if last_reading:
        gmd = calculate_gmd(last_reading.average_weight, last_reading.weighing_date,
                            average_weight, weighing_date)
    projected_weight = project_weight(average_weight, gmd, weighing_date, purchase.estimated_slaughter_date)

    try:
        reading = WeightReading(
            purchase_id=purchase.id,
            pen_id=pen.id,
            average_weight=average_weight,
            total_weight=total_weight,
            sample_size=sample_size,
            weighing_date=weighing_date,
            weighing_method=weighing_method,
            gmd=gmd,
            projected_weight=projected_weight,
            notes=data.get('notes'),
        )
        db.session.add(reading)

        purchase.average_weight = average_weight
        purchase.current_weight = total_weight or average_weight * purchase.current_quantity
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to record weight reading for lot %s", purchase.lot_code)
        raise

    return reading


# --- Health ---

def create_health_intervention(data):
    """Records a health intervention and charges its cost to the lot."""
    require_fields(data, ['purchase_id', 'pen_id', 'intervention_type', 'product_name', 'dose',
                          'application_date'])
    purchase, pen = validate_pen_and_lot(data['purchase_id'], data['pen_id'])
    if data['intervention_type'] not in HEALTH_INTERVENTION_TYPES:
        raise ValidationError(f"Invalid intervention type '{data['intervention_type']}'.")
    cost = optional_float(data.get('cost'), 'cost')
    if cost is not None and cost < 0:
        raise ValidationError("'cost' must be zero or positive.")

    try:
        intervention = HealthIntervention(
            purchase_id=purchase.id,
            pen_id=pen.id,
            intervention_type=data['intervention_type'],
            product_name=data['product_name'],
            dose=optional_float(data['dose'], 'dose'),
            unit=data.get('unit') or 'ml',
            application_date=parse_date(data['application_date'], 'application_date'),
            veterinarian=data.get('veterinarian'),
            batch_number=data.get('batch_number'),
            manufacturer=data.get('manufacturer'),
            expiration_date=parse_date(data.get('expiration_date'), 'expiration_date', required=False),
            cost=cost,
            notes=data.get('notes'),
        )
        db.session.add(intervention)

        if cost:
            # total_cost stays NULL for lots whose total is derived from its parts.
            db.session.execute(
                update(CattlePurchase)
                .where(CattlePurchase.id == purchase.id)
                .values(health_cost=func.coalesce(CattlePurchase.health_cost, 0) + cost,
                        total_cost=CattlePurchase.total_cost + cost)
                .execution_options(synchronize_session=False)
            )
            db.session.expire(purchase)

        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to record health intervention for lot %s", purchase.lot_code)
        raise

    return intervention


# --- History and statistics ---

def _date_range(query, column, start_date, end_date):
    if start_date and end_date:
        query = query.filter(column >= start_date, column <= end_date)
    return query


def get_intervention_history(filters):
    """
    All interventions matching the filters, newest first. Each kind is
    queried on its own and tagged with its `type`; the date range only
    applies when both ends are given.
    """
    kind = filters.get('type')
    if kind is not None and kind not in HISTORY_TYPES:
        raise ValidationError(f"Invalid intervention type '{kind}'.")
    purchase_id = filters.get('purchase_id')
    pen_id = filters.get('pen_id')
    start_date = filters.get('start_date')
    end_date = filters.get('end_date')

    results = []

    if kind in (None, 'health'):
        query = HealthIntervention.query
        if purchase_id:
            query = query.filter(HealthIntervention.purchase_id == purchase_id)
        if pen_id:
            query = query.filter(HealthIntervention.pen_id == pen_id)
        query = _date_range(query, HealthIntervention.application_date, start_date, end_date)
        results.extend(query.order_by(HealthIntervention.application_date.desc()).all())

    if kind in (None, 'mortality'):
        query = MortalityRecord.query
        if purchase_id:
            # Records spread over several lots are found through their projections.
            query = query.filter(or_(
                MortalityRecord.purchase_id == purchase_id,
                MortalityRecord.analyses.any(MortalityAnalysis.purchase_id == purchase_id),
            ))
        if pen_id:
            query = query.filter(MortalityRecord.pen_id == pen_id)
        query = _date_range(query, MortalityRecord.death_date, start_date, end_date)
        results.extend(query.order_by(MortalityRecord.death_date.desc()).all())

    if kind in (None, 'movement'):
        query = PenMovement.query
        if purchase_id:
            query = query.filter(PenMovement.purchase_id == purchase_id)
        if pen_id:
            query = query.filter(or_(PenMovement.from_pen_id == pen_id, PenMovement.to_pen_id == pen_id))
        query = _date_range(query, PenMovement.movement_date, start_date, end_date)
        results.extend(query.order_by(PenMovement.movement_date.desc()).all())

    if kind in (None, 'weight'):
        query = WeightReading.query
        if purchase_id:
            query = query.filter(WeightReading.purchase_id == purchase_id)
        if pen_id:
            query = query.filter(WeightReading.pen_id == pen_id)
        query = _date_range(query, WeightReading.weighing_date, start_date, end_date)
        results.extend(query.order_by(WeightReading.weighing_date.desc()).all())

    entries = [item.to_dict() for item in results]
    entries.sort(
        key=lambda e: e.get('application_date') or e.get('death_date')
        or e.get('movement_date') or e.get('weighing_date'),
        reverse=True,
    )
    return entries


def _empty_statistics():
    return {
        'health_interventions': 0,
        'mortality_records': {'total': 0, 'total_deaths': 0, 'total_loss': 0.0},
        'pen_movements': 0,
        'weight_readings': 0,
        'average_gmd': 0.0,
    }


def _collect_statistics(cycle_id):
    def scoped(query, purchase_column):
        if cycle_id is None:
            return query
        return query.join(CattlePurchase, purchase_column == CattlePurchase.id) \
            .filter(CattlePurchase.cycle_id == cycle_id)

    health_count = scoped(db.session.query(func.count(HealthIntervention.id)),
                          HealthIntervention.purchase_id).scalar()

    mortality_count, total_deaths, total_loss = scoped(
        db.session.query(
            func.count(func.distinct(MortalityAnalysis.mortality_record_id)),
            func.sum(MortalityAnalysis.quantity),
            func.sum(MortalityAnalysis.total_loss),
        ),
        MortalityAnalysis.purchase_id,
    ).one()

    movement_count = scoped(db.session.query(func.count(PenMovement.id)), PenMovement.purchase_id).scalar()
    weight_count = scoped(db.session.query(func.count(WeightReading.id)), WeightReading.purchase_id).scalar()

    recent_gmds = [
        row[0] for row in scoped(db.session.query(WeightReading.gmd), WeightReading.purchase_id)
        .filter(WeightReading.gmd.isnot(None))
        .order_by(WeightReading.weighing_date.desc())
        .limit(100)
        .all()
    ]
    average_gmd = sum(recent_gmds) / len(recent_gmds) if recent_gmds else 0.0

    return {
        'health_interventions': health_count or 0,
        'mortality_records': {
            'total': mortality_count or 0,
            'total_deaths': int(total_deaths or 0),
            'total_loss': round(total_loss or 0.0, 2),
        },
        'pen_movements': movement_count or 0,
        'weight_readings': weight_count or 0,
        'average_gmd': round(average_gmd, 3),
    }


def get_intervention_statistics(cycle_id=None):
    """
    Dashboard counters. A failed query does not raise: the caller gets the
    zeroed summary flagged with `degraded` and the error text, so an outage
    is distinguishable from an empty herd.

    The reads run in a savepoint; a failure rolls back only that savepoint,
    never work the caller has pending in the session.
    """
    try:
        with db.session.begin_nested():
            statistics = _collect_statistics(cycle_id)
        statistics['degraded'] = False
        return statistics
    except Exception as e:
        logger.error("Failed to collect intervention statistics", exc_info=True)
        statistics = _empty_statistics()
        statistics['degraded'] = True
        statistics['error'] = str(e)
        return statistics
