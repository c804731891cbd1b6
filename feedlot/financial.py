"""
Expense ledger and the monthly integrated financial analysis.

Functions prefixed with `record_`/`apply_` only stage changes in the
current session; the caller owns the commit. `create_expense` and
`pay_expense` are complete units of work.
"""
from datetime import date
import logging

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError

from . import db
from .models import Expense, IntegratedFinancialAnalysis, IntegratedAnalysisItem
from .errors import NotFoundError, ValidationError
from .categories import (display_name, category_group, cash_flow_section, is_valid_category, normalize_category,
                         MORTALITY_CATEGORY, OPERATIONAL_GROUPS)
from .utils import first_of_month, parse_date, require_fields

logger = logging.getLogger(__name__)


def record_expense(category, description, total_amount, due_date, payment_date=None, is_paid=False,
                   impacts_cash_flow=True, purchase_id=None, pen_id=None, notes=None):
    """Validates and stages a new Expense. The category must be a catalogue code."""
    if not is_valid_category(category):
        raise ValidationError(f"Unknown expense category '{category}'.")
    if total_amount is None or total_amount < 0:
        raise ValidationError("The expense amount must be zero or positive.")

    expense = Expense(
        category=category,
        description=description,
        total_amount=total_amount,
        due_date=due_date,
        payment_date=payment_date,
        is_paid=is_paid,
        impacts_cash_flow=impacts_cash_flow,
        purchase_id=purchase_id,
        pen_id=pen_id,
        notes=notes,
    )
    db.session.add(expense)
    db.session.flush()
    return expense


def get_or_create_monthly_analysis(reference_date):
    """
    Returns the analysis of the month containing reference_date, creating
    an empty DRAFT analysis the first time the month is touched.
    """
    reference_month = first_of_month(reference_date)
    analysis = IntegratedFinancialAnalysis.query.filter_by(reference_month=reference_month).first()
    if analysis:
        return analysis

    try:
        # A concurrent request may create the same month first; the unique
        # key on reference_month turns that into an IntegrityError.
        with db.session.begin_nested():
            analysis = IntegratedFinancialAnalysis(
                reference_month=reference_month,
                reference_year=reference_month.year,
                status='DRAFT',
            )
            db.session.add(analysis)
        logger.info("Created integrated financial analysis for %s", reference_month.isoformat())
        return analysis
    except IntegrityError:
        return IntegratedFinancialAnalysis.query.filter_by(reference_month=reference_month).one()


def apply_expense_to_monthly_analysis(expense):
    """
    Folds a paid expense into its month's analysis and appends a line item.
    All aggregates are incremented in SQL so concurrent events do not
    overwrite each other.
    """
    reference_date = expense.payment_date or expense.due_date
    analysis = get_or_create_monthly_analysis(reference_date)
    amount = expense.total_amount
    model = IntegratedFinancialAnalysis

    changes = {
        'total_expenses': model.total_expenses + amount,
        'net_income': model.net_income - amount,
    }
    if category_group(expense.category) in OPERATIONAL_GROUPS:
        changes['operational_expenses'] = model.operational_expenses + amount

    if expense.impacts_cash_flow:
        changes['cash_payments'] = model.cash_payments + amount
        changes['net_cash_flow'] = model.net_cash_flow - amount
    else:
        # Non-cash items lower net income without touching cash, so they
        # widen the gap between the two.
        changes['non_cash_items'] = model.non_cash_items + amount
        changes['reconciliation_difference'] = model.reconciliation_difference - amount
        if expense.category == MORTALITY_CATEGORY:
            changes['mortality_losses'] = model.mortality_losses + amount

    db.session.execute(
        update(model)
        .where(model.id == analysis.id)
        .values(changes)
        .execution_options(synchronize_session=False)
    )

    db.session.add(IntegratedAnalysisItem(
        analysis_id=analysis.id,
        expense_id=expense.id,
        category=expense.category,
        description=expense.description,
        amount=-amount,
        impacts_cash=expense.impacts_cash_flow,
        reference_date=reference_date,
    ))
    db.session.flush()
    db.session.expire(analysis)

    logger.info("Applied %s expense of %.2f to analysis %s",
                expense.category, amount, analysis.reference_month.isoformat())
    return analysis


def create_expense(data):
    """Creates an expense from request data and folds it into the analysis when paid."""
    require_fields(data, ['category', 'description', 'total_amount', 'due_date'])

    category = normalize_category(data['category'])
    if category is None:
        raise ValidationError(f"Unknown expense category '{data['category']}'.")

    try:
        total_amount = float(data['total_amount'])
    except (TypeError, ValueError):
        raise ValidationError("'total_amount' must be a number.")

    is_paid = bool(data.get('is_paid', False))
    due_date = parse_date(data['due_date'], 'due_date')
    payment_date = parse_date(data.get('payment_date'), 'payment_date', required=False)
    if is_paid and payment_date is None:
        payment_date = due_date

    try:
        expense = record_expense(
            category=category,
            description=data['description'],
            total_amount=total_amount,
            due_date=due_date,
            payment_date=payment_date,
            is_paid=is_paid,
            impacts_cash_flow=bool(data.get('impacts_cash_flow', True)),
            purchase_id=data.get('purchase_id'),
            pen_id=data.get('pen_id'),
            notes=data.get('notes'),
        )
        if expense.is_paid:
            apply_expense_to_monthly_analysis(expense)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to create expense")
        raise

    return expense


def pay_expense(expense_id, payment_date=None):
    """Marks an open expense as paid and folds it into the month it was paid in."""
    expense = db.session.get(Expense, expense_id)
    if expense is None:
        raise NotFoundError('Expense not found')
    if expense.is_paid:
        raise ValidationError('This expense has already been paid.')

    try:
        expense.is_paid = True
        expense.payment_date = payment_date or date.today()
        db.session.flush()
        apply_expense_to_monthly_analysis(expense)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to pay expense %s", expense_id)
        raise

    return expense


def list_expenses(filters):
    query = Expense.query

    if filters.get('category'):
        query = query.filter(Expense.category == filters['category'])
    if filters.get('impacts_cash_flow') is not None:
        query = query.filter(Expense.impacts_cash_flow == filters['impacts_cash_flow'])
    if filters.get('is_paid') is not None:
        query = query.filter(Expense.is_paid == filters['is_paid'])
    if filters.get('purchase_id'):
        query = query.filter(Expense.purchase_id == filters['purchase_id'])
    if filters.get('start_date'):
        query = query.filter(Expense.due_date >= filters['start_date'])
    if filters.get('end_date'):
        query = query.filter(Expense.due_date <= filters['end_date'])
    if filters.get('search'):
        pattern = f"%{filters['search']}%"
        query = query.filter(or_(Expense.description.ilike(pattern), Expense.notes.ilike(pattern)))

    return query.order_by(Expense.due_date.desc(), Expense.id.desc()).all()


def cash_flow_summary(start_date, end_date):
    """
    Paid expenses in the period, grouped by category. Only cash-impacting
    entries count towards the cash outflow; accounting-only entries are
    reported apart.
    """
    expenses = Expense.query.filter(
        Expense.is_paid.is_(True),
        Expense.payment_date >= start_date,
        Expense.payment_date <= end_date,
    ).all()

    by_category = {}
    cash_outflow = 0.0
    non_cash_total = 0.0
    for expense in expenses:
        if not expense.impacts_cash_flow:
            non_cash_total += expense.total_amount
            continue
        cash_outflow += expense.total_amount
        entry = by_category.setdefault(expense.category, {
            'category': expense.category,
            'name': display_name(expense.category),
            'section': cash_flow_section(expense.category),
            'total': 0.0,
            'count': 0,
        })
        entry['total'] += expense.total_amount
        entry['count'] += 1

    return {
        'start_date': start_date.isoformat(),
        'end_date': end_date.isoformat(),
        'cash_outflow': round(cash_outflow, 2),
        'non_cash_total': round(non_cash_total, 2),
        'categories': sorted(by_category.values(), key=lambda c: c['total'], reverse=True),
    }


def get_analysis_by_month(reference_date):
    reference_month = first_of_month(reference_date)
    analysis = IntegratedFinancialAnalysis.query.filter_by(reference_month=reference_month).first()
    if analysis is None:
        raise NotFoundError(f"No financial analysis for {reference_month.strftime('%Y-%m')}")
    return analysis


def list_analyses_by_year(year):
    return IntegratedFinancialAnalysis.query.filter_by(reference_year=year) \
        .order_by(IntegratedFinancialAnalysis.reference_month.asc()).all()
