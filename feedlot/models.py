from datetime import date

from . import db

ACTIVE = 'ACTIVE'
REMOVED = 'REMOVED'


def _iso(value):
    """Formats an optional date for JSON output."""
    return value.isoformat() if value else None


class Cycle(db.Model):
    """A production cycle grouping the lots fed over the same period."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='ACTIVE')

    purchases = db.relationship('CattlePurchase', backref='cycle', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'status': self.status,
        }

    def __repr__(self):
        return f'<Cycle {self.name}>'


class CattlePurchase(db.Model):
    """
    Represents a lot: a batch of cattle acquired in a single purchase.
    Quantities only move downwards (deaths, sales); the acquisition and
    accumulated cost fields are never recalculated after a death.
    """
    __tablename__ = 'cattle_purchase'

    id = db.Column(db.Integer, primary_key=True)
    lot_code = db.Column(db.String(30), unique=True, nullable=False)
    purchase_date = db.Column(db.Date, nullable=False)
    initial_quantity = db.Column(db.Integer, nullable=False)
    current_quantity = db.Column(db.Integer, nullable=False)
    death_count = db.Column(db.Integer, nullable=False, default=0)

    # --- Costs ---
    unit_price = db.Column(db.Float, nullable=True)
    purchase_value = db.Column(db.Float, nullable=True)
    total_cost = db.Column(db.Float, nullable=True)  # Overrides the computed total when set
    freight_cost = db.Column(db.Float, nullable=True)
    commission = db.Column(db.Float, nullable=True)
    health_cost = db.Column(db.Float, nullable=True)
    feed_cost = db.Column(db.Float, nullable=True)

    # --- Weights ---
    average_weight = db.Column(db.Float, nullable=True)
    current_weight = db.Column(db.Float, nullable=True)
    estimated_slaughter_date = db.Column(db.Date, nullable=True)

    # --- Foreign Keys ---
    cycle_id = db.Column(db.Integer, db.ForeignKey('cycle.id'), nullable=True)

    # --- Relationships ---
    pen_links = db.relationship('LotPenLink', backref='purchase', lazy=True, order_by='LotPenLink.id')
    health_interventions = db.relationship('HealthIntervention', backref='purchase', lazy=True)
    weight_readings = db.relationship('WeightReading', backref='purchase', lazy=True)
    expenses = db.relationship('Expense', backref='purchase', lazy=True)

    @property
    def acquisition_cost(self):
        """
        Total cost of the lot: the stored total when present, otherwise the
        purchase price of every head plus the accumulated cost fields.
        """
        if self.total_cost is not None:
            return self.total_cost
        return ((self.unit_price or 0) * self.initial_quantity
                + (self.freight_cost or 0)
                + (self.commission or 0)
                + (self.health_cost or 0)
                + (self.feed_cost or 0))

    def to_dict(self):
        return {
            'id': self.id,
            'lot_code': self.lot_code,
            'purchase_date': _iso(self.purchase_date),
            'initial_quantity': self.initial_quantity,
            'current_quantity': self.current_quantity,
            'death_count': self.death_count,
            'unit_price': self.unit_price,
            'purchase_value': self.purchase_value,
            'total_cost': self.total_cost,
            'freight_cost': self.freight_cost,
            'commission': self.commission,
            'health_cost': self.health_cost,
            'feed_cost': self.feed_cost,
            'average_weight': self.average_weight,
            'current_weight': self.current_weight,
            'estimated_slaughter_date': _iso(self.estimated_slaughter_date),
            'cycle_id': self.cycle_id,
        }

    def __repr__(self):
        return f'<CattlePurchase {self.lot_code}>'


class Pen(db.Model):
    """A physical enclosure with a fixed capacity, shared by one or more lots."""
    id = db.Column(db.Integer, primary_key=True)
    pen_number = db.Column(db.String(20), unique=True, nullable=False)
    capacity = db.Column(db.Integer, nullable=False)
    location = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Ordered by id so allocations are always visited in placement order.
    allocations = db.relationship('LotPenLink', backref='pen', lazy=True, order_by='LotPenLink.id')

    def active_allocations(self):
        return [link for link in self.allocations if link.status == ACTIVE]

    @property
    def occupancy(self):
        return sum(link.quantity for link in self.active_allocations())

    def to_dict(self):
        return {
            'id': self.id,
            'pen_number': self.pen_number,
            'capacity': self.capacity,
            'location': self.location,
            'is_active': self.is_active,
        }

    def __repr__(self):
        return f'<Pen {self.pen_number}>'


class LotPenLink(db.Model):
    """
    Allocation of animals from one lot to one pen. The quantity can reach
    zero without the link being closed.
    """
    __tablename__ = 'lot_pen_link'

    id = db.Column(db.Integer, primary_key=True)
    quantity = db.Column(db.Integer, nullable=False)
    percentage_of_lot = db.Column(db.Float, nullable=True)
    percentage_of_pen = db.Column(db.Float, nullable=True)
    allocation_date = db.Column(db.Date, nullable=False, default=date.today)
    status = db.Column(db.String(20), nullable=False, default=ACTIVE)

    # --- Foreign Keys ---
    purchase_id = db.Column(db.Integer, db.ForeignKey('cattle_purchase.id'), nullable=False)
    pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'purchase_id': self.purchase_id,
            'lot_code': self.purchase.lot_code if self.purchase else None,
            'pen_id': self.pen_id,
            'quantity': self.quantity,
            'percentage_of_lot': self.percentage_of_lot,
            'percentage_of_pen': self.percentage_of_pen,
            'allocation_date': _iso(self.allocation_date),
            'status': self.status,
        }

    def __repr__(self):
        return f'<LotPenLink lot={self.purchase_id} pen={self.pen_id} qty={self.quantity}>'


class HealthIntervention(db.Model):
    """A vaccine, medication or treatment applied to animals of a lot in a pen."""
    id = db.Column(db.Integer, primary_key=True)
    intervention_type = db.Column(db.String(20), nullable=False)
    product_name = db.Column(db.String(100), nullable=False)
    dose = db.Column(db.Float, nullable=False)
    unit = db.Column(db.String(10), nullable=False, default='ml')
    application_date = db.Column(db.Date, nullable=False)
    veterinarian = db.Column(db.String(100), nullable=True)
    batch_number = db.Column(db.String(50), nullable=True)
    manufacturer = db.Column(db.String(100), nullable=True)
    expiration_date = db.Column(db.Date, nullable=True)
    cost = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # --- Foreign Keys ---
    purchase_id = db.Column(db.Integer, db.ForeignKey('cattle_purchase.id'), nullable=False)
    pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=False)

    pen = db.relationship('Pen')

    def to_dict(self):
        return {
            'id': self.id,
            'type': 'health',
            'intervention_type': self.intervention_type,
            'product_name': self.product_name,
            'dose': self.dose,
            'unit': self.unit,
            'application_date': _iso(self.application_date),
            'veterinarian': self.veterinarian,
            'batch_number': self.batch_number,
            'manufacturer': self.manufacturer,
            'expiration_date': _iso(self.expiration_date),
            'cost': self.cost,
            'notes': self.notes,
            'purchase_id': self.purchase_id,
            'lot_code': self.purchase.lot_code,
            'pen_id': self.pen_id,
            'pen_number': self.pen.pen_number,
        }

    def __repr__(self):
        return f'<HealthIntervention {self.product_name} for lot {self.purchase_id}>'


class MortalityRecord(db.Model):
    """
    The canonical record of a death event in a pen. When the deaths were
    spread over several lots, purchase_id is empty and the per-lot figures
    live in the MortalityAnalysis rows derived from it.
    """
    id = db.Column(db.Integer, primary_key=True)
    quantity = db.Column(db.Integer, nullable=False)
    death_date = db.Column(db.Date, nullable=False)
    cause = db.Column(db.String(20), nullable=False, default='unknown')
    specific_cause = db.Column(db.String(255), nullable=True)
    estimated_loss = db.Column(db.Float, nullable=False, default=0.0)
    notes = db.Column(db.Text, nullable=True)

    # --- Foreign Keys ---
    purchase_id = db.Column(db.Integer, db.ForeignKey('cattle_purchase.id'), nullable=True)
    pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=False)

    # --- Relationships ---
    purchase = db.relationship('CattlePurchase')
    pen = db.relationship('Pen')
    analyses = db.relationship('MortalityAnalysis', backref='record', lazy=True,
                               cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'type': 'mortality',
            'quantity': self.quantity,
            'death_date': _iso(self.death_date),
            'cause': self.cause,
            'specific_cause': self.specific_cause,
            'estimated_loss': round(self.estimated_loss, 2),
            'notes': self.notes,
            'purchase_id': self.purchase_id,
            'lot_code': self.purchase.lot_code if self.purchase else None,
            'pen_id': self.pen_id,
            'pen_number': self.pen.pen_number,
            'lots': [analysis.to_dict() for analysis in self.analyses],
        }

    def __repr__(self):
        return f'<MortalityRecord {self.quantity} head in pen {self.pen_id} on {self.death_date}>'


class MortalityAnalysis(db.Model):
    """Financial projection of a MortalityRecord for one affected lot."""
    __tablename__ = 'mortality_analyses'

    id = db.Column(db.Integer, primary_key=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Float, nullable=False)
    total_loss = db.Column(db.Float, nullable=False)
    average_weight = db.Column(db.Float, nullable=True)
    mortality_date = db.Column(db.Date, nullable=False)
    cause = db.Column(db.String(20), nullable=True)

    # --- Foreign Keys ---
    mortality_record_id = db.Column(db.Integer, db.ForeignKey('mortality_record.id'), nullable=False)
    purchase_id = db.Column(db.Integer, db.ForeignKey('cattle_purchase.id'), nullable=False)
    pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=False)

    purchase = db.relationship('CattlePurchase')

    def to_dict(self):
        return {
            'purchase_id': self.purchase_id,
            'lot_code': self.purchase.lot_code,
            'quantity': self.quantity,
            'unit_cost': round(self.unit_cost, 2),
            'total_loss': round(self.total_loss, 2),
            'average_weight': self.average_weight,
        }

    def __repr__(self):
        return f'<MortalityAnalysis lot={self.purchase_id} loss={self.total_loss:.2f}>'


class PenMovement(db.Model):
    """Transfer of animals of one lot between two pens."""
    id = db.Column(db.Integer, primary_key=True)
    quantity = db.Column(db.Integer, nullable=False)
    movement_date = db.Column(db.Date, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    responsible_user = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # --- Foreign Keys ---
    purchase_id = db.Column(db.Integer, db.ForeignKey('cattle_purchase.id'), nullable=False)
    from_pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=False)
    to_pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=False)

    purchase = db.relationship('CattlePurchase')
    from_pen = db.relationship('Pen', foreign_keys=[from_pen_id])
    to_pen = db.relationship('Pen', foreign_keys=[to_pen_id])

    def to_dict(self):
        return {
            'id': self.id,
            'type': 'movement',
            'quantity': self.quantity,
            'movement_date': _iso(self.movement_date),
            'reason': self.reason,
            'responsible_user': self.responsible_user,
            'notes': self.notes,
            'purchase_id': self.purchase_id,
            'lot_code': self.purchase.lot_code,
            'from_pen_id': self.from_pen_id,
            'from_pen_number': self.from_pen.pen_number,
            'to_pen_id': self.to_pen_id,
            'to_pen_number': self.to_pen.pen_number,
        }

    def __repr__(self):
        return f'<PenMovement {self.quantity} head {self.from_pen_id} -> {self.to_pen_id}>'


class WeightReading(db.Model):
    """An average-weight reading for the animals of a lot in a pen."""
    id = db.Column(db.Integer, primary_key=True)
    average_weight = db.Column(db.Float, nullable=False)
    total_weight = db.Column(db.Float, nullable=True)
    sample_size = db.Column(db.Integer, nullable=False)
    weighing_date = db.Column(db.Date, nullable=False)
    weighing_method = db.Column(db.String(20), nullable=True)  # individual, sample or estimated
    gmd = db.Column(db.Float, nullable=True)
    projected_weight = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # --- Foreign Keys ---
    purchase_id = db.Column(db.Integer, db.ForeignKey('cattle_purchase.id'), nullable=False)
    pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=False)

    pen = db.relationship('Pen')

    def to_dict(self):
        return {
            'id': self.id,
            'type': 'weight',
            'average_weight': self.average_weight,
            'total_weight': self.total_weight,
            'sample_size': self.sample_size,
            'weighing_date': _iso(self.weighing_date),
            'weighing_method': self.weighing_method,
            'gmd': round(self.gmd, 3) if self.gmd is not None else None,
            'projected_weight': round(self.projected_weight, 2) if self.projected_weight is not None else None,
            'notes': self.notes,
            'purchase_id': self.purchase_id,
            'lot_code': self.purchase.lot_code,
            'pen_id': self.pen_id,
            'pen_number': self.pen.pen_number,
        }

    def __repr__(self):
        return f'<WeightReading lot={self.purchase_id} {self.average_weight}kg on {self.weighing_date}>'


class Expense(db.Model):
    """
    A ledger entry. Entries with impacts_cash_flow=False are accounting-only
    (e.g. mortality losses) and are left out of cash-flow sums.
    """
    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(40), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    total_amount = db.Column(db.Float, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    payment_date = db.Column(db.Date, nullable=True)
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    impacts_cash_flow = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, nullable=True)

    # --- Foreign Keys ---
    purchase_id = db.Column(db.Integer, db.ForeignKey('cattle_purchase.id'), nullable=True)
    pen_id = db.Column(db.Integer, db.ForeignKey('pen.id'), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'category': self.category,
            'description': self.description,
            'total_amount': round(self.total_amount, 2),
            'due_date': _iso(self.due_date),
            'payment_date': _iso(self.payment_date),
            'is_paid': self.is_paid,
            'impacts_cash_flow': self.impacts_cash_flow,
            'notes': self.notes,
            'purchase_id': self.purchase_id,
            'pen_id': self.pen_id,
        }

    def __repr__(self):
        return f'<Expense {self.category} {self.total_amount:.2f}>'


class IntegratedFinancialAnalysis(db.Model):
    """
    Monthly financial rollup. One row per calendar month, keyed by the
    first day of the month, created lazily and then incremented in place.
    """
    __tablename__ = 'integrated_financial_analysis'

    id = db.Column(db.Integer, primary_key=True)
    reference_month = db.Column(db.Date, unique=True, nullable=False)
    reference_year = db.Column(db.Integer, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='DRAFT')

    total_revenue = db.Column(db.Float, nullable=False, default=0.0)
    total_expenses = db.Column(db.Float, nullable=False, default=0.0)
    operational_expenses = db.Column(db.Float, nullable=False, default=0.0)
    non_cash_items = db.Column(db.Float, nullable=False, default=0.0)
    mortality_losses = db.Column(db.Float, nullable=False, default=0.0)
    net_income = db.Column(db.Float, nullable=False, default=0.0)
    cash_receipts = db.Column(db.Float, nullable=False, default=0.0)
    cash_payments = db.Column(db.Float, nullable=False, default=0.0)
    net_cash_flow = db.Column(db.Float, nullable=False, default=0.0)
    reconciliation_difference = db.Column(db.Float, nullable=False, default=0.0)

    items = db.relationship('IntegratedAnalysisItem', backref='analysis', lazy=True,
                            order_by='IntegratedAnalysisItem.id')

    def to_dict(self, include_items=False):
        data = {
            'id': self.id,
            'reference_month': _iso(self.reference_month),
            'reference_year': self.reference_year,
            'status': self.status,
            'total_revenue': round(self.total_revenue, 2),
            'total_expenses': round(self.total_expenses, 2),
            'operational_expenses': round(self.operational_expenses, 2),
            'non_cash_items': round(self.non_cash_items, 2),
            'mortality_losses': round(self.mortality_losses, 2),
            'net_income': round(self.net_income, 2),
            'cash_receipts': round(self.cash_receipts, 2),
            'cash_payments': round(self.cash_payments, 2),
            'net_cash_flow': round(self.net_cash_flow, 2),
            'reconciliation_difference': round(self.reconciliation_difference, 2),
            'non_cash_breakdown': {
                'mortality': round(self.mortality_losses, 2),
                'other': round(self.non_cash_items - self.mortality_losses, 2),
            },
            'reconciliation': {
                'net_income': round(self.net_income, 2),
                'non_cash_adjustments': round(self.non_cash_items, 2),
                'net_cash_flow': round(self.net_cash_flow, 2),
                'difference': round(self.reconciliation_difference, 2),
            },
        }
        if include_items:
            data['items'] = [item.to_dict() for item in self.items]
        return data

    def __repr__(self):
        return f'<IntegratedFinancialAnalysis {self.reference_month}>'


class IntegratedAnalysisItem(db.Model):
    """Append-only line item explaining a change to a monthly analysis."""
    __tablename__ = 'integrated_analysis_item'

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(40), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    impacts_cash = db.Column(db.Boolean, nullable=False)
    reference_date = db.Column(db.Date, nullable=False)

    # --- Foreign Keys ---
    analysis_id = db.Column(db.Integer, db.ForeignKey('integrated_financial_analysis.id'), nullable=False)
    expense_id = db.Column(db.Integer, db.ForeignKey('expense.id'), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'category': self.category,
            'description': self.description,
            'amount': round(self.amount, 2),
            'impacts_cash': self.impacts_cash,
            'reference_date': _iso(self.reference_date),
            'expense_id': self.expense_id,
        }

    def __repr__(self):
        return f'<IntegratedAnalysisItem {self.category} {self.amount:.2f}>'
