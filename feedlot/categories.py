"""
Expense category catalogue.

This is the only place category codes and their display names are defined;
the expense ledger, the monthly analysis and the API all read from here.
"""
import unicodedata

OPERATIONAL = 'OPERATIONAL'
FINANCING = 'FINANCING'
INVESTING = 'INVESTING'

# code: (display name, cash-flow section, DRE group)
EXPENSE_CATEGORIES = {
    # Acquisition
    'animal_purchase': ('Animal purchase', OPERATIONAL, 'acquisition'),
    'commission': ('Commission', OPERATIONAL, 'acquisition'),
    'freight': ('Freight', OPERATIONAL, 'acquisition'),
    'acquisition_other': ('Other acquisition costs', OPERATIONAL, 'acquisition'),
    # Production
    'feed': ('Feed', OPERATIONAL, 'operational'),
    'health_costs': ('Animal health', OPERATIONAL, 'operational'),
    'operational_costs': ('Operational costs', OPERATIONAL, 'operational'),
    'deaths': ('Deaths', OPERATIONAL, 'operational'),
    'weight_loss': ('Weight loss', OPERATIONAL, 'operational'),
    # Administrative
    'general_admin': ('General administrative', OPERATIONAL, 'administrative'),
    'marketing': ('Marketing', OPERATIONAL, 'administrative'),
    'personnel': ('Personnel', OPERATIONAL, 'administrative'),
    'admin_other': ('Other administrative', OPERATIONAL, 'administrative'),
    # Financial
    'interest': ('Interest', FINANCING, 'financial'),
    'fees': ('Fees', FINANCING, 'financial'),
    'financial_management': ('Financial management', FINANCING, 'financial'),
    'financial_other': ('Other financial', FINANCING, 'financial'),
}

MORTALITY_CATEGORY = 'deaths'

# Groups counted as operational expenses in the monthly analysis.
OPERATIONAL_GROUPS = ('acquisition', 'operational')


def _fold(text):
    """Lower-cases and strips accents so 'Saúde' and 'saude' compare equal."""
    normalized = unicodedata.normalize('NFKD', text.strip().lower())
    return ''.join(ch for ch in normalized if not unicodedata.combining(ch))


def is_valid_category(code):
    return code in EXPENSE_CATEGORIES


def display_name(code):
    return EXPENSE_CATEGORIES[code][0]


def cash_flow_section(code):
    return EXPENSE_CATEGORIES[code][1]


def category_group(code):
    return EXPENSE_CATEGORIES[code][2]


def normalize_category(name):
    """
    Resolves a code or display name to its category code.
    Returns None when the name matches nothing in the catalogue.
    """
    if not name:
        return None
    folded = _fold(name)
    for code, (label, _section, _group) in EXPENSE_CATEGORIES.items():
        if folded == code or folded == _fold(label):
            return code
    return None


def catalogue():
    """The catalogue as a list of dictionaries, ready for JSON."""
    return [
        {'code': code, 'name': label, 'section': section, 'group': group}
        for code, (label, section, group) in EXPENSE_CATEGORIES.items()
    ]
