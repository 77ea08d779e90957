"""Entity definitions for the rental ledger.

Four collections are kept: properties, tenants, payments and repair requests.
Entities are immutable dataclasses; a change is made by building a new value
with :func:`dataclasses.replace`, which also recomputes the derived fields
(:attr:`Tenant.lease_renewal` and :attr:`Payment.status`).

The module also defines the spreadsheet layout of each collection and the
row codec shared by the remote adapter and the local cache. Every cell is a
locale-independent plain string.
"""
import dataclasses
import datetime
import decimal
import enum
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

DATE_FORMAT = '%Y-%m-%d'

ZIPCODE_RE = re.compile(r'^\d{5}(-\d{4})?$')
PHONE_RE = re.compile(r'^[\d\s()+-]+$')
EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


class Collection(enum.StrEnum):
    """The four entity collections."""
    Properties = 'properties'
    Tenants = 'tenants'
    Payments = 'payments'
    RepairRequests = 'repair_requests'


class PropertyStatus(enum.StrEnum):
    Vacant = 'vacant'
    Occupied = 'occupied'
    Maintenance = 'maintenance'


class PaymentStatus(enum.StrEnum):
    Paid = 'Paid'
    PartiallyPaid = 'Partially Paid'
    NotPaidYet = 'Not Paid Yet'


class RepairStatus(enum.StrEnum):
    Submitted = 'submitted'
    InProgress = 'in-progress'
    Completed = 'completed'


class RepairPriority(enum.StrEnum):
    Low = 'low'
    Medium = 'medium'
    High = 'high'
    Urgent = 'urgent'


def new_id() -> str:
    """Return a new collision-free entity id."""
    return uuid.uuid4().hex


def today_str() -> str:
    """Return today's local date as an ISO 'YYYY-MM-DD' string."""
    return datetime.date.today().strftime(DATE_FORMAT)


def google_serial_date_to_iso(serial: float) -> str:
    """Converts a Google Sheets date serial to an ISO 'YYYY-MM-DD' string.

    Raises:
        ValueError: If the serial number is out of a plausible range.
    """
    if serial < -20000 or serial > 2958465:
        raise ValueError(f'Serial date "{serial}" is out of supported range.')
    converted = datetime.datetime(1899, 12, 30) + datetime.timedelta(days=int(serial))
    return converted.strftime(DATE_FORMAT)


def parse_date(value: Any) -> datetime.date:
    """Parse a date given as an ISO string, a free-form date string or a Sheets serial.

    Raises:
        ValueError: If the value cannot be read as a date.
    """
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.datetime.strptime(google_serial_date_to_iso(float(value)), DATE_FORMAT).date()

    text = str(value).strip()
    if not text:
        raise ValueError('Empty date')
    try:
        return date_parser.isoparse(text).date()
    except ValueError:
        pass
    try:
        return date_parser.parse(text).date()
    except (ValueError, OverflowError) as ex:
        raise ValueError(f'Cannot parse "{text}" as a date') from ex


def normalize_date(value: Any) -> str:
    return parse_date(value).strftime(DATE_FORMAT)


def lease_renewal_date(lease_end: Any) -> str:
    """Return the last day of the month before the lease ends."""
    end = parse_date(lease_end)
    renewal = end + relativedelta(day=1) - relativedelta(days=1)
    return renewal.strftime(DATE_FORMAT)


def payment_status(amount: float, amount_paid: float) -> PaymentStatus:
    """Derive the status of a payment from the amount due and the amount paid."""
    if amount_paid <= 0:
        return PaymentStatus.NotPaidYet
    # A non-positive amount is never settled
    if amount <= 0:
        return PaymentStatus.PartiallyPaid
    if amount_paid >= amount:
        return PaymentStatus.Paid
    return PaymentStatus.PartiallyPaid


def format_number(value: float) -> str:
    """Format a number as a plain decimal string: 1000.0 -> '1000', 1200.50 -> '1200.5'."""
    d = decimal.Decimal(str(value)).normalize()
    return format(d, 'f')


def _coerce_enum(enum_cls: Type[enum.StrEnum], value: Any) -> enum.StrEnum:
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for member in enum_cls:
        if member.value == text or member.value.lower() == text.lower():
            return member
    raise ValueError(f'"{text}" is not a valid {enum_cls.__name__}')


def _set(obj: Any, name: str, value: Any) -> None:
    object.__setattr__(obj, name, value)


@dataclass(frozen=True)
class Property:
    address: str
    city: str
    state: str
    zipcode: str
    rent: float
    status: PropertyStatus = PropertyStatus.Vacant
    id: str = ''

    def __post_init__(self) -> None:
        _set(self, 'rent', float(self.rent))
        _set(self, 'status', _coerce_enum(PropertyStatus, self.status))

    def validate(self) -> None:
        """Check the field constraints of a property.

        Raises:
            ValueError: On the first invalid field.
        """
        if not self.address.strip():
            raise ValueError('Address is required')
        if not self.city.strip():
            raise ValueError('City is required')
        if len(self.state) != 2:
            raise ValueError('State must be 2 characters')
        if not ZIPCODE_RE.match(self.zipcode):
            raise ValueError(f'Invalid ZIP code "{self.zipcode}"')
        if self.rent <= 0:
            raise ValueError('Rent must be positive')


@dataclass(frozen=True)
class Tenant:
    """A tenant leasing a property.

    ``lease_renewal`` is derived from ``lease_end`` and cannot be passed in.
    """
    property_id: str
    name: str
    email: str
    phone: str
    lease_start: str
    lease_end: str
    rent_amount: float
    payment_method: str = ''
    id: str = ''
    lease_renewal: str = field(init=False)

    def __post_init__(self) -> None:
        _set(self, 'rent_amount', float(self.rent_amount))
        _set(self, 'lease_start', normalize_date(self.lease_start))
        _set(self, 'lease_end', normalize_date(self.lease_end))
        _set(self, 'lease_renewal', lease_renewal_date(self.lease_end))

    def validate(self) -> None:
        if not self.name.strip():
            raise ValueError('Name is required')
        if not EMAIL_RE.match(self.email):
            raise ValueError(f'Invalid email address "{self.email}"')
        if not PHONE_RE.match(self.phone):
            raise ValueError(f'Invalid phone number "{self.phone}"')
        if not self.property_id:
            raise ValueError('Property selection is required')
        if self.rent_amount <= 0:
            raise ValueError('Rent amount must be positive')


@dataclass(frozen=True)
class Payment:
    """A rent payment due for a property.

    ``status`` is derived from ``amount`` and ``amount_paid`` and cannot be passed in.
    """
    property_id: str
    amount: float
    amount_paid: float = 0.0
    rent_month: str = ''
    date: Optional[str] = None
    method: str = ''
    tenant_id: Optional[str] = None
    id: str = ''
    status: PaymentStatus = field(init=False)

    def __post_init__(self) -> None:
        _set(self, 'amount', float(self.amount))
        _set(self, 'amount_paid', float(self.amount_paid))
        _set(self, 'tenant_id', self.tenant_id or None)
        _set(self, 'date', normalize_date(self.date) if self.date else None)
        _set(self, 'status', payment_status(self.amount, self.amount_paid))

    def validate(self) -> None:
        if not self.property_id:
            raise ValueError('Property is required')
        if self.amount <= 0:
            raise ValueError('Amount must be positive')
        if self.amount_paid < 0:
            raise ValueError('Amount paid cannot be negative')
        if not self.rent_month.strip():
            raise ValueError('Rent month is required')


@dataclass(frozen=True)
class RepairRequest:
    tenant_id: str
    property_id: str
    title: str
    description: str = ''
    priority: RepairPriority = RepairPriority.Medium
    status: RepairStatus = RepairStatus.Submitted
    date_submitted: Optional[str] = None
    date_resolved: Optional[str] = None
    category: str = ''
    close_notes: Optional[str] = None
    id: str = ''

    def __post_init__(self) -> None:
        _set(self, 'priority', _coerce_enum(RepairPriority, self.priority))
        _set(self, 'status', _coerce_enum(RepairStatus, self.status))
        _set(self, 'date_submitted', normalize_date(self.date_submitted) if self.date_submitted else None)
        _set(self, 'date_resolved', normalize_date(self.date_resolved) if self.date_resolved else None)
        _set(self, 'close_notes', self.close_notes or None)

    def validate(self) -> None:
        if not self.title.strip():
            raise ValueError('Title is required')
        if not self.tenant_id:
            raise ValueError('Tenant is required')
        if not self.property_id:
            raise ValueError('Property is required')


Entity = Property | Tenant | Payment | RepairRequest

ENTITY_TYPES: Dict[Collection, type] = {
    Collection.Properties: Property,
    Collection.Tenants: Tenant,
    Collection.Payments: Payment,
    Collection.RepairRequests: RepairRequest,
}


def collection_of(entity: Entity) -> Collection:
    for name, cls in ENTITY_TYPES.items():
        if isinstance(entity, cls):
            return name
    raise TypeError(f'Not an entity: {entity!r}')


@dataclass(frozen=True)
class EntitySet:
    """An immutable snapshot of the four collections."""
    properties: Tuple[Property, ...] = ()
    tenants: Tuple[Tenant, ...] = ()
    payments: Tuple[Payment, ...] = ()
    repair_requests: Tuple[RepairRequest, ...] = ()

    def collection(self, name: Collection) -> Tuple[Entity, ...]:
        return getattr(self, Collection(name).value)

    def ids(self, name: Collection) -> List[str]:
        return [e.id for e in self.collection(name)]

    def counts(self) -> Dict[str, int]:
        return {name.value: len(self.collection(name)) for name in Collection}

    def is_empty(self) -> bool:
        return not any(self.counts().values())

    def with_collection(self, name: Collection, items) -> 'EntitySet':
        return dataclasses.replace(self, **{Collection(name).value: tuple(items)})


@dataclass(frozen=True)
class Column:
    header: str
    attr: str
    kind: str = 'string'  # 'string', 'float', 'date' or 'enum'
    optional: bool = False
    derived: bool = False


SHEET_TITLES: Dict[Collection, str] = {
    Collection.Properties: 'Properties',
    Collection.Tenants: 'Tenants',
    Collection.Payments: 'Payments',
    Collection.RepairRequests: 'RepairRequests',
}

COLUMNS: Dict[Collection, Tuple[Column, ...]] = {
    Collection.Properties: (
        Column('ID', 'id'),
        Column('Address', 'address'),
        Column('City', 'city'),
        Column('State', 'state'),
        Column('ZipCode', 'zipcode'),
        Column('Rent', 'rent', 'float'),
        Column('Status', 'status', 'enum'),
    ),
    Collection.Tenants: (
        Column('ID', 'id'),
        Column('Name', 'name'),
        Column('Email', 'email'),
        Column('Phone', 'phone'),
        Column('Property ID', 'property_id'),
        Column('Lease Start', 'lease_start', 'date'),
        Column('Lease End', 'lease_end', 'date'),
        Column('Rent Amount', 'rent_amount', 'float'),
        Column('Payment Method', 'payment_method'),
        Column('Lease Renewal', 'lease_renewal', 'date', derived=True),
    ),
    Collection.Payments: (
        Column('ID', 'id'),
        Column('Property ID', 'property_id'),
        Column('Tenant ID', 'tenant_id', optional=True),
        Column('Amount', 'amount', 'float'),
        Column('Amount Paid', 'amount_paid', 'float'),
        Column('Date', 'date', 'date', optional=True),
        Column('Status', 'status', 'enum', derived=True),
        Column('Method', 'method'),
        Column('Rent Month', 'rent_month'),
    ),
    Collection.RepairRequests: (
        Column('ID', 'id'),
        Column('Tenant ID', 'tenant_id'),
        Column('Property ID', 'property_id'),
        Column('Title', 'title'),
        Column('Description', 'description'),
        Column('Priority', 'priority', 'enum'),
        Column('Status', 'status', 'enum'),
        Column('Date Submitted', 'date_submitted', 'date', optional=True),
        Column('Date Resolved', 'date_resolved', 'date', optional=True),
        Column('Category', 'category'),
        Column('Close Notes', 'close_notes', optional=True),
    ),
}


def headers(name: Collection) -> List[str]:
    return [c.header for c in COLUMNS[Collection(name)]]


def _encode_cell(value: Any, column: Column) -> str:
    if value is None:
        return ''
    if column.kind == 'float':
        return format_number(value)
    if isinstance(value, enum.Enum):
        return value.value
    return str(value)


def to_row(entity: Entity) -> List[str]:
    """Encode an entity as a row of plain strings in header order."""
    name = collection_of(entity)
    return [_encode_cell(getattr(entity, c.attr), c) for c in COLUMNS[name]]


_DEFAULT = object()


def _decode_cell(value: Any, column: Column) -> Any:
    if value is None:
        text = ''
    elif isinstance(value, float) and column.kind != 'date' and value.is_integer():
        text = str(int(value))
    else:
        text = str(value).strip()

    if not text:
        if column.optional:
            return None
        if column.kind == 'enum':
            return _DEFAULT
        if column.kind in ('float', 'date'):
            raise ValueError(f'"{column.header}" is empty')
        return ''

    if column.kind == 'float':
        return float(text)
    if column.kind == 'date' and isinstance(value, (int, float)) and not isinstance(value, bool):
        return google_serial_date_to_iso(float(value))
    return text


def from_row(name: Collection, row: List[Any]) -> Entity:
    """Decode a row, given in header order, into an entity.

    Derived columns are ignored and recomputed.

    Raises:
        ValueError: If the row has more cells than the header, has no id, or a
            cell cannot be decoded.
    """
    name = Collection(name)
    columns = COLUMNS[name]
    if len(row) > len(columns):
        raise ValueError(f'Row has {len(row)} cells, expected at most {len(columns)}')
    cells = list(row) + [''] * (len(columns) - len(row))

    kwargs = {}
    for column, value in zip(columns, cells):
        if column.derived:
            continue
        decoded = _decode_cell(value, column)
        if decoded is not _DEFAULT:
            kwargs[column.attr] = decoded

    if not kwargs['id']:
        raise ValueError('Row has no id')
    return ENTITY_TYPES[name](**kwargs)
