"""In-process working set of the rental ledger.

:class:`LocalStore` is the authoritative copy the surrounding application
reads and edits. Every mutation is synchronous, checks the field constraints
and the foreign references of the record, and is guarded by a re-entrant lock
so CRUD calls may run while a sync cycle is in flight. The sync engine uses
:meth:`LocalStore.snapshot`, :meth:`LocalStore.replace_all` and
:meth:`LocalStore.adopt`; the latter two apply a whole four-collection change
in one step.
"""
import dataclasses
import datetime
import logging
import threading
from typing import Dict, List, Optional, Union

from PySide6 import QtCore
from babel.dates import format_date
from dateutil.relativedelta import relativedelta

from .models import (
    Collection,
    Entity,
    EntitySet,
    Payment,
    Property,
    PropertyStatus,
    RepairRequest,
    RepairStatus,
    Tenant,
    collection_of,
    new_id,
    today_str,
)
from ..signals import signals
from ..status import status

RENT_MONTH_FORMAT = 'MMMM yyyy'
RENT_MONTH_LOCALE = 'en_US'


def format_rent_month(year: int, month: int) -> str:
    """Return the rent month label of a month, e.g. 'October 2026'."""
    return format_date(datetime.date(year, month, 1), RENT_MONTH_FORMAT, locale=RENT_MONTH_LOCALE)


class LocalStore(QtCore.QObject):
    """Thread-safe store of properties, tenants, payments and repair requests."""

    def __init__(self, entities: Optional[EntitySet] = None, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._lock = threading.RLock()
        self._data: Dict[Collection, Dict[str, Entity]] = {name: {} for name in Collection}
        if entities is not None:
            self._load(entities)

    def _load(self, entities: EntitySet) -> None:
        self._data = {
            name: {e.id: e for e in entities.collection(name)}
            for name in Collection
        }

    # Reads

    def snapshot(self) -> EntitySet:
        """Return an immutable copy of the current contents."""
        with self._lock:
            return EntitySet(**{name.value: tuple(self._data[name].values()) for name in Collection})

    def get(self, name: Collection, entity_id: str) -> Entity:
        """Return an entity by id.

        Raises:
            status.EntityNotFoundException: If no entity has the id.
        """
        with self._lock:
            try:
                return self._data[Collection(name)][entity_id]
            except KeyError:
                raise status.EntityNotFoundException(f'No {name} with id "{entity_id}".') from None

    def has(self, name: Collection, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._data[Collection(name)]

    def properties(self) -> List[Property]:
        with self._lock:
            return list(self._data[Collection.Properties].values())

    def tenants(self) -> List[Tenant]:
        with self._lock:
            return list(self._data[Collection.Tenants].values())

    def payments(self) -> List[Payment]:
        with self._lock:
            return list(self._data[Collection.Payments].values())

    def repair_requests(self) -> List[RepairRequest]:
        with self._lock:
            return list(self._data[Collection.RepairRequests].values())

    def get_property(self, entity_id: str) -> Property:
        return self.get(Collection.Properties, entity_id)

    def get_tenant(self, entity_id: str) -> Tenant:
        return self.get(Collection.Tenants, entity_id)

    def get_payment(self, entity_id: str) -> Payment:
        return self.get(Collection.Payments, entity_id)

    def get_repair_request(self, entity_id: str) -> RepairRequest:
        return self.get(Collection.RepairRequests, entity_id)

    # Generic mutation helpers. Callers hold the lock.

    def _validate(self, entity: Entity) -> None:
        try:
            entity.validate()
        except ValueError as ex:
            raise status.EntityInvalidException(str(ex)) from ex

    def _require(self, name: Collection, entity_id: Optional[str], owner: Entity) -> None:
        if entity_id not in self._data[name]:
            raise status.ReferenceInvalidException(
                f'{type(owner).__name__} "{owner.id}" refers to a missing {name} record "{entity_id}".'
            )

    def _check_references(self, entity: Entity) -> None:
        if isinstance(entity, Tenant):
            self._require(Collection.Properties, entity.property_id, entity)
        elif isinstance(entity, Payment):
            self._require(Collection.Properties, entity.property_id, entity)
            if entity.tenant_id:
                self._require(Collection.Tenants, entity.tenant_id, entity)
        elif isinstance(entity, RepairRequest):
            self._require(Collection.Tenants, entity.tenant_id, entity)
            self._require(Collection.Properties, entity.property_id, entity)

    def _insert(self, entity: Entity) -> Entity:
        entity = dataclasses.replace(entity, id=new_id())
        self._validate(entity)
        self._check_references(entity)
        self._data[collection_of(entity)][entity.id] = entity
        logging.debug(f'Added {type(entity).__name__} "{entity.id}"')
        return entity

    def _replace(self, entity: Entity) -> Entity:
        name = collection_of(entity)
        if entity.id not in self._data[name]:
            raise status.EntityNotFoundException(f'No {name} with id "{entity.id}".')
        self._validate(entity)
        self._check_references(entity)
        self._data[name][entity.id] = entity
        logging.debug(f'Updated {type(entity).__name__} "{entity.id}"')
        return entity

    def _remove(self, name: Collection, entity_or_id: Union[Entity, str]) -> Entity:
        entity_id = entity_or_id if isinstance(entity_or_id, str) else entity_or_id.id
        try:
            entity = self._data[name].pop(entity_id)
        except KeyError:
            raise status.EntityNotFoundException(f'No {name} with id "{entity_id}".') from None
        logging.debug(f'Deleted {type(entity).__name__} "{entity_id}"')
        return entity

    def _set_property_status(self, property_id: str, value: PropertyStatus) -> bool:
        prop = self._data[Collection.Properties].get(property_id)
        if prop is None or prop.status == value:
            return False
        self._data[Collection.Properties][property_id] = dataclasses.replace(prop, status=value)
        return True

    def _is_leased(self, property_id: str) -> bool:
        return any(t.property_id == property_id for t in self._data[Collection.Tenants].values())

    @staticmethod
    def _emit(*names: Collection) -> None:
        for name in names:
            signals.storeChanged.emit(Collection(name).value)

    # Properties

    def add_property(self, entity: Property) -> Property:
        with self._lock:
            entity = self._insert(entity)
        self._emit(Collection.Properties)
        return entity

    def update_property(self, entity: Property) -> Property:
        with self._lock:
            entity = self._replace(entity)
        self._emit(Collection.Properties)
        return entity

    def delete_property(self, entity_or_id: Union[Property, str]) -> Property:
        """Delete a property together with its tenants and payments."""
        with self._lock:
            prop = self._remove(Collection.Properties, entity_or_id)
            for name in (Collection.Tenants, Collection.Payments):
                dependants = [k for k, v in self._data[name].items() if v.property_id == prop.id]
                for k in dependants:
                    del self._data[name][k]
                if dependants:
                    logging.debug(f'Cascade deleted {len(dependants)} {name} of property "{prop.id}"')
        self._emit(Collection.Properties, Collection.Tenants, Collection.Payments)
        return prop

    # Tenants

    def add_tenant(self, entity: Tenant) -> Tenant:
        """Add a tenant and mark its property occupied."""
        with self._lock:
            entity = self._insert(entity)
            self._set_property_status(entity.property_id, PropertyStatus.Occupied)
        self._emit(Collection.Tenants, Collection.Properties)
        return entity

    def update_tenant(self, entity: Tenant) -> Tenant:
        with self._lock:
            previous = self.get_tenant(entity.id)
            entity = self._replace(entity)
            if previous.property_id != entity.property_id:
                self._set_property_status(entity.property_id, PropertyStatus.Occupied)
                if not self._is_leased(previous.property_id):
                    self._set_property_status(previous.property_id, PropertyStatus.Vacant)
        self._emit(Collection.Tenants, Collection.Properties)
        return entity

    def delete_tenant(self, entity_or_id: Union[Tenant, str]) -> Tenant:
        """Delete a tenant and mark its property vacant when no other tenant leases it."""
        with self._lock:
            tenant = self._remove(Collection.Tenants, entity_or_id)
            if not self._is_leased(tenant.property_id):
                self._set_property_status(tenant.property_id, PropertyStatus.Vacant)
        self._emit(Collection.Tenants, Collection.Properties)
        return tenant

    # Payments

    def add_payment(self, entity: Payment) -> Payment:
        with self._lock:
            entity = self._insert(entity)
        self._emit(Collection.Payments)
        return entity

    def update_payment(self, entity: Payment) -> Payment:
        with self._lock:
            entity = self._replace(entity)
        self._emit(Collection.Payments)
        return entity

    def delete_payment(self, entity_or_id: Union[Payment, str]) -> Payment:
        with self._lock:
            entity = self._remove(Collection.Payments, entity_or_id)
        self._emit(Collection.Payments)
        return entity

    # Repair requests

    def add_repair_request(self, entity: RepairRequest) -> RepairRequest:
        if not entity.date_submitted:
            entity = dataclasses.replace(entity, date_submitted=today_str())
        with self._lock:
            entity = self._insert(entity)
        self._emit(Collection.RepairRequests)
        return entity

    def update_repair_request(self, entity: RepairRequest) -> RepairRequest:
        """Update a repair request, stamping today's date when it is completed without one."""
        if entity.status == RepairStatus.Completed and not entity.date_resolved:
            entity = dataclasses.replace(entity, date_resolved=today_str())
        with self._lock:
            entity = self._replace(entity)
        self._emit(Collection.RepairRequests)
        return entity

    def delete_repair_request(self, entity_or_id: Union[RepairRequest, str]) -> RepairRequest:
        with self._lock:
            entity = self._remove(Collection.RepairRequests, entity_or_id)
        self._emit(Collection.RepairRequests)
        return entity

    # Whole-store transitions

    def replace_all(self, entities: EntitySet) -> None:
        """Replace the contents of all four collections in one step."""
        with self._lock:
            self._load(entities)
            logging.debug(f'Local store replaced: {entities.counts()}')
        signals.storeReplaced.emit()

    def adopt(self, entities: EntitySet) -> EntitySet:
        """Add the records whose ids are not held yet, in one step.

        Records whose id is already present keep the local value, including
        edits made after the caller took its snapshot.

        Returns:
            EntitySet: The records actually added.
        """
        with self._lock:
            adopted = {}
            for name in Collection:
                current = self._data[name]
                items = [e for e in entities.collection(name) if e.id not in current]
                for e in items:
                    current[e.id] = e
                adopted[name.value] = tuple(items)
            result = EntitySet(**adopted)
            logging.debug(f'Local store adopted: {result.counts()}')
        if not result.is_empty():
            signals.storeReplaced.emit()
        return result

    # Payment generation

    def generate_payments_for_month(self, year: int, month: int, force: bool = False) -> List[Payment]:
        """Create the unpaid rent payments of a month.

        One payment is created for every occupied property, or every property
        when ``force`` is set, that has no payment for the month yet. The
        amount is the rent of the property's tenant, or the property rent when
        it has no tenant.

        Args:
            year: Year of the rent month.
            month: Month number, 1-12.
            force: Also create payments for vacant properties and properties under maintenance.

        Returns:
            list[Payment]: The created payments.
        """
        rent_month = format_rent_month(year, month)
        created = []
        with self._lock:
            payments = self._data[Collection.Payments]
            for prop in self._data[Collection.Properties].values():
                if any(p.property_id == prop.id and p.rent_month == rent_month for p in payments.values()):
                    continue
                if prop.status != PropertyStatus.Occupied and not force:
                    continue

                tenant = next(
                    (t for t in self._data[Collection.Tenants].values() if t.property_id == prop.id),
                    None
                )
                payment = Payment(
                    property_id=prop.id,
                    tenant_id=tenant.id if tenant else None,
                    amount=tenant.rent_amount if tenant else prop.rent,
                    amount_paid=0.0,
                    rent_month=rent_month,
                    id=new_id(),
                )
                payments[payment.id] = payment
                created.append(payment)

        logging.info(f'Generated {len(created)} payments for {rent_month}')
        if created:
            self._emit(Collection.Payments)
        return created

    def generate_upcoming_months(self, count: int = 2, start: Optional[datetime.date] = None,
                                 force: bool = False) -> Dict[str, List[Payment]]:
        """Generate payments for ``count`` consecutive months starting at ``start`` (default: this month)."""
        start = start or datetime.date.today()
        results = {}
        for offset in range(count):
            d = start + relativedelta(months=offset)
            results[format_rent_month(d.year, d.month)] = self.generate_payments_for_month(d.year, d.month, force)
        return results
