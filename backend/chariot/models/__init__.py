from .tenancy import Company, Location
from .customers import Customer
from .orders import Order, OrderLineItem
from .ledger import OrderTransaction, OrderAuthorization
from .audit import AuditEvent, DocumentSequence

__all__ = [
    'Company', 'Location',
    'Customer',
    'Order', 'OrderLineItem',
    'OrderTransaction', 'OrderAuthorization',
    'AuditEvent', 'DocumentSequence',
]
