from .locations import Location
from .tickets import Ticket
from .payments import Payment
from .messages import Message, MessageTemplate
from .audit import AuditLog

__all__ = [
    'Location',
    'Ticket',
    'Payment',
    'Message', 'MessageTemplate',
    'AuditLog',
]
