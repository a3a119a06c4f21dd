from .auth import User, Employee, SessionToken
from .inventory import Product, InventoryRecord, InventoryReservation
from .orders import Order, OrderItem, Transaction

__all__ = [
    'User', 'Employee', 'SessionToken',
    'Product', 'InventoryRecord', 'InventoryReservation',
    'Order', 'OrderItem', 'Transaction',
]
