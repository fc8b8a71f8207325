from .parties import Retailer, Wholesaler, Product
from .orders import Order, OrderItem, OrderTransition
from .routing import OrderRouting, VendorResponse, VendorOffer
from .credit import CreditAccount, LedgerEntry
from .inventory import WholesalerProduct, StockReservation, StockMovement
from .outbox import NotificationOutbox

__all__ = [
    'Retailer', 'Wholesaler', 'Product',
    'Order', 'OrderItem', 'OrderTransition',
    'OrderRouting', 'VendorResponse', 'VendorOffer',
    'CreditAccount', 'LedgerEntry',
    'WholesalerProduct', 'StockReservation', 'StockMovement',
    'NotificationOutbox',
]
