from .task import Task
from .assignment import TaskAssignment, TaskAssignmentStatus
from .invoice import Invoice, InvoiceItem
from .payment import Payment, PaymentMethod, PaymentState
from .cart import Cart, CartItem
