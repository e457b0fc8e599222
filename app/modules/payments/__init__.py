# Payments module
from app.modules.payments.services import PaymentService
from app.modules.payments.router import router

__all__ = ["PaymentService", "router"]
