class PaymentError(Exception):
    """Raised for payment requests that cannot proceed; safe to show to users."""


class OrderNotFound(PaymentError): pass
class OrderAlreadyPaid(PaymentError): pass
class AmountMismatch(PaymentError): pass
class PaymentInProgress(PaymentError): pass
class PaymentNotCancellable(PaymentError): pass


class MalformedCallback(ValueError):
    """The webhook body is missing the stkCallback envelope or its required fields."""
