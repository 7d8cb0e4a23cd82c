"""
Error taxonomy shared by the services and the HTTP layer.

Capacity shortages inside the ledger are plain booleans; these exceptions are
what the orchestration layer raises once it has decided an operation is dead.
Every message is safe to show to a customer.
"""
from __future__ import annotations
from typing import Dict, List, Optional


class BoxOfficeError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class InvalidInput(BoxOfficeError):
    status_code = 400

    def __init__(self, message: str,
                 fields: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.fields = dict(fields or {})

    def to_dict(self) -> dict:
        return {"error": self.message, "fields": self.fields}


class SoldOut(BoxOfficeError):
    status_code = 409

    def __init__(self, message: str = "Sold out / insufficient stock",
                 errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> dict:
        return {"error": self.message, "errors": self.errors}


class NotFound(BoxOfficeError):
    status_code = 404


class Conflict(BoxOfficeError):
    status_code = 409


class DuplicateOrder(Conflict):
    pass


class OverrideRequired(Conflict):
    status_code = 403


class IllegalTransition(Conflict):
    pass


class PaymentFailed(BoxOfficeError):
    status_code = 402


class ProviderUnavailable(BoxOfficeError):
    status_code = 503
