"""Error taxonomy shared by the service layer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class BorrowServiceError(RuntimeError):
    """Base class for borrow workflow failures."""

    status_code = 400

    def to_dict(self) -> dict:
        return {'error': str(self)}


class ValidationError(BorrowServiceError):
    """Malformed or missing request fields."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        return {'error': str(self), 'field': self.field}


class AuthorizationError(BorrowServiceError):
    status_code = 403

    def __init__(self, message: str = 'not permitted'):
        super().__init__(message)


class NotFoundError(BorrowServiceError):
    status_code = 404


@dataclass(frozen=True)
class Shortfall:
    item_id: int
    item_name: str
    requested: int
    available: int

    def to_dict(self) -> dict:
        return {
            'item_id': self.item_id,
            'item_name': self.item_name,
            'requested': self.requested,
            'available': self.available,
        }


class CapacityError(BorrowServiceError):
    status_code = 409

    def __init__(self, shortfalls: List[Shortfall]):
        names = ', '.join(f'{s.item_name} ({s.available} of {s.requested} available)' for s in shortfalls)
        super().__init__(f'Insufficient stock: {names}')
        self.shortfalls = list(shortfalls)

    def to_dict(self) -> dict:
        return {'error': str(self), 'shortfalls': [s.to_dict() for s in self.shortfalls]}


class ReferentialIntegrityError(BorrowServiceError):
    status_code = 409


class StateTransitionError(BorrowServiceError):
    status_code = 409

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status

    def to_dict(self) -> dict:
        return {'error': str(self), 'status': self.status}


class PersistenceError(BorrowServiceError):
    """The datastore failed; the caller may retry."""

    status_code = 503
