"""Transaction handling shared by the services."""
from __future__ import annotations

from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from services.errors import BorrowServiceError, PersistenceError


class TransactionalService:
    @contextmanager
    def _transaction(self, action: str):
        try:
            yield
            db.session.commit()
        except BorrowServiceError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            current_app.logger.exception('%s failed: %s', action, exc)
            db.session.rollback()
            raise PersistenceError(f'{action} failed, please try again later.') from exc
