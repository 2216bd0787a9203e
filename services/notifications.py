"""In-app notifications written alongside workflow transitions."""
from __future__ import annotations

from typing import Iterable, List, Optional

from models import BorrowRequest, Notification, Role, RoleAssignment, db
from services.base import TransactionalService
from services.errors import NotFoundError


def _request_link(request: BorrowRequest) -> str:
    return f'/requests/{request.id}'


class Notifier(TransactionalService):
    def notify(self, user_ids: Iterable[int], title: str, message: str, link: Optional[str] = None) -> List[Notification]:
        created = []
        for user_id in sorted(set(user_ids)):
            notification = Notification(user_id=user_id, title=title, message=message, link=link)
            db.session.add(notification)
            created.append(notification)
        return created

    def owners_of(self, department_ids: Iterable[int]) -> List[int]:
        department_ids = list(department_ids)
        if not department_ids:
            return []
        rows = (
            db.session.query(RoleAssignment.user_id)
            .filter(RoleAssignment.role == Role.OWNER, RoleAssignment.department_id.in_(department_ids))
            .distinct()
            .all()
        )
        return [user_id for (user_id,) in rows]

    def headmasters(self) -> List[int]:
        rows = db.session.query(RoleAssignment.user_id).filter_by(role=Role.HEADMASTER).distinct().all()
        return [user_id for (user_id,) in rows]

    def request_submitted(self, request: BorrowRequest) -> None:
        owners = [uid for uid in self.owners_of(request.department_ids) if uid != request.borrower_id]
        self.notify(owners, 'New borrow request', f'Request #{request.id} is waiting for your review.', _request_link(request))

    def request_escalated(self, request: BorrowRequest) -> None:
        self.notify(
            self.headmasters(),
            'Approval needed',
            f'Request #{request.id} was forwarded for headmaster approval.',
            _request_link(request),
        )
        self.notify([request.borrower_id], 'Request forwarded', f'Request #{request.id} is waiting for the headmaster.', _request_link(request))

    def request_approved(self, request: BorrowRequest) -> None:
        self.notify(
            [request.borrower_id],
            'Request approved',
            f'Letter {request.letter_number} has been issued. The items are ready for handover.',
            _request_link(request),
        )

    def request_rejected(self, request: BorrowRequest) -> None:
        self.notify(
            [request.borrower_id],
            'Request rejected',
            f'Request #{request.id} was rejected: {request.rejection_reason}',
            _request_link(request),
        )

    def request_cancelled(self, request: BorrowRequest) -> None:
        self.notify(
            self.owners_of(request.department_ids),
            'Request cancelled',
            f'Request #{request.id} was cancelled by the borrower.',
            _request_link(request),
        )

    def loan_started(self, request: BorrowRequest) -> None:
        self.notify([request.borrower_id], 'Loan started', f'Loan {request.letter_number} is now active.', _request_link(request))

    def loan_completed(self, request: BorrowRequest) -> None:
        self.notify([request.borrower_id], 'Loan completed', f'Loan {request.letter_number} has been returned.', _request_link(request))

    def list_for(self, user_id: int, unread_only: bool = False) -> List[Notification]:
        query = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            query = query.filter_by(read=False)
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(100).all()

    def unread_count(self, user_id: int) -> int:
        return Notification.query.filter_by(user_id=user_id, read=False).count()

    def mark_read(self, user_id: int, notification_id: int) -> Notification:
        with self._transaction('Mark notification read'):
            notification = db.session.get(Notification, notification_id)
            if not notification or notification.user_id != user_id:
                raise NotFoundError('Notification not found.')
            notification.read = True
        return notification

    def mark_all_read(self, user_id: int) -> int:
        with self._transaction('Mark notifications read'):
            updated = Notification.query.filter_by(user_id=user_id, read=False).update({'read': True})
        return updated
