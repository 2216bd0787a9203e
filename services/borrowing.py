"""Borrow request approval workflow."""
from __future__ import annotations

import datetime
from collections import abc
from typing import Iterable, List, Mapping, Optional

from flask import current_app
from sqlalchemy import or_

from models import BorrowRequest, Item, RequestItem, RequestStatus, db, utcnow
from services.authorization import Action, Actor, AuthorizationGate
from services.base import TransactionalService
from services.errors import AuthorizationError, NotFoundError, StateTransitionError, ValidationError
from services.inventory import InventoryLedger
from services.letters import LetterIssuer
from services.notifications import Notifier


class Event:
    DIRECT_APPROVE = 'direct_approve'
    ESCALATE = 'escalate'
    OWNER_REJECT = 'owner_reject'
    HEADMASTER_APPROVE = 'headmaster_approve'
    HEADMASTER_REJECT = 'headmaster_reject'
    START_LOAN = 'start_loan'
    COMPLETE_LOAN = 'complete_loan'
    CANCEL = 'cancel'


# event -> (allowed source states, target state, permission needed)
TRANSITIONS = {
    Event.DIRECT_APPROVE: ((RequestStatus.PENDING_OWNER,), RequestStatus.APPROVED, Action.OWNER_REVIEW),
    Event.ESCALATE: ((RequestStatus.PENDING_OWNER,), RequestStatus.PENDING_HEADMASTER, Action.OWNER_REVIEW),
    Event.OWNER_REJECT: ((RequestStatus.PENDING_OWNER,), RequestStatus.REJECTED, Action.OWNER_REVIEW),
    Event.HEADMASTER_APPROVE: ((RequestStatus.PENDING_HEADMASTER,), RequestStatus.APPROVED, Action.HEADMASTER_REVIEW),
    Event.HEADMASTER_REJECT: ((RequestStatus.PENDING_HEADMASTER,), RequestStatus.REJECTED, Action.HEADMASTER_REVIEW),
    Event.START_LOAN: ((RequestStatus.APPROVED,), RequestStatus.ACTIVE, Action.HANDLE_LOAN),
    Event.COMPLETE_LOAN: ((RequestStatus.ACTIVE,), RequestStatus.COMPLETED, Action.HANDLE_LOAN),
    Event.CANCEL: (RequestStatus.PENDING, RequestStatus.CANCELLED, Action.CANCEL_REQUEST),
}


def _required_text(value, field: str, label: str) -> str:
    text = str(value).strip() if value is not None else ''
    if not text:
        raise ValidationError(f'{label} is required.', field=field)
    return text


def _optional_text(value) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def _apply_conditions(request: BorrowRequest, conditions, attribute: str) -> None:
    """Record per-line condition notes, keyed by item id."""
    if not conditions:
        return
    if not isinstance(conditions, abc.Mapping):
        raise ValidationError('Conditions must map item ids to notes.', field='conditions')
    lines = {line.item_id: line for line in request.items}
    for key, text in conditions.items():
        try:
            item_id = int(key)
        except (TypeError, ValueError) as exc:
            raise ValidationError('Conditions must map item ids to notes.', field='conditions') from exc
        if item_id not in lines:
            raise ValidationError(f'Item {item_id} is not part of this request.', field='conditions')
        setattr(lines[item_id], attribute, _optional_text(text))


def _parse_date(value, field: str) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if not value:
        raise ValidationError('Date is required.', field=field)
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError('Date must be in YYYY-MM-DD format.', field=field) from exc


def _parse_quantity(value) -> int:
    if isinstance(value, bool):
        raise ValidationError('Quantity must be a whole number.', field='quantity')
    try:
        quantity = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError('Quantity must be a whole number.', field='quantity') from exc
    if quantity <= 0:
        raise ValidationError('Quantity must be at least 1.', field='quantity')
    return quantity


class BorrowService(TransactionalService):
    """Drives a request through submission, owner and headmaster review, and the loan itself.

    Each public method is one transaction: either the status change and all
    its side effects are committed, or nothing is.
    """

    def __init__(
        self,
        gate: Optional[AuthorizationGate] = None,
        ledger: Optional[InventoryLedger] = None,
        letters: Optional[LetterIssuer] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.gate = gate or AuthorizationGate()
        self.ledger = ledger or InventoryLedger()
        self.letters = letters or LetterIssuer()
        self.notifier = notifier or Notifier()

    def _load(self, record_id: int) -> BorrowRequest:
        request = db.session.get(BorrowRequest, record_id)
        if not request:
            raise NotFoundError('Request not found.')
        return request

    def _begin(self, actor: Actor, record_id: int, event: str) -> BorrowRequest:
        """Load the request and check permission, then the current status."""
        sources, _target, action = TRANSITIONS[event]
        request = self._load(record_id)
        self.gate.require(actor, action, request=request)
        if request.status not in sources:
            raise StateTransitionError(
                f"Cannot {event.replace('_', ' ')} a request that is {request.status}.",
                status=request.status,
            )
        return request

    def _log(self, request: BorrowRequest, event: str, actor: Actor) -> None:
        current_app.logger.info('Request %s: %s by user %s -> %s', request.id, event, actor.user_id, request.status)

    def submit(
        self,
        *,
        actor: Actor,
        purpose: str,
        start_date,
        end_date,
        pic_name: str,
        pic_contact: str,
        lines: Iterable[Mapping],
        location_usage: Optional[str] = None,
    ) -> BorrowRequest:
        self.gate.require(actor, Action.CREATE_REQUEST)
        purpose = _required_text(purpose, 'purpose', 'Purpose')
        pic_name = _required_text(pic_name, 'pic_name', 'Person in charge')
        pic_contact = _required_text(pic_contact, 'pic_contact', 'Person in charge contact')
        start = _parse_date(start_date, 'start_date')
        end = _parse_date(end_date, 'end_date')
        if end < start:
            raise ValidationError('End date cannot be before the start date.', field='end_date')
        parsed = []
        if lines is None:
            lines = []
        if not isinstance(lines, (list, tuple)):
            raise ValidationError('Each line needs an item.', field='items')
        for line in lines:
            if not isinstance(line, abc.Mapping):
                raise ValidationError('Each line needs an item.', field='items')
            try:
                item_id = int(line.get('item_id'))
            except (TypeError, ValueError) as exc:
                raise ValidationError('Each line needs an item.', field='items') from exc
            parsed.append((item_id, _parse_quantity(line.get('quantity')), _optional_text(line.get('notes'))))
        if not parsed:
            raise ValidationError('Add at least one item to the request.', field='items')

        with self._transaction('Submit request'):
            items = {item.id: item for item in Item.query.filter(Item.id.in_(sorted({p[0] for p in parsed}))).all()}
            missing = [item_id for item_id, _, _ in parsed if item_id not in items]
            if missing:
                raise ValidationError(f'Unknown item id {missing[0]}.', field='items')
            self.gate.require_no_self_dealing(actor, {item.department_id for item in items.values()})

            request = BorrowRequest(
                borrower_id=actor.user_id,
                status=RequestStatus.PENDING_OWNER,
                purpose=purpose,
                start_date=start,
                end_date=end,
                location_usage=_optional_text(location_usage),
                pic_name=pic_name,
                pic_contact=pic_contact,
            )
            for item_id, quantity, notes in parsed:
                request.items.append(RequestItem(item=items[item_id], quantity=quantity, notes=notes))
            db.session.add(request)
            db.session.flush()
            self.notifier.request_submitted(request)
        self._log(request, 'submit', actor)
        return request

    def owner_approve(self, record_id: int, actor: Actor, notes: Optional[str] = None) -> BorrowRequest:
        """Approve directly at the owner stage and issue the letter."""
        with self._transaction('Approve request'):
            request = self._load(record_id)
            if request.status == RequestStatus.APPROVED:
                self.gate.require(actor, Action.OWNER_REVIEW, request=request)
                return request
            request = self._begin(actor, record_id, Event.DIRECT_APPROVE)
            self.ledger.ensure_capacity(request.items)
            now = utcnow()
            request.status = RequestStatus.APPROVED
            request.owner_reviewed_by = actor.user_id
            request.owner_reviewed_at = now
            request.owner_notes = (notes or '').strip() or None
            self.letters.issue(request, now)
            self.ledger.refresh_cache(line.item for line in request.items)
            self.notifier.request_approved(request)
        self._log(request, Event.DIRECT_APPROVE, actor)
        return request

    def escalate(self, record_id: int, actor: Actor, notes: Optional[str] = None) -> BorrowRequest:
        with self._transaction('Forward request'):
            request = self._begin(actor, record_id, Event.ESCALATE)
            request.status = RequestStatus.PENDING_HEADMASTER
            request.owner_reviewed_by = actor.user_id
            request.owner_reviewed_at = utcnow()
            request.owner_notes = (notes or '').strip() or None
            self.notifier.request_escalated(request)
        self._log(request, Event.ESCALATE, actor)
        return request

    def owner_reject(self, record_id: int, actor: Actor, reason: str, notes: Optional[str] = None) -> BorrowRequest:
        with self._transaction('Reject request'):
            request = self._begin(actor, record_id, Event.OWNER_REJECT)
            reason = _required_text(reason, 'rejection_reason', 'Rejection reason')
            request.status = RequestStatus.REJECTED
            request.rejection_reason = reason
            request.owner_reviewed_by = actor.user_id
            request.owner_reviewed_at = utcnow()
            request.owner_notes = (notes or '').strip() or None
            self.notifier.request_rejected(request)
        self._log(request, Event.OWNER_REJECT, actor)
        return request

    def headmaster_approve(self, record_id: int, actor: Actor, notes: Optional[str] = None) -> BorrowRequest:
        with self._transaction('Approve request'):
            request = self._load(record_id)
            if request.status == RequestStatus.APPROVED:
                self.gate.require(actor, Action.HEADMASTER_REVIEW, request=request)
                return request
            request = self._begin(actor, record_id, Event.HEADMASTER_APPROVE)
            self.ledger.ensure_capacity(request.items)
            now = utcnow()
            request.status = RequestStatus.APPROVED
            request.headmaster_approved_by = actor.user_id
            request.headmaster_approved_at = now
            request.headmaster_notes = (notes or '').strip() or None
            self.letters.issue(request, now)
            self.ledger.refresh_cache(line.item for line in request.items)
            self.notifier.request_approved(request)
        self._log(request, Event.HEADMASTER_APPROVE, actor)
        return request

    def headmaster_reject(self, record_id: int, actor: Actor, reason: str) -> BorrowRequest:
        with self._transaction('Reject request'):
            request = self._begin(actor, record_id, Event.HEADMASTER_REJECT)
            reason = _required_text(reason, 'rejection_reason', 'Rejection reason')
            request.status = RequestStatus.REJECTED
            request.rejection_reason = reason
            request.headmaster_approved_by = actor.user_id
            request.headmaster_approved_at = utcnow()
            request.headmaster_notes = reason
            self.notifier.request_rejected(request)
        self._log(request, Event.HEADMASTER_REJECT, actor)
        return request

    def start_loan(self, record_id: int, actor: Actor, conditions: Optional[Mapping] = None) -> BorrowRequest:
        """Hand the items over; ``conditions`` maps item ids to their state at handover."""
        with self._transaction('Start loan'):
            request = self._begin(actor, record_id, Event.START_LOAN)
            self.ledger.ensure_capacity(request.items, exclude_request_id=request.id)
            _apply_conditions(request, conditions, 'condition_on_borrow')
            request.status = RequestStatus.ACTIVE
            request.started_at = utcnow()
            self.ledger.mark_borrowed(request)
            self.notifier.loan_started(request)
        self._log(request, Event.START_LOAN, actor)
        return request

    def complete_loan(self, record_id: int, actor: Actor, conditions: Optional[Mapping] = None) -> BorrowRequest:
        with self._transaction('Complete loan'):
            request = self._begin(actor, record_id, Event.COMPLETE_LOAN)
            _apply_conditions(request, conditions, 'condition_on_return')
            request.status = RequestStatus.COMPLETED
            request.completed_at = utcnow()
            self.ledger.mark_returned(request)
            self.notifier.loan_completed(request)
        self._log(request, Event.COMPLETE_LOAN, actor)
        return request

    def cancel(self, record_id: int, actor: Actor) -> BorrowRequest:
        with self._transaction('Cancel request'):
            request = self._begin(actor, record_id, Event.CANCEL)
            request.status = RequestStatus.CANCELLED
            self.notifier.request_cancelled(request)
        self._log(request, Event.CANCEL, actor)
        return request

    def available_actions(self, actor: Actor, request: BorrowRequest) -> List[str]:
        actions = []
        for event, (sources, _target, action) in TRANSITIONS.items():
            if request.status in sources and self.gate.allows(actor, action, request=request):
                actions.append(event)
        return actions

    # Queries

    def get_request(self, record_id: int, actor: Actor) -> BorrowRequest:
        request = self._load(record_id)
        self.gate.require(actor, Action.VIEW_REQUEST, request=request)
        return request

    def letter_snapshot(self, record_id: int, actor: Actor):
        return self.letters.snapshot(self.get_request(record_id, actor))

    def verify_letter(self, record_id: int) -> dict:
        return self.letters.verify(self._load(record_id))

    def _scoped(self, query, actor: Actor):
        scope = self.gate.owner_scope(actor)
        if scope is None:
            return query
        return (
            query.join(RequestItem, RequestItem.request_id == BorrowRequest.id)
            .join(Item, RequestItem.item_id == Item.id)
            .filter(Item.department_id.in_(list(scope)))
            .distinct()
        )

    def owner_inbox(self, actor: Actor) -> List[BorrowRequest]:
        if not (actor.is_admin or actor.is_owner):
            raise AuthorizationError()
        query = BorrowRequest.query.filter(BorrowRequest.status == RequestStatus.PENDING_OWNER)
        return self._scoped(query, actor).order_by(BorrowRequest.created_at.desc(), BorrowRequest.id.desc()).all()

    def headmaster_inbox(self, actor: Actor) -> List[BorrowRequest]:
        self.gate.require(actor, Action.HEADMASTER_REVIEW)
        return (
            BorrowRequest.query.filter_by(status=RequestStatus.PENDING_HEADMASTER)
            .order_by(BorrowRequest.created_at.desc(), BorrowRequest.id.desc())
            .all()
        )

    def my_requests(self, actor: Actor, status: Optional[str] = None) -> List[BorrowRequest]:
        if not actor.is_authenticated:
            raise AuthorizationError()
        query = BorrowRequest.query.filter_by(borrower_id=actor.user_id)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(BorrowRequest.created_at.desc(), BorrowRequest.id.desc()).all()

    def active_loans(self, actor: Actor) -> List[BorrowRequest]:
        if not actor.is_authenticated:
            raise AuthorizationError()
        query = BorrowRequest.query.filter(BorrowRequest.status.in_(RequestStatus.RESERVING))
        if not actor.is_admin:
            if actor.is_owner:
                query = self._scoped(query, actor)
            else:
                query = query.filter(BorrowRequest.borrower_id == actor.user_id)
        return query.order_by(BorrowRequest.start_date, BorrowRequest.id).all()

    def review_history(self, actor: Actor) -> List[BorrowRequest]:
        if not (actor.is_admin or actor.is_owner or actor.is_headmaster):
            raise AuthorizationError()
        query = BorrowRequest.query.filter(
            BorrowRequest.status.in_(RequestStatus.LETTERED + (RequestStatus.REJECTED,))
        )
        if not actor.is_admin:
            query = query.filter(
                or_(
                    BorrowRequest.owner_reviewed_by == actor.user_id,
                    BorrowRequest.headmaster_approved_by == actor.user_id,
                )
            )
        return query.order_by(BorrowRequest.updated_at.desc(), BorrowRequest.id.desc()).limit(200).all()
