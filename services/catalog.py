"""Item management and the public inventory board."""
from __future__ import annotations

from typing import List, Optional

from flask import current_app

from models import BorrowRequest, Category, Department, Item, ItemStatus, RequestItem, RequestStatus, db
from services.authorization import Action, Actor, AuthorizationGate
from services.base import TransactionalService
from services.errors import NotFoundError, ReferentialIntegrityError, ValidationError
from services.inventory import InventoryLedger

EDITABLE_FIELDS = ('name', 'code', 'description', 'location', 'department_id', 'category_id', 'total_quantity', 'status')


def _parse_total(value) -> int:
    if isinstance(value, bool):
        raise ValidationError('Total quantity must be a whole number.', field='total_quantity')
    try:
        total = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError('Total quantity must be a whole number.', field='total_quantity') from exc
    if total < 0:
        raise ValidationError('Total quantity cannot be negative.', field='total_quantity')
    return total


def _parse_reference(value, field: str) -> Optional[int]:
    if value in (None, ''):
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a number.', field=field)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{field} must be a number.', field=field) from exc


class ItemService(TransactionalService):
    def __init__(self, gate: Optional[AuthorizationGate] = None, ledger: Optional[InventoryLedger] = None):
        self.gate = gate or AuthorizationGate()
        self.ledger = ledger or InventoryLedger()

    def board(
        self,
        q: Optional[str] = None,
        department_id: Optional[int] = None,
        category_id: Optional[int] = None,
    ) -> List[dict]:
        """Items with their derived availability; open to everyone."""
        query = Item.query
        if q:
            like_value = f'%{q}%'
            query = query.filter(Item.name.ilike(like_value) | Item.code.ilike(like_value))
        if department_id:
            query = query.filter(Item.department_id == department_id)
        if category_id:
            query = query.filter(Item.category_id == category_id)
        items = query.order_by(Item.name, Item.id).all()
        available = self.ledger.availability_map(items)
        return [self.ledger.describe(item, available[item.id]) for item in items]

    def get(self, item_id: int) -> Item:
        item = db.session.get(Item, item_id)
        if not item:
            raise NotFoundError('Item not found.')
        return item

    def describe(self, item_id: int) -> dict:
        return self.ledger.describe(self.get(item_id))

    def _resolve_references(self, department_id, category_id) -> None:
        if department_id is None or not db.session.get(Department, department_id):
            raise ValidationError('Department does not exist.', field='department_id')
        if category_id is not None and not db.session.get(Category, category_id):
            raise ValidationError('Category does not exist.', field='category_id')

    def create(
        self,
        actor: Actor,
        *,
        name: str,
        department_id: int,
        total_quantity=1,
        code: Optional[str] = None,
        category_id: Optional[int] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Item:
        self.gate.require(actor, Action.MANAGE_ITEMS, department_id=department_id)
        name = (name or '').strip()
        if not name:
            raise ValidationError('Item name is required.', field='name')
        total = _parse_total(total_quantity)
        with self._transaction('Create item'):
            self._resolve_references(department_id, category_id)
            item = Item(
                name=name,
                code=(code or '').strip() or None,
                department_id=department_id,
                category_id=category_id,
                total_quantity=total,
                available_quantity=total,
                description=description,
                location=location,
                status=ItemStatus.AVAILABLE,
            )
            db.session.add(item)
        current_app.logger.info('Item %s created in department %s by user %s', item.id, department_id, actor.user_id)
        return item

    def update(self, actor: Actor, item_id: int, changes: dict) -> Item:
        item = self.get(item_id)
        self.gate.require(actor, Action.MANAGE_ITEMS, department_id=item.department_id)
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f'Field {sorted(unknown)[0]} cannot be changed.', field=sorted(unknown)[0])
        changes = dict(changes)
        for field_name in ('department_id', 'category_id'):
            if field_name in changes:
                changes[field_name] = _parse_reference(changes[field_name], field_name)
        if 'department_id' in changes and changes['department_id'] != item.department_id:
            self.gate.require(actor, Action.MANAGE_ITEMS, department_id=changes['department_id'])
        if 'name' in changes and not str(changes['name'] or '').strip():
            raise ValidationError('Item name is required.', field='name')
        if 'total_quantity' in changes:
            changes['total_quantity'] = _parse_total(changes['total_quantity'])
        if 'status' in changes and changes['status'] not in ItemStatus.ALL:
            raise ValidationError('Unknown item status.', field='status')
        with self._transaction('Update item'):
            self._resolve_references(
                changes.get('department_id', item.department_id),
                changes.get('category_id', item.category_id),
            )
            for field_name, value in changes.items():
                setattr(item, field_name, value.strip() if isinstance(value, str) else value)
            db.session.flush()
            self.ledger.refresh_cache([item])
        return item

    def delete(self, actor: Actor, item_id: int) -> None:
        item = self.get(item_id)
        self.gate.require(actor, Action.MANAGE_ITEMS, department_id=item.department_id)
        with self._transaction('Delete item'):
            references = RequestItem.query.filter_by(item_id=item.id).count()
            if references:
                open_references = (
                    RequestItem.query.join(BorrowRequest, RequestItem.request_id == BorrowRequest.id)
                    .filter(RequestItem.item_id == item.id, BorrowRequest.status.notin_(RequestStatus.TERMINAL))
                    .count()
                )
                if open_references:
                    guidance = 'cancel or complete the open requests that reference it first.'
                else:
                    guidance = 'past requests still reference it; mark it lost or damaged instead.'
                raise ReferentialIntegrityError(f'{item.name} cannot be deleted: {guidance}')
            db.session.delete(item)
        current_app.logger.info('Item %s deleted by user %s', item_id, actor.user_id)
