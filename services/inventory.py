"""Inventory ledger: derived availability and item status fan-out."""
from __future__ import annotations

from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import func

from models import BorrowRequest, Item, ItemStatus, RequestItem, RequestStatus, db
from services.errors import CapacityError, Shortfall

AVAILABLE = 'available'
LIMITED = 'limited'
UNAVAILABLE = 'unavailable'


class InventoryLedger:
    """Computes availability as total stock minus what approved/active requests hold.

    Availability is never read back from ``Item.available_quantity``; that
    column is a cache this class rewrites after every change.
    """

    def __init__(self, limited_threshold: int = 3):
        self.limited_threshold = limited_threshold

    def reserved_quantities(
        self,
        item_ids: Optional[Iterable[int]] = None,
        exclude_request_id: Optional[int] = None,
    ) -> Dict[int, int]:
        query = (
            db.session.query(RequestItem.item_id, func.sum(RequestItem.quantity))
            .join(BorrowRequest, RequestItem.request_id == BorrowRequest.id)
            .filter(BorrowRequest.status.in_(RequestStatus.RESERVING))
        )
        if item_ids is not None:
            item_ids = list(item_ids)
            if not item_ids:
                return {}
            query = query.filter(RequestItem.item_id.in_(item_ids))
        if exclude_request_id is not None:
            query = query.filter(BorrowRequest.id != exclude_request_id)
        rows = query.group_by(RequestItem.item_id).all()
        return {item_id: int(total or 0) for item_id, total in rows}

    def compute_availability(self, item: Item, reserved: Optional[int] = None) -> int:
        if reserved is None:
            reserved = self.reserved_quantities([item.id]).get(item.id, 0)
        available = item.total_quantity - reserved
        if available < 0:
            current_app.logger.warning(
                'Item %s (%s) has total quantity %s below committed reservations %s',
                item.id, item.name, item.total_quantity, reserved,
            )
            return 0
        return available

    def availability_map(self, items: Iterable[Item]) -> Dict[int, int]:
        items = list(items)
        reserved = self.reserved_quantities([item.id for item in items])
        return {item.id: self.compute_availability(item, reserved.get(item.id, 0)) for item in items}

    def availability_label(self, available: int) -> str:
        if available <= 0:
            return UNAVAILABLE
        if available < self.limited_threshold:
            return LIMITED
        return AVAILABLE

    def describe(self, item: Item, available: Optional[int] = None) -> dict:
        if available is None:
            available = self.compute_availability(item)
        data = item.to_dict()
        data['available_quantity'] = available
        data['availability'] = self.availability_label(available)
        return data

    def ensure_capacity(self, lines: Iterable[RequestItem], exclude_request_id: Optional[int] = None) -> None:
        """Re-derive availability for the requested lines and raise if any falls short.

        ``exclude_request_id`` leaves the request's own reservation out of the
        sum, for requests that already hold stock (starting an approved loan).

        The involved item rows are locked first (ordered by id) so concurrent
        approvals touching the same items run one after another on databases
        with row locks.
        """
        requested: Dict[int, int] = OrderedDict()
        for line in lines:
            requested[line.item_id] = requested.get(line.item_id, 0) + line.quantity
        if not requested:
            return
        items = (
            db.session.query(Item)
            .filter(Item.id.in_(list(requested)))
            .order_by(Item.id)
            .populate_existing()
            .with_for_update()
            .all()
        )
        reserved = self.reserved_quantities(list(requested), exclude_request_id)
        shortfalls: List[Shortfall] = []
        for item in items:
            available = self.compute_availability(item, reserved.get(item.id, 0))
            if requested[item.id] > available:
                shortfalls.append(Shortfall(item.id, item.name, requested[item.id], available))
        if shortfalls:
            raise CapacityError(shortfalls)

    def refresh_cache(self, items: Iterable[Item]) -> None:
        items = list(items)
        available = self.availability_map(items)
        for item in items:
            item.available_quantity = available[item.id]

    def mark_borrowed(self, request: BorrowRequest) -> None:
        for line in request.items:
            line.item.status = ItemStatus.BORROWED
        self.refresh_cache(line.item for line in request.items)

    def mark_returned(self, request: BorrowRequest) -> None:
        item_ids = [line.item_id for line in request.items]
        still_out = {
            item_id
            for (item_id,) in db.session.query(RequestItem.item_id)
            .join(BorrowRequest, RequestItem.request_id == BorrowRequest.id)
            .filter(
                BorrowRequest.status == RequestStatus.ACTIVE,
                BorrowRequest.id != request.id,
                RequestItem.item_id.in_(item_ids),
            )
            .distinct()
        }
        for line in request.items:
            line.item.status = ItemStatus.BORROWED if line.item_id in still_out else ItemStatus.AVAILABLE
        self.refresh_cache(line.item for line in request.items)
