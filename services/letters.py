"""Letter number issuance and the approved-request snapshot handed to the renderer."""
from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass
from typing import Optional, Tuple

from models import BorrowRequest, LetterSequence, RequestStatus, db, utcnow
from services.errors import StateTransitionError


@dataclass(frozen=True)
class LetterLine:
    item_name: str
    item_code: Optional[str]
    quantity: int
    notes: Optional[str]


@dataclass(frozen=True)
class LetterSnapshot:
    request_id: int
    letter_number: str
    letter_generated_at: Optional[str]
    status: str
    purpose: str
    start_date: str
    end_date: str
    location_usage: Optional[str]
    pic_name: str
    pic_contact: str
    borrower_name: Optional[str]
    borrower_unit: Optional[str]
    owner_reviewer_name: Optional[str]
    headmaster_name: Optional[str]
    lines: Tuple[LetterLine, ...]

    def to_dict(self) -> dict:
        data = asdict(self)
        data['lines'] = [asdict(line) for line in self.lines]
        return data


class LetterIssuer:
    """Issues ``NNN/<code>/MM/YYYY`` reference numbers.

    The sequence restarts every month and is taken from a counter row locked
    for the duration of the approving transaction.
    """

    def __init__(self, code: str = 'IG'):
        self.code = code

    def format(self, sequence: int, when: datetime.datetime) -> str:
        return f'{sequence:03d}/{self.code}/{when.month:02d}/{when.year}'

    def issue(self, request: BorrowRequest, now: Optional[datetime.datetime] = None) -> str:
        if request.letter_number:
            return request.letter_number
        now = now or utcnow()
        sequence = self._next_sequence(now.year, now.month)
        request.letter_number = self.format(sequence, now)
        request.letter_generated_at = now
        return request.letter_number

    def _next_sequence(self, year: int, month: int) -> int:
        counter = (
            LetterSequence.query.filter_by(year=year, month=month)
            .with_for_update()
            .first()
        )
        if counter is None:
            counter = LetterSequence(year=year, month=month, last_value=0)
            db.session.add(counter)
        counter.last_value += 1
        db.session.flush()
        return counter.last_value

    def snapshot(self, request: BorrowRequest) -> LetterSnapshot:
        if not request.letter_number or request.status not in RequestStatus.LETTERED:
            raise StateTransitionError('No letter has been issued for this request yet.', status=request.status)
        borrower = request.borrower
        return LetterSnapshot(
            request_id=request.id,
            letter_number=request.letter_number,
            letter_generated_at=request.letter_generated_at.isoformat() if request.letter_generated_at else None,
            status=request.status,
            purpose=request.purpose,
            start_date=request.start_date.isoformat(),
            end_date=request.end_date.isoformat(),
            location_usage=request.location_usage,
            pic_name=request.pic_name,
            pic_contact=request.pic_contact,
            borrower_name=borrower.display_name if borrower else None,
            borrower_unit=borrower.unit if borrower else None,
            owner_reviewer_name=request.owner_reviewer.display_name if request.owner_reviewer else None,
            headmaster_name=request.headmaster_approver.display_name if request.headmaster_approver else None,
            lines=tuple(
                LetterLine(
                    item_name=line.item.name,
                    item_code=line.item.code,
                    quantity=line.quantity,
                    notes=line.notes,
                )
                for line in request.items
            ),
        )

    def verify(self, request: BorrowRequest) -> dict:
        """Public validity check for a printed letter."""
        if request.status in RequestStatus.LETTERED:
            validity = 'valid'
        elif request.status in (RequestStatus.REJECTED, RequestStatus.CANCELLED):
            validity = 'invalid'
        else:
            validity = 'in_progress'
        return {
            'request_id': request.id,
            'validity': validity,
            'status': request.status,
            'letter_number': request.letter_number,
            'letter_generated_at': request.letter_generated_at.isoformat() if request.letter_generated_at else None,
            'start_date': request.start_date.isoformat(),
            'end_date': request.end_date.isoformat(),
        }
