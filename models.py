import datetime
from datetime import timezone
from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance (initialized by app)
db = SQLAlchemy()


def utcnow():
    return datetime.datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class RequestStatus:
    DRAFT = 'draft'
    PENDING_OWNER = 'pending_owner'
    PENDING_HEADMASTER = 'pending_headmaster'
    APPROVED = 'approved'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'

    ALL = (DRAFT, PENDING_OWNER, PENDING_HEADMASTER, APPROVED, ACTIVE, COMPLETED, REJECTED, CANCELLED)
    PENDING = (PENDING_OWNER, PENDING_HEADMASTER)
    # Requests in these states hold stock out of the available pool.
    RESERVING = (APPROVED, ACTIVE)
    # Requests in these states must carry a letter number.
    LETTERED = (APPROVED, ACTIVE, COMPLETED)
    TERMINAL = (COMPLETED, REJECTED, CANCELLED)


class ItemStatus:
    AVAILABLE = 'available'
    RESERVED = 'reserved'
    BORROWED = 'borrowed'
    MAINTENANCE = 'maintenance'
    DAMAGED = 'damaged'
    LOST = 'lost'

    ALL = (AVAILABLE, RESERVED, BORROWED, MAINTENANCE, DAMAGED, LOST)


class Role:
    ADMIN = 'admin'
    OWNER = 'owner'
    HEADMASTER = 'headmaster'
    BORROWER = 'borrower'

    ALL = (ADMIN, OWNER, HEADMASTER, BORROWER)


class Department(db.Model):
    __tablename__ = 'department'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    contact_person = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'contact_person': self.contact_person,
        }


class Category(db.Model):
    __tablename__ = 'category'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'description': self.description}


class User(db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(120), nullable=True)
    # school unit / homeroom the user belongs to
    unit = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def display_name(self):
        return self.full_name or self.username

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'unit': self.unit,
            'phone': self.phone,
            'roles': [assignment.to_dict() for assignment in self.role_assignments],
        }


class RoleAssignment(db.Model):
    __tablename__ = 'role_assignment'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    # required when role == 'owner'
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', backref=db.backref('role_assignments', lazy=True, cascade='all, delete-orphan'))
    department = db.relationship('Department', backref=db.backref('role_assignments', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'role': self.role,
            'department_id': self.department_id,
        }


class Item(db.Model):
    __tablename__ = 'item'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(60), nullable=True)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(120), nullable=True)
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=True)
    total_quantity = db.Column(db.Integer, nullable=False, default=1)
    # Cache of the derived availability, written only by InventoryLedger.
    available_quantity = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default=ItemStatus.AVAILABLE)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    department = db.relationship('Department', backref=db.backref('items', lazy=True))
    category = db.relationship('Category', backref=db.backref('items', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'description': self.description,
            'location': self.location,
            'department_id': self.department_id,
            'department_name': self.department.name if self.department else None,
            'category_id': self.category_id,
            'category_name': self.category.name if self.category else None,
            'total_quantity': self.total_quantity,
            'status': self.status,
        }


class BorrowRequest(db.Model):
    __tablename__ = 'borrow_request'
    id = db.Column(db.Integer, primary_key=True)
    borrower_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(30), nullable=False, default=RequestStatus.PENDING_OWNER, index=True)
    purpose = db.Column(db.Text, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    location_usage = db.Column(db.String(200), nullable=True)
    pic_name = db.Column(db.String(120), nullable=False)
    pic_contact = db.Column(db.String(120), nullable=False)

    letter_number = db.Column(db.String(40), unique=True, nullable=True)
    letter_generated_at = db.Column(db.DateTime, nullable=True)

    owner_reviewed_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    owner_reviewed_at = db.Column(db.DateTime, nullable=True)
    owner_notes = db.Column(db.Text, nullable=True)
    headmaster_approved_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    headmaster_approved_at = db.Column(db.DateTime, nullable=True)
    headmaster_notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    borrower = db.relationship('User', foreign_keys=[borrower_id], backref=db.backref('borrow_requests', lazy=True))
    owner_reviewer = db.relationship('User', foreign_keys=[owner_reviewed_by])
    headmaster_approver = db.relationship('User', foreign_keys=[headmaster_approved_by])

    @property
    def department_ids(self):
        return {line.item.department_id for line in self.items if line.item}

    @property
    def total_quantity(self):
        return sum(line.quantity for line in self.items)

    def to_dict(self, include_items=True):
        data = {
            'id': self.id,
            'borrower_id': self.borrower_id,
            'borrower_name': self.borrower.display_name if self.borrower else None,
            'status': self.status,
            'purpose': self.purpose,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'location_usage': self.location_usage,
            'pic_name': self.pic_name,
            'pic_contact': self.pic_contact,
            'letter_number': self.letter_number,
            'letter_generated_at': _iso(self.letter_generated_at),
            'owner_reviewed_by': self.owner_reviewed_by,
            'owner_reviewed_at': _iso(self.owner_reviewed_at),
            'owner_notes': self.owner_notes,
            'headmaster_approved_by': self.headmaster_approved_by,
            'headmaster_approved_at': _iso(self.headmaster_approved_at),
            'headmaster_notes': self.headmaster_notes,
            'rejection_reason': self.rejection_reason,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'created_at': _iso(self.created_at),
        }
        if include_items:
            data['items'] = [line.to_dict() for line in self.items]
        return data


class RequestItem(db.Model):
    __tablename__ = 'request_item'
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey('borrow_request.id'), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey('item.id'), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    condition_on_borrow = db.Column(db.String(120), nullable=True)
    condition_on_return = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    request = db.relationship(
        'BorrowRequest',
        backref=db.backref('items', lazy=True, cascade='all, delete-orphan', order_by='RequestItem.id'),
    )
    item = db.relationship('Item', backref=db.backref('request_items', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'item_id': self.item_id,
            'item_name': self.item.name if self.item else None,
            'item_code': self.item.code if self.item else None,
            'department_id': self.item.department_id if self.item else None,
            'quantity': self.quantity,
            'notes': self.notes,
            'condition_on_borrow': self.condition_on_borrow,
            'condition_on_return': self.condition_on_return,
        }


class LetterSequence(db.Model):
    """Per-month counter backing letter numbers."""
    __tablename__ = 'letter_sequence'
    __table_args__ = (db.UniqueConstraint('year', 'month', name='uq_letter_sequence_period'),)
    id = db.Column(db.Integer, primary_key=True)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)


class Notification(db.Model):
    __tablename__ = 'notification'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    link = db.Column(db.String(255), nullable=True)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', backref=db.backref('notifications', lazy='dynamic', cascade='all, delete-orphan'))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'read': self.read,
            'created_at': _iso(self.created_at),
        }
