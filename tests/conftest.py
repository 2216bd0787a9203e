import datetime
from types import SimpleNamespace

import pytest

from app import create_app
from models import Department, Item, Role, RoleAssignment, User, db
from services.authorization import resolve_actor


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions['borrow_service']


@pytest.fixture
def ledger(service):
    return service.ledger


def _user(username, full_name, *roles):
    user = User(username=username, password_hash='hash', full_name=full_name)
    for role, department in roles:
        user.role_assignments.append(RoleAssignment(role=role, department=department))
    db.session.add(user)
    return user


@pytest.fixture
def school(app):
    """Two departments, one item each, and one user per role."""
    science = Department(name='Science Lab')
    sports = Department(name='Sports')
    projector = Item(name='Projector', code='SCI-001', department=science, total_quantity=5, available_quantity=5)
    ball = Item(name='Football', code='SPO-001', department=sports, total_quantity=10, available_quantity=10)
    db.session.add_all([science, sports, projector, ball])

    admin = _user('admin', 'Admin', (Role.ADMIN, None))
    science_owner = _user('sci_owner', 'Science Owner', (Role.OWNER, science), (Role.BORROWER, None))
    sports_owner = _user('sports_owner', 'Sports Owner', (Role.OWNER, sports), (Role.BORROWER, None))
    headmaster = _user('headmaster', 'Headmaster', (Role.HEADMASTER, None))
    alice = _user('alice', 'Alice', (Role.BORROWER, None))
    bob = _user('bob', 'Bob', (Role.BORROWER, None))
    db.session.commit()

    return SimpleNamespace(
        science_id=science.id,
        sports_id=sports.id,
        projector_id=projector.id,
        ball_id=ball.id,
        admin_id=admin.id,
        science_owner_id=science_owner.id,
        sports_owner_id=sports_owner.id,
        headmaster_id=headmaster.id,
        alice_id=alice.id,
        bob_id=bob.id,
    )


@pytest.fixture
def actor(app):
    def build(user_id):
        return resolve_actor(db.session.get(User, user_id))

    return build


@pytest.fixture
def submit(service, actor):
    def create(user_id, *lines, **overrides):
        start = datetime.date(2026, 11, 2)
        fields = {
            'purpose': 'Physics class demonstration',
            'start_date': start,
            'end_date': start + datetime.timedelta(days=3),
            'pic_name': 'Mr. Hadi',
            'pic_contact': '0812-555-0101',
            'location_usage': 'Room 3B',
            'lines': [{'item_id': item_id, 'quantity': quantity} for item_id, quantity in lines],
        }
        fields.update(overrides)
        return service.submit(actor=actor(user_id), **fields).id

    return create


@pytest.fixture
def login(client):
    def as_user(user_id):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id

    return as_user
