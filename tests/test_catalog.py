import pytest
from werkzeug.security import check_password_hash

from models import Category, Department, Item, Role, RoleAssignment, db
from services.errors import AuthorizationError, NotFoundError, ReferentialIntegrityError, ValidationError


@pytest.fixture
def items(app):
    return app.extensions['item_service']


@pytest.fixture
def directory(app):
    return app.extensions['directory_service']


def test_owner_creates_item_in_own_department(school, items, actor):
    item = items.create(actor(school.science_owner_id), name=' Microscope ', department_id=school.science_id, total_quantity='4')
    assert item.name == 'Microscope'
    assert item.total_quantity == 4
    assert item.available_quantity == 4

    with pytest.raises(AuthorizationError):
        items.create(actor(school.science_owner_id), name='Net', department_id=school.sports_id)
    with pytest.raises(AuthorizationError):
        items.create(actor(school.alice_id), name='Net', department_id=school.sports_id)


@pytest.mark.parametrize(
    'fields, field',
    [
        ({'name': ''}, 'name'),
        ({'total_quantity': -1}, 'total_quantity'),
        ({'total_quantity': 'many'}, 'total_quantity'),
        ({'category_id': 999}, 'category_id'),
    ],
)
def test_item_validation(school, items, actor, fields, field):
    kwargs = {'name': 'Microscope', 'department_id': school.science_id}
    kwargs.update(fields)
    with pytest.raises(ValidationError) as excinfo:
        items.create(actor(school.admin_id), **kwargs)
    assert excinfo.value.field == field


def test_update_refreshes_cached_availability(school, service, items, actor, submit):
    record_id = submit(school.alice_id, (school.projector_id, 2))
    service.owner_approve(record_id, actor(school.science_owner_id))

    item = items.update(actor(school.science_owner_id), school.projector_id, {'total_quantity': 8, 'location': ' Lab 2 '})
    assert item.location == 'Lab 2'
    assert item.available_quantity == 6

    with pytest.raises(ValidationError):
        items.update(actor(school.science_owner_id), school.projector_id, {'available_quantity': 99})
    with pytest.raises(ValidationError):
        items.update(actor(school.science_owner_id), school.projector_id, {'status': 'vanished'})


def test_moving_item_needs_both_departments(school, items, actor):
    with pytest.raises(AuthorizationError):
        items.update(actor(school.science_owner_id), school.projector_id, {'department_id': school.sports_id})
    item = items.update(actor(school.admin_id), school.projector_id, {'department_id': school.sports_id})
    assert item.department_id == school.sports_id


def test_delete_unreferenced_item(school, items, actor):
    items.delete(actor(school.sports_owner_id), school.ball_id)
    assert db.session.get(Item, school.ball_id) is None
    with pytest.raises(NotFoundError):
        items.get(school.ball_id)


def test_delete_item_with_open_request(school, items, actor, submit):
    submit(school.alice_id, (school.projector_id, 1))
    with pytest.raises(ReferentialIntegrityError) as excinfo:
        items.delete(actor(school.science_owner_id), school.projector_id)
    assert 'cancel or complete' in str(excinfo.value)
    assert excinfo.value.status_code == 409
    assert db.session.get(Item, school.projector_id) is not None


def test_delete_item_with_past_request(school, service, items, actor, submit):
    record_id = submit(school.alice_id, (school.projector_id, 1))
    service.cancel(record_id, actor(school.alice_id))
    with pytest.raises(ReferentialIntegrityError) as excinfo:
        items.delete(actor(school.science_owner_id), school.projector_id)
    assert 'lost or damaged' in str(excinfo.value)


def test_board_filters(school, items):
    assert [entry['name'] for entry in items.board()] == ['Football', 'Projector']
    assert [entry['name'] for entry in items.board(q='proj')] == ['Projector']
    assert [entry['name'] for entry in items.board(q='SPO-')] == ['Football']
    assert [entry['name'] for entry in items.board(department_id=school.sports_id)] == ['Football']
    assert items.board(category_id=999) == []


def test_register_creates_borrower(app, directory):
    user = directory.register(username=' carol ', password='s3cret', full_name='Carol', unit='7A')
    assert user.username == 'carol'
    assert check_password_hash(user.password_hash, 's3cret')
    assert [a.role for a in user.role_assignments] == [Role.BORROWER]

    with pytest.raises(ValidationError) as excinfo:
        directory.register(username='carol', password='other')
    assert excinfo.value.field == 'username'
    with pytest.raises(ValidationError):
        directory.register(username='dave', password='')


def test_grant_and_revoke_roles(school, directory, actor):
    admin = actor(school.admin_id)
    with pytest.raises(ValidationError):
        directory.grant_role(admin, school.alice_id, Role.OWNER)
    with pytest.raises(ValidationError):
        directory.grant_role(admin, school.alice_id, 'janitor')
    with pytest.raises(AuthorizationError):
        directory.grant_role(actor(school.science_owner_id), school.alice_id, Role.HEADMASTER)

    assignment = directory.grant_role(admin, school.alice_id, Role.OWNER, department_id=school.sports_id)
    again = directory.grant_role(admin, school.alice_id, Role.OWNER, department_id=school.sports_id)
    assert again.id == assignment.id
    assert actor(school.alice_id).owner_departments == frozenset({school.sports_id})

    directory.revoke_role(admin, assignment.id)
    assert not actor(school.alice_id).is_owner
    with pytest.raises(NotFoundError):
        directory.revoke_role(admin, assignment.id)


def test_second_owner_for_department(school, service, directory, actor, submit):
    directory.grant_role(actor(school.admin_id), school.bob_id, Role.OWNER, department_id=school.science_id)
    record_id = submit(school.alice_id, (school.projector_id, 1))
    record = service.owner_approve(record_id, actor(school.bob_id))
    assert record.owner_reviewed_by == school.bob_id


def test_department_lifecycle(school, directory, actor):
    admin = actor(school.admin_id)
    department = directory.create_department(admin, name='Library', contact_person='Mrs. Sari')
    with pytest.raises(ValidationError):
        directory.create_department(admin, name='Library')
    with pytest.raises(AuthorizationError):
        directory.create_department(actor(school.science_owner_id), name='Music')

    department = directory.update_department(admin, department.id, {'description': 'Books and readers'})
    assert department.description == 'Books and readers'

    with pytest.raises(ReferentialIntegrityError):
        directory.delete_department(admin, school.science_id)

    directory.grant_role(admin, school.alice_id, Role.OWNER, department_id=department.id)
    directory.delete_department(admin, department.id)
    assert db.session.get(Department, department.id) is None
    assert RoleAssignment.query.filter_by(user_id=school.alice_id, role=Role.OWNER).count() == 0


def test_delete_category_detaches_items(school, items, directory, actor):
    admin = actor(school.admin_id)
    category = directory.create_category(admin, name='Optics')
    items.update(admin, school.projector_id, {'category_id': category.id})
    assert [entry['name'] for entry in items.board(category_id=category.id)] == ['Projector']

    directory.delete_category(admin, category.id)
    assert db.session.get(Category, category.id) is None
    assert db.session.get(Item, school.projector_id).category_id is None


def test_update_accepts_ids_sent_as_text(school, items, directory, actor):
    item = items.update(
        actor(school.science_owner_id),
        school.projector_id,
        {'department_id': str(school.science_id), 'name': 'Proj'},
    )
    assert item.name == 'Proj'
    assert item.department_id == school.science_id

    category = directory.create_category(actor(school.admin_id), name='Optics')
    item = items.update(actor(school.admin_id), school.projector_id, {'category_id': str(category.id)})
    assert item.category_id == category.id
    assert isinstance(item.category_id, int)

    item = items.update(actor(school.admin_id), school.projector_id, {'category_id': ''})
    assert item.category_id is None

    with pytest.raises(AuthorizationError):
        items.update(actor(school.science_owner_id), school.projector_id, {'department_id': str(school.sports_id)})
    with pytest.raises(ValidationError) as excinfo:
        items.update(actor(school.admin_id), school.projector_id, {'department_id': 'science'})
    assert excinfo.value.field == 'department_id'
