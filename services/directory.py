"""Users, departments, categories and role assignments."""
from __future__ import annotations

from typing import List, Optional

from flask import current_app
from werkzeug.security import generate_password_hash

from models import Category, Department, Item, Role, RoleAssignment, User, db
from services.authorization import Action, Actor, AuthorizationGate
from services.base import TransactionalService
from services.errors import NotFoundError, ReferentialIntegrityError, ValidationError


def _name(value, field: str = 'name') -> str:
    name = (value or '').strip()
    if not name:
        raise ValidationError('Name is required.', field=field)
    return name


class DirectoryService(TransactionalService):
    def __init__(self, gate: Optional[AuthorizationGate] = None):
        self.gate = gate or AuthorizationGate()

    def _admin(self, actor: Actor) -> None:
        self.gate.require(actor, Action.MANAGE_DIRECTORY)

    # Users

    def register(
        self,
        *,
        username: str,
        password: str,
        full_name: Optional[str] = None,
        unit: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        """Create an account holding the borrower role."""
        username = (username or '').strip()
        if not username:
            raise ValidationError('Username is required.', field='username')
        if not password:
            raise ValidationError('Password is required.', field='password')
        with self._transaction('Register user'):
            if User.query.filter_by(username=username).first():
                raise ValidationError('Username is already taken.', field='username')
            user = User(
                username=username,
                password_hash=generate_password_hash(password),
                full_name=full_name,
                unit=unit,
                phone=phone,
            )
            user.role_assignments.append(RoleAssignment(role=Role.BORROWER))
            db.session.add(user)
        return user

    def list_users(self, actor: Actor, q: Optional[str] = None) -> List[User]:
        self._admin(actor)
        query = User.query
        if q:
            query = query.filter(User.username.ilike(f'%{q}%') | User.full_name.ilike(f'%{q}%'))
        return query.order_by(User.username).all()

    def grant_role(self, actor: Actor, user_id: int, role: str, department_id: Optional[int] = None) -> RoleAssignment:
        self._admin(actor)
        if role not in Role.ALL:
            raise ValidationError('Unknown role.', field='role')
        if role == Role.OWNER and department_id is None:
            raise ValidationError('Owner assignments need a department.', field='department_id')
        if role != Role.OWNER:
            department_id = None
        with self._transaction('Grant role'):
            user = db.session.get(User, user_id)
            if not user:
                raise NotFoundError('User not found.')
            if department_id is not None and not db.session.get(Department, department_id):
                raise ValidationError('Department does not exist.', field='department_id')
            assignment = RoleAssignment.query.filter_by(user_id=user.id, role=role, department_id=department_id).first()
            if assignment is None:
                assignment = RoleAssignment(user=user, role=role, department_id=department_id)
                db.session.add(assignment)
        current_app.logger.info('Role %s (department %s) granted to user %s', role, department_id, user_id)
        return assignment

    def revoke_role(self, actor: Actor, assignment_id: int) -> None:
        self._admin(actor)
        with self._transaction('Revoke role'):
            assignment = db.session.get(RoleAssignment, assignment_id)
            if not assignment:
                raise NotFoundError('Role assignment not found.')
            db.session.delete(assignment)
        current_app.logger.info('Role assignment %s revoked', assignment_id)

    # Departments

    def list_departments(self) -> List[Department]:
        return Department.query.order_by(Department.name).all()

    def create_department(self, actor: Actor, *, name: str, description=None, contact_person=None) -> Department:
        self._admin(actor)
        name = _name(name)
        with self._transaction('Create department'):
            if Department.query.filter_by(name=name).first():
                raise ValidationError('A department with this name already exists.', field='name')
            department = Department(name=name, description=description, contact_person=contact_person)
            db.session.add(department)
        return department

    def update_department(self, actor: Actor, department_id: int, changes: dict) -> Department:
        self._admin(actor)
        with self._transaction('Update department'):
            department = db.session.get(Department, department_id)
            if not department:
                raise NotFoundError('Department not found.')
            if 'name' in changes:
                department.name = _name(changes['name'])
            if 'description' in changes:
                department.description = changes['description']
            if 'contact_person' in changes:
                department.contact_person = changes['contact_person']
        return department

    def delete_department(self, actor: Actor, department_id: int) -> None:
        self._admin(actor)
        with self._transaction('Delete department'):
            department = db.session.get(Department, department_id)
            if not department:
                raise NotFoundError('Department not found.')
            if Item.query.filter_by(department_id=department.id).count():
                raise ReferentialIntegrityError('Move or delete the items of this department first.')
            RoleAssignment.query.filter_by(department_id=department.id).delete()
            db.session.delete(department)

    # Categories

    def list_categories(self) -> List[Category]:
        return Category.query.order_by(Category.name).all()

    def create_category(self, actor: Actor, *, name: str, description=None) -> Category:
        self._admin(actor)
        name = _name(name)
        with self._transaction('Create category'):
            if Category.query.filter_by(name=name).first():
                raise ValidationError('A category with this name already exists.', field='name')
            category = Category(name=name, description=description)
            db.session.add(category)
        return category

    def delete_category(self, actor: Actor, category_id: int) -> None:
        self._admin(actor)
        with self._transaction('Delete category'):
            category = db.session.get(Category, category_id)
            if not category:
                raise NotFoundError('Category not found.')
            Item.query.filter_by(category_id=category.id).update({'category_id': None})
            db.session.delete(category)
