from __future__ import annotations

import os

from flask import Flask, jsonify, request
from flask_wtf.csrf import CSRFError, CSRFProtect, generate_csrf

from config import BaseConfig, config_by_name
from models import db
from services.auth import (
    authenticate,
    get_current_actor,
    get_current_user,
    login_required,
    login_user,
    logout_user,
)
from services.authorization import AuthorizationGate
from services.borrowing import BorrowService
from services.catalog import ItemService
from services.directory import DirectoryService
from services.errors import BorrowServiceError, ValidationError
from services.inventory import InventoryLedger
from services.letters import LetterIssuer
from services.notifications import Notifier

csrf = CSRFProtect()


def _load_config(app: Flask, config_name: str | None, test_config: dict | None) -> None:
    resolved_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_cls = config_by_name.get(resolved_name, BaseConfig)
    app.config.from_object(config_cls)
    if test_config:
        app.config.update(test_config)


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object.')
    return data


def _optional_int(value, field: str):
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{field} must be a number.', field=field) from exc


def create_app(config_name: str | None = None, test_config: dict | None = None):
    if isinstance(config_name, dict) and test_config is None:
        test_config = config_name
        config_name = None
    app = Flask(__name__)
    _load_config(app, config_name, test_config)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    db.init_app(app)
    csrf.init_app(app)

    gate = AuthorizationGate()
    ledger = InventoryLedger(limited_threshold=app.config['LIMITED_STOCK_THRESHOLD'])
    letters = LetterIssuer(code=app.config['LETTER_NUMBER_CODE'])
    notifier = Notifier()
    borrow_service = BorrowService(gate=gate, ledger=ledger, letters=letters, notifier=notifier)
    item_service = ItemService(gate=gate, ledger=ledger)
    directory_service = DirectoryService(gate=gate)
    app.extensions['borrow_service'] = borrow_service
    app.extensions['item_service'] = item_service
    app.extensions['directory_service'] = directory_service

    def request_payload(record):
        data = record.to_dict()
        data['available_actions'] = borrow_service.available_actions(get_current_actor(), record)
        return data

    @app.errorhandler(BorrowServiceError)
    def handle_service_error(exc: BorrowServiceError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(CSRFError)
    def handle_csrf_error(exc: CSRFError):
        return jsonify({'error': exc.description}), 400

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('Referrer-Policy', 'no-referrer-when-downgrade')
        response.headers.setdefault('Content-Security-Policy', "default-src 'none'; frame-ancestors 'none'")
        return response

    # Session

    @app.route('/api/csrf-token')
    def csrf_token():
        return jsonify({'csrf_token': generate_csrf()})

    @app.route('/api/register', methods=['POST'])
    def register():
        data = _payload()
        user = directory_service.register(
            username=data.get('username'),
            password=data.get('password'),
            full_name=data.get('full_name'),
            unit=data.get('unit'),
            phone=data.get('phone'),
        )
        login_user(user)
        return jsonify(user.to_dict()), 201

    @app.route('/api/login', methods=['POST'])
    def login():
        data = _payload()
        user = authenticate(data.get('username') or '', data.get('password') or '')
        if not user:
            return jsonify({'error': 'invalid username or password'}), 401
        login_user(user)
        return jsonify(user.to_dict())

    @app.route('/api/logout', methods=['POST'])
    def logout():
        logout_user()
        return jsonify({'ok': True})

    @app.route('/api/me')
    @login_required
    def me():
        user = get_current_user()
        data = user.to_dict()
        data['unread_notifications'] = notifier.unread_count(user.id)
        return jsonify(data)

    # Inventory

    @app.route('/api/board')
    def board():
        items = item_service.board(
            q=(request.args.get('q') or '').strip() or None,
            department_id=_optional_int(request.args.get('department_id'), 'department_id'),
            category_id=_optional_int(request.args.get('category_id'), 'category_id'),
        )
        return jsonify(items)

    @app.route('/api/items/<int:item_id>')
    def item_detail(item_id: int):
        return jsonify(item_service.describe(item_id))

    @app.route('/api/items', methods=['POST'])
    @login_required
    def create_item():
        data = _payload()
        item = item_service.create(
            get_current_actor(),
            name=data.get('name'),
            department_id=_optional_int(data.get('department_id'), 'department_id'),
            total_quantity=data.get('total_quantity', 1),
            code=data.get('code'),
            category_id=_optional_int(data.get('category_id'), 'category_id'),
            description=data.get('description'),
            location=data.get('location'),
        )
        return jsonify(ledger.describe(item)), 201

    @app.route('/api/items/<int:item_id>', methods=['PATCH'])
    @login_required
    def update_item(item_id: int):
        item = item_service.update(get_current_actor(), item_id, _payload())
        return jsonify(ledger.describe(item))

    @app.route('/api/items/<int:item_id>', methods=['DELETE'])
    @login_required
    def delete_item(item_id: int):
        item_service.delete(get_current_actor(), item_id)
        return '', 204

    # Borrow requests

    @app.route('/api/requests', methods=['POST'])
    @login_required
    def submit_request():
        data = _payload()
        record = borrow_service.submit(
            actor=get_current_actor(),
            purpose=data.get('purpose'),
            start_date=data.get('start_date'),
            end_date=data.get('end_date'),
            pic_name=data.get('pic_name'),
            pic_contact=data.get('pic_contact'),
            location_usage=data.get('location_usage'),
            lines=data.get('items') or [],
        )
        return jsonify(request_payload(record)), 201

    @app.route('/api/requests/mine')
    @login_required
    def my_requests():
        records = borrow_service.my_requests(get_current_actor(), status=request.args.get('status'))
        return jsonify([record.to_dict() for record in records])

    @app.route('/api/requests/<int:record_id>')
    @login_required
    def request_detail(record_id: int):
        record = borrow_service.get_request(record_id, get_current_actor())
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/owner/approve', methods=['POST'])
    @login_required
    def owner_approve(record_id: int):
        record = borrow_service.owner_approve(record_id, get_current_actor(), notes=_payload().get('notes'))
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/owner/escalate', methods=['POST'])
    @login_required
    def owner_escalate(record_id: int):
        record = borrow_service.escalate(record_id, get_current_actor(), notes=_payload().get('notes'))
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/owner/reject', methods=['POST'])
    @login_required
    def owner_reject(record_id: int):
        data = _payload()
        record = borrow_service.owner_reject(record_id, get_current_actor(), data.get('reason'), notes=data.get('notes'))
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/headmaster/approve', methods=['POST'])
    @login_required
    def headmaster_approve(record_id: int):
        record = borrow_service.headmaster_approve(record_id, get_current_actor(), notes=_payload().get('notes'))
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/headmaster/reject', methods=['POST'])
    @login_required
    def headmaster_reject(record_id: int):
        record = borrow_service.headmaster_reject(record_id, get_current_actor(), _payload().get('reason'))
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/start', methods=['POST'])
    @login_required
    def start_loan(record_id: int):
        record = borrow_service.start_loan(record_id, get_current_actor(), conditions=_payload().get('conditions'))
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/complete', methods=['POST'])
    @login_required
    def complete_loan(record_id: int):
        record = borrow_service.complete_loan(record_id, get_current_actor(), conditions=_payload().get('conditions'))
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/cancel', methods=['POST'])
    @login_required
    def cancel_request(record_id: int):
        record = borrow_service.cancel(record_id, get_current_actor())
        return jsonify(request_payload(record))

    @app.route('/api/requests/<int:record_id>/letter')
    @login_required
    def letter(record_id: int):
        return jsonify(borrow_service.letter_snapshot(record_id, get_current_actor()).to_dict())

    @app.route('/api/letters/<int:record_id>/verify')
    def verify_letter(record_id: int):
        return jsonify(borrow_service.verify_letter(record_id))

    @app.route('/api/inbox/owner')
    @login_required
    def owner_inbox():
        return jsonify([record.to_dict() for record in borrow_service.owner_inbox(get_current_actor())])

    @app.route('/api/inbox/headmaster')
    @login_required
    def headmaster_inbox():
        return jsonify([record.to_dict() for record in borrow_service.headmaster_inbox(get_current_actor())])

    @app.route('/api/loans/active')
    @login_required
    def active_loans():
        return jsonify([record.to_dict() for record in borrow_service.active_loans(get_current_actor())])

    @app.route('/api/reviews')
    @login_required
    def review_history():
        return jsonify([record.to_dict() for record in borrow_service.review_history(get_current_actor())])

    # Notifications

    @app.route('/api/notifications')
    @login_required
    def notifications():
        unread_only = request.args.get('unread') in ('1', 'true')
        rows = notifier.list_for(get_current_user().id, unread_only=unread_only)
        return jsonify([row.to_dict() for row in rows])

    @app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
    @login_required
    def read_notification(notification_id: int):
        return jsonify(notifier.mark_read(get_current_user().id, notification_id).to_dict())

    @app.route('/api/notifications/read-all', methods=['POST'])
    @login_required
    def read_all_notifications():
        return jsonify({'updated': notifier.mark_all_read(get_current_user().id)})

    # Administration

    @app.route('/api/departments')
    def departments():
        return jsonify([department.to_dict() for department in directory_service.list_departments()])

    @app.route('/api/departments', methods=['POST'])
    @login_required
    def create_department():
        data = _payload()
        department = directory_service.create_department(
            get_current_actor(),
            name=data.get('name'),
            description=data.get('description'),
            contact_person=data.get('contact_person'),
        )
        return jsonify(department.to_dict()), 201

    @app.route('/api/departments/<int:department_id>', methods=['PATCH'])
    @login_required
    def update_department(department_id: int):
        department = directory_service.update_department(get_current_actor(), department_id, _payload())
        return jsonify(department.to_dict())

    @app.route('/api/departments/<int:department_id>', methods=['DELETE'])
    @login_required
    def delete_department(department_id: int):
        directory_service.delete_department(get_current_actor(), department_id)
        return '', 204

    @app.route('/api/categories')
    def categories():
        return jsonify([category.to_dict() for category in directory_service.list_categories()])

    @app.route('/api/categories', methods=['POST'])
    @login_required
    def create_category():
        data = _payload()
        category = directory_service.create_category(
            get_current_actor(), name=data.get('name'), description=data.get('description')
        )
        return jsonify(category.to_dict()), 201

    @app.route('/api/categories/<int:category_id>', methods=['DELETE'])
    @login_required
    def delete_category(category_id: int):
        directory_service.delete_category(get_current_actor(), category_id)
        return '', 204

    @app.route('/api/users')
    @login_required
    def users():
        q = (request.args.get('q') or '').strip() or None
        return jsonify([user.to_dict() for user in directory_service.list_users(get_current_actor(), q=q)])

    @app.route('/api/users/<int:user_id>/roles', methods=['POST'])
    @login_required
    def grant_role(user_id: int):
        data = _payload()
        assignment = directory_service.grant_role(
            get_current_actor(),
            user_id,
            data.get('role'),
            department_id=_optional_int(data.get('department_id'), 'department_id'),
        )
        return jsonify(assignment.to_dict()), 201

    @app.route('/api/roles/<int:assignment_id>', methods=['DELETE'])
    @login_required
    def revoke_role(assignment_id: int):
        directory_service.revoke_role(get_current_actor(), assignment_id)
        return '', 204

    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(debug=True)
