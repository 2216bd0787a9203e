"""Session identity helpers used by routes."""
from __future__ import annotations

from functools import wraps
from typing import Optional

from flask import g, jsonify, session
from werkzeug.security import check_password_hash

from models import db, User
from services.authorization import Actor, resolve_actor


def authenticate(username: str, password: str) -> Optional[User]:
    user = User.query.filter_by(username=username).first()
    if user and password and check_password_hash(user.password_hash, password):
        return user
    return None


def login_user(user: User) -> None:
    session['user_id'] = user.id


def logout_user() -> None:
    session.pop('user_id', None)


def get_current_user() -> Optional[User]:
    user_id = session.get('user_id')
    cached = getattr(g, '_cached_user', None)
    if cached is not None and cached.id == user_id:
        return cached
    user = db.session.get(User, user_id) if user_id else None
    g._cached_user = user
    return user


def get_current_actor() -> Actor:
    return resolve_actor(get_current_user())


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if get_current_user() is None:
            return jsonify({'error': 'login required'}), 401
        return view(*args, **kwargs)

    return wrapped
