# Overview: Service-layer operations for accounts; password hashing, login and staff records.

"""
Authentication Service

WHY: Orders, payouts and inventory changes must be attributable to a person.
Customers and staff share the User table; staff additionally carry an
Employee row with their role.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters; upper, lower, digit and special char required
- Session tokens managed separately (see session_service.py)
- Deactivated users cannot log in
"""

import re
import time

import bcrypt
from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Employee, User
from ..models.auth import VALID_ROLES
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Raises PasswordValidationError unless the password has at least 8
    characters with an uppercase letter, a lowercase letter, a digit and a
    special character.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>_\-]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def _bcrypt_rounds() -> int:
    try:
        return int(current_app.config.get("BCRYPT_ROUNDS", 12))
    except RuntimeError:
        # Outside an app context (scripts)
        return 12


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=_bcrypt_rounds())
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe check via bcrypt.checkpw. Malformed hashes verify False."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def create_user(email: str, password: str, full_name: str | None = None, phone: str | None = None) -> User:
    """
    Create a user account.

    Raises:
        ValidationError: malformed email
        ConflictError: email already registered
        PasswordValidationError: weak password
    """
    email = normalize_email(email)
    local, _, domain = email.partition("@")
    if not local or "." not in domain:
        raise ValidationError("Invalid email", {"email": "must be a valid email"})

    if db.session.query(User).filter_by(email=email).first():
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        password_hash=hash_password(password),
        full_name=full_name,
        phone=phone,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Email already registered")
    return user


def generate_employee_code() -> str:
    return f"EMP{str(int(time.time() * 1000))[-6:]}"


def create_employee(email: str, role: str) -> Employee:
    """
    Give an existing user a staff role.

    Raises:
        ValidationError: unknown role
        NotFoundError: no user with this email
        ConflictError: user is already an employee
    """
    if role not in VALID_ROLES:
        raise ValidationError("Invalid role", {"role": f"must be one of: {', '.join(VALID_ROLES)}"})

    user = db.session.query(User).filter_by(email=normalize_email(email)).first()
    if user is None:
        raise NotFoundError("User not found with this email")
    if user.employee is not None:
        raise ConflictError("User is already an employee")

    code = generate_employee_code()
    # Codes come from a millisecond clock; suffix on collision
    suffix = 0
    while db.session.query(Employee.id).filter_by(employee_code=code).first():
        suffix += 1
        code = f"{generate_employee_code()}{suffix}"

    employee = Employee(user_id=user.id, role=role, employee_code=code)
    db.session.add(employee)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("User is already an employee")
    return employee


def list_employees() -> list[Employee]:
    return db.session.query(Employee).order_by(Employee.created_at.asc(), Employee.employee_code.asc()).all()


def authenticate(email: str, password: str) -> User | None:
    """
    Returns the active User for these credentials, else None.

    Updates last_login_at on success.
    """
    user = db.session.query(User).filter(
        User.email == normalize_email(email),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
