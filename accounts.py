import hashlib
import hmac
import logging
import secrets
import time

from lifecycle import ValidationError, clean_text
from storage import USERS_KEY, Collection

logger = logging.getLogger(__name__)

ROLE_CUSTOMER = 'customer'
ROLE_PROVIDER = 'provider'
ROLE_ADMIN = 'admin'
SIGNUP_ROLES = {ROLE_CUSTOMER, ROLE_PROVIDER}

REQUIRED_SIGNUP_FIELDS = ('name', 'phone', 'email', 'password', 'role')

users = Collection(USERS_KEY)


class DuplicateAccountError(Exception):
    code = 'DUPLICATE_ACCOUNT'

    def __init__(self, email):
        super().__init__(f'An account with {email} already exists.')
        self.email = email
        self.message = 'An account with that email already exists.'


def hash_password(plain_password):
    iterations = 600000
    salt = secrets.token_hex(16)
    password_hash = hashlib.pbkdf2_hmac(
        'sha256',
        plain_password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations,
    ).hex()
    return f"pbkdf2_sha256${iterations}${salt}${password_hash}"


def verify_password(plain_password, password_hash):
    if not password_hash or not password_hash.startswith('pbkdf2_sha256$'):
        return False
    try:
        _, iterations_raw, salt, expected_hash = password_hash.split('$', 3)
        calculated_hash = hashlib.pbkdf2_hmac(
            'sha256',
            plain_password.encode('utf-8'),
            salt.encode('utf-8'),
            int(iterations_raw),
        ).hex()
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(calculated_hash, expected_hash)


def normalize_role(role):
    return clean_text(role).lower().replace(' ', '')


def _sanitize_email(email):
    return clean_text(email).lower()


def _password_text(password):
    return password if isinstance(password, str) else ''


def public_user(user):
    """User record without the password hash."""
    return {key: value for key, value in user.items() if key != 'password_hash'}


def session_user(user):
    return {'email': user['email'], 'role': user['role'], 'name': user['name']}


def find_user(email):
    email = _sanitize_email(email)
    if not email:
        return None
    for user in users.load():
        if user.get('email') == email:
            return user
    return None


def list_users():
    return [public_user(user) for user in users.load()]


def _new_user(name, phone, email, password, role, car_type=None):
    return {
        'id': int(time.time() * 1000),
        'name': name,
        'phone': phone,
        'email': email,
        'password_hash': hash_password(password),
        'role': role,
        'carType': car_type if role == ROLE_PROVIDER else None,
        'lat': None,
        'lng': None,
    }


def sign_up(fields):
    name = clean_text(fields.get('name'))
    phone = clean_text(fields.get('phone'))
    email = _sanitize_email(fields.get('email'))
    password = _password_text(fields.get('password'))
    role = normalize_role(fields.get('role'))
    car_type = clean_text(fields.get('carType')) or None

    values = {'name': name, 'phone': phone, 'email': email, 'password': password, 'role': role}
    missing = [field for field in REQUIRED_SIGNUP_FIELDS if not values[field]]
    if missing:
        raise ValidationError('Please fill in all required fields.', fields=missing)
    if role not in SIGNUP_ROLES:
        raise ValidationError('Role must be customer or provider.', fields=['role'])

    records, revision = users.snapshot()
    if any(user.get('email') == email for user in records):
        raise DuplicateAccountError(email)

    user = _new_user(name, phone, email, password, role, car_type)
    records.append(user)
    users.save(records, revision=revision)
    logger.info('Registered %s account for %s', role, email)
    return user


def authenticate(email, password):
    user = find_user(email)
    if not user or not verify_password(_password_text(password), user.get('password_hash')):
        return None
    return user


def update_location(email, latitude, longitude):
    """Store the user's latest position. Returns the updated user or None."""
    email = _sanitize_email(email)
    records, revision = users.snapshot()
    for user in records:
        if user.get('email') == email:
            user['lat'] = latitude
            user['lng'] = longitude
            users.save(records, revision=revision)
            return user
    return None


def ensure_default_admin(email, password, name='Administrator'):
    """Seed an admin account when the store has none yet."""
    records, revision = users.snapshot()
    if any(user.get('role') == ROLE_ADMIN for user in records):
        return None

    admin = _new_user(name, '', _sanitize_email(email), password, ROLE_ADMIN)
    records.append(admin)
    users.save(records, revision=revision)
    logger.info('Seeded default admin account %s', admin['email'])
    return admin
