"""
Request Authentication
Device-secret and user-token gates shared by the API blueprints
"""
import time
import logging
from datetime import timedelta
from functools import wraps
from typing import Optional

from flask import current_app, g, make_response, request
from jose import JWTError, jwt

from models import db, ApiLog, Device, User, utcnow
from utils import credentials
from utils.errors import AuthenticationFailure, DispatchError, NotFound

api_logger = logging.getLogger('api')

SERIAL_HEADER = 'X-Device-Serial'
SECRET_HEADER = 'X-Device-Secret'


def log_api_request(device_id, endpoint, method, status_code, response_time=None):
    """Log API request to database and file"""
    try:
        log_entry = ApiLog(
            device_id=device_id,
            endpoint=endpoint,
            method=method,
            ip_address=request.remote_addr,
            status_code=status_code,
            response_time=response_time
        )
        db.session.add(log_entry)
        db.session.commit()

        api_logger.info(f'{method} {endpoint} - Device:{device_id} IP:{request.remote_addr} Status:{status_code}')
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f'Error logging API request: {e}')


def _presented_credentials():
    """Serial and secret from the device headers, falling back to the JSON body"""
    serial = request.headers.get(SERIAL_HEADER)
    secret = request.headers.get(SECRET_HEADER)
    if not serial or not secret:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            serial = serial or body.get('serial')
            secret = secret or body.get('secret')
    return serial, secret


def authenticate_device(serial: Optional[str], secret: Optional[str]) -> Device:
    """
    Resolve and verify a device from its presented credentials

    Raises:
        AuthenticationFailure: credentials missing or secret mismatch
        NotFound: no device with this serial
    """
    if not serial or not secret:
        raise AuthenticationFailure('Missing device credentials')

    device = Device.query.filter_by(serial=serial).first()
    if not device:
        current_app.logger.warning(f'Unknown device serial {serial} from {request.remote_addr}')
        raise NotFound('Device not found')

    verification = credentials.verify(secret, device.secret_hash)
    if not verification.valid:
        current_app.logger.warning(f'Invalid secret for device {serial} from {request.remote_addr}')
        raise AuthenticationFailure('Invalid device credentials', error='invalid_credentials')

    if verification.needs_upgrade:
        current_app.logger.info(
            f'Device {serial} authenticated with a legacy secret hash; upgrade pending until re-provisioning'
        )
    return device


def require_device_auth(f):
    """Decorator to require device serial + secret authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        start_time = time.time()
        device_id = None
        try:
            serial, secret = _presented_credentials()
            device = authenticate_device(serial, secret)
            device_id = device.id

            device.last_seen = utcnow()
            db.session.commit()
            g.device = device

            response = make_response(f(*args, **kwargs))
        except DispatchError as e:
            response_time = (time.time() - start_time) * 1000
            log_api_request(device_id, request.path, request.method, e.status_code, response_time)
            raise

        response_time = (time.time() - start_time) * 1000
        log_api_request(device_id, request.path, request.method, response.status_code, response_time)
        return response

    return decorated_function


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed user token whose subject is the user id"""
    expires = expires_delta or current_app.config['JWT_ACCESS_TOKEN_EXPIRES']
    claims = {
        'sub': str(user.id),
        'username': user.username,
        'exp': utcnow() + expires,
    }
    return jwt.encode(claims, current_app.config['JWT_SECRET_KEY'],
                      algorithm=current_app.config['JWT_ALGORITHM'])


def _bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def user_from_token(token: str) -> User:
    """
    Decode a user token and load its active user

    Raises:
        AuthenticationFailure: token invalid, expired or for an unknown user
    """
    try:
        claims = jwt.decode(token, current_app.config['JWT_SECRET_KEY'],
                            algorithms=[current_app.config['JWT_ALGORITHM']])
        user_id = int(claims.get('sub'))
    except (JWTError, TypeError, ValueError):
        raise AuthenticationFailure('Invalid or expired token')

    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        raise AuthenticationFailure('Invalid or expired token')
    return user


def optional_user() -> Optional[User]:
    """User for the request if a valid bearer token is present, else None"""
    token = _bearer_token()
    if not token:
        return None
    try:
        return user_from_token(token)
    except AuthenticationFailure:
        return None


def require_user_token(f):
    """Decorator to require a bearer user token"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise AuthenticationFailure('Missing bearer token')
        g.user = user_from_token(token)
        return f(*args, **kwargs)

    return decorated_function


def get_owned_device(device_id: int) -> Device:
    """Device owned by the current user, NotFound otherwise"""
    device = Device.query.filter_by(id=device_id, user_id=g.user.id).first()
    if not device:
        raise NotFound('Device not found')
    return device
