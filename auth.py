"""Google sign-in and the signed session token.

The client posts the Google ID token it received from Google Identity
Services. Authlib verifies it against Google's published keys, we find or
create the user, and hand back our own HS256 token in the ``session`` cookie.
Flask-Login reads that token (or a Bearer header) on every request through
:func:`load_user_from_request`.
"""
import logging
import time

from authlib.oidc.core import CodeIDToken
from flask import g
from flask_login import current_user
from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import OctKey

import config
from errors import APIError
from extensions import db, login_manager, oauth
from models import User

logger = logging.getLogger(__name__)

GOOGLE_ISSUERS = ['https://accounts.google.com', 'accounts.google.com']

google = oauth.register(
    name='google',
    client_id=config.GOOGLE_CLIENT_ID,
    client_secret=config.GOOGLE_CLIENT_SECRET,
    server_metadata_url=config.GOOGLE_DISCOVERY_URL,
    client_kwargs={'scope': 'openid email profile'},
)

session_claims = jwt.JWTClaimsRegistry(
    userId={'essential': True},
    exp={'essential': True},
)


def _session_key():
    return OctKey.import_key(config.JWT_SECRET)


def verify_google_id_token(id_token):
    """Return the verified claims of a Google ID token.

    Signature, issuer, audience (our client id) and expiry are checked, with
    60 seconds of leeway. Any failure raises.
    """
    return google.parse_id_token(
        {'id_token': id_token},
        nonce=None,
        claims_cls=CodeIDToken,
        claims_options={
            'iss': {'essential': True, 'values': GOOGLE_ISSUERS},
            'aud': {'essential': True, 'value': config.GOOGLE_CLIENT_ID},
        },
        leeway=60,
    )


def find_or_create_google_user(claims):
    """Match by google_id or email; create on first login, link google_id if missing."""
    google_id = claims['sub']
    email = claims.get('email')
    if not email:
        raise APIError('Authentication failed', 401)

    user = User.query.filter(db.or_(User.google_id == google_id, User.email == email)).first()

    if user is None:
        user = User(
            google_id=google_id,
            email=email,
            email_verified=bool(claims.get('email_verified')),
            username=claims.get('name') or email.split('@')[0],
            first_name=claims.get('given_name'),
            last_name=claims.get('family_name'),
            profile_picture_path=claims.get('picture'),
        )
        db.session.add(user)
        db.session.commit()
        logger.info("Created user id=%s from Google login", user.id)
    elif not user.google_id:
        user.google_id = google_id
        user.email_verified = bool(claims.get('email_verified'))
        user.first_name = claims.get('given_name')
        user.last_name = claims.get('family_name')
        db.session.commit()
        logger.info("Linked Google account to user id=%s", user.id)

    return user


def issue_session_token(user):
    now = int(time.time())
    payload = {
        'userId': user.id,
        'email': user.email,
        'iat': now,
        'exp': now + config.SESSION_MAX_AGE,
    }
    return jwt.encode({'alg': 'HS256'}, payload, _session_key())


def decode_session_token(token):
    """Verify signature and expiry; raises JoseError on a bad token."""
    decoded = jwt.decode(token, _session_key(), algorithms=['HS256'])
    session_claims.validate(decoded.claims)
    return decoded.claims


def token_from_request(req):
    token = req.cookies.get(config.SESSION_COOKIE)
    if token:
        return token
    header = req.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[7:].strip() or None
    return None


def set_session_cookie(response, token):
    response.set_cookie(
        config.SESSION_COOKIE,
        token,
        max_age=config.SESSION_MAX_AGE,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite='Lax',
    )
    return response


def clear_session_cookie(response):
    response.delete_cookie(config.SESSION_COOKIE, httponly=True, secure=config.COOKIE_SECURE,
                           samesite='Lax')
    return response


@login_manager.request_loader
def load_user_from_request(req):
    token = token_from_request(req)
    if not token:
        return None
    try:
        claims = decode_session_token(token)
        user = db.session.get(User, int(claims['userId']))
    except (JoseError, ValueError, TypeError, KeyError):
        user = None
    if user is None:
        g.auth_error = 'Invalid token'
    return user


@login_manager.unauthorized_handler
def unauthorized():
    raise APIError(g.get('auth_error', 'Not authenticated'), 401)


def viewer_id():
    """Id of the signed-in user, or None for anonymous requests."""
    return current_user.id if current_user.is_authenticated else None


def require_self(user_id):
    if current_user.id != user_id:
        raise APIError('Forbidden', 403)
