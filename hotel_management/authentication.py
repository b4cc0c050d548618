from datetime import datetime, timedelta, timezone

from django.conf import settings
from django.contrib.auth import get_user_model
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from rest_framework import authentication
from rest_framework.exceptions import AuthenticationFailed


class TokenService:
    """Issues and verifies the admin bearer tokens."""

    def __init__(self, secret, algorithm="HS256", lifetime=timedelta(days=1)):
        self.secret = secret
        self.algorithm = algorithm
        self.lifetime = lifetime

    def issue(self, user):
        issued_at = datetime.now(timezone.utc)
        claims = {"userId": user.pk, "iat": issued_at, "exp": issued_at + self.lifetime}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify(self, token):
        """Return the user id carried by ``token``."""
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationFailed("Token expired")
        except JWTError:
            raise AuthenticationFailed("Invalid token")
        if "userId" not in claims:
            raise AuthenticationFailed("Invalid token")
        return claims["userId"]


def get_token_service():
    return TokenService(
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
        lifetime=timedelta(minutes=settings.JWT_EXPIRE_MINUTES),
    )


class BearerTokenAuthentication(authentication.BaseAuthentication):
    keyword = "Bearer"

    def __init__(self, token_service=None):
        self.token_service = token_service or get_token_service()

    def authenticate(self, request):
        header = authentication.get_authorization_header(request).split()
        if not header or header[0].lower() != self.keyword.lower().encode():
            return None
        if len(header) != 2:
            raise AuthenticationFailed("Invalid authorization header")

        try:
            token = header[1].decode()
        except UnicodeError:
            raise AuthenticationFailed("Invalid token")

        user_id = self.token_service.verify(token)
        user = get_user_model().objects.filter(pk=user_id, is_active=True).first()
        if user is None:
            raise AuthenticationFailed("User not found")
        return user, token

    def authenticate_header(self, request):
        return f'{self.keyword} realm="api"'
