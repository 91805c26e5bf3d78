"""Role resolution from shared secrets and per-profile viewer tokens."""
import enum
import hmac


class Role(str, enum.Enum):
    ADMIN_FULL = 'ADMIN_FULL'
    ADMIN_VIEW = 'ADMIN_VIEW'
    TOKEN = 'TOKEN'
    NONE = 'NONE'

    @property
    def is_admin(self):
        return self in (Role.ADMIN_FULL, Role.ADMIN_VIEW)


def secrets_match(expected, presented):
    """Constant-time equality; an empty secret on either side never matches"""
    if not expected or not presented:
        return False
    if not isinstance(expected, str) or not isinstance(presented, str):
        return False
    return hmac.compare_digest(expected.encode('utf-8'), presented.encode('utf-8'))


class Authorizer:
    """
    Classifies presented credentials into a Role.

    The full and view admin secrets are configured once; the viewer token
    belongs to each profile and is passed in by the caller. A secret that
    is present but wrong is NONE, never "some admin".
    """

    def __init__(self, full_secret, view_secret, api_key=None):
        self.full_secret = full_secret or ''
        self.view_secret = view_secret or ''
        self.api_key = api_key or ''

    def classify(self, admin_secret):
        if secrets_match(self.full_secret, admin_secret):
            return Role.ADMIN_FULL
        if secrets_match(self.view_secret, admin_secret):
            return Role.ADMIN_VIEW
        return Role.NONE

    @staticmethod
    def classify_token(profile_token, presented):
        return Role.TOKEN if secrets_match(profile_token, presented) else Role.NONE

    def check_api_key(self, presented):
        return secrets_match(self.api_key, presented)

    def resolve(self, profile_token, token=None, admin_secret=None):
        """Profile token first, then admin secret"""
        role = self.classify_token(profile_token, token)
        if role is Role.TOKEN:
            return role
        return self.classify(admin_secret)
