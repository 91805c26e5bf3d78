"""Error types raised by the stream wheel core and mapped to HTTP responses."""


class WheelError(Exception):
    """Base class for every error the API turns into a JSON response"""
    status_code = 500
    error = 'error'

    def __init__(self, message=None):
        self.message = message or self.error
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.error, 'message': self.message}


class AuthError(WheelError):
    """Missing or wrong credential. Never says whether the profile exists."""
    status_code = 403
    error = 'forbidden'


class ValidationError(WheelError):
    status_code = 400
    error = 'invalid'


class UploadError(WheelError):
    """Upload rejected: oversize, unsupported type or undecodable image"""
    status_code = 400
    error = 'upload'

    def __init__(self, message=None, status_code=None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(WheelError):
    status_code = 404
    error = 'notfound'


class StorageError(WheelError):
    """Backing file system failed; fatal for the current request only"""
    status_code = 500
    error = 'storage'
