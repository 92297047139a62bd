class APIError(Exception):
    """An error that maps straight to a JSON response.

    ``errors`` carries per-field validation messages; when it is set the
    response body is ``{"errors": [...]}`` instead of ``{"error": message}``.
    """

    def __init__(self, message, status_code=400, errors=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.errors = errors

    def to_dict(self):
        if self.errors:
            return {'errors': self.errors}
        return {'error': self.message}


class NotFound(APIError):
    def __init__(self, message='Not found'):
        super().__init__(message, 404)


class Conflict(APIError):
    def __init__(self, message):
        super().__init__(message, 409)
