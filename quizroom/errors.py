"""Typed command errors.

Every error raised by a command carries a ``kind`` (stable, client-facing) and
the HTTP status the API answers with. Errors are only ever returned to the
caller that issued the command.
"""


class CommandError(Exception):
    kind = 'Internal'
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self):
        return {'error': self.message, 'kind': self.kind}


class NotFound(CommandError):
    kind = 'NotFound'
    status_code = 404


class InvalidArgument(CommandError):
    kind = 'InvalidArgument'
    status_code = 400


class FailedPrecondition(CommandError):
    kind = 'FailedPrecondition'
    status_code = 409


class AlreadyExists(CommandError):
    kind = 'AlreadyExists'
    status_code = 409


class ResourceExhausted(CommandError):
    kind = 'ResourceExhausted'
    status_code = 503


class PermissionDenied(CommandError):
    kind = 'PermissionDenied'
    status_code = 403
