from __future__ import annotations


class AccessError(Exception):
    pass


class NotFoundError(AccessError):
    pass


class ConflictError(AccessError):
    pass


class AuthError(AccessError):
    pass


class ValidationError(AccessError):
    pass
