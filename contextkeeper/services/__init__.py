"""Service layer — business logic over the DAOs."""


class ServiceError(Exception):
    """Base service exception."""


class NotFoundError(ServiceError):
    """Resource not found."""


class ValidationError(ServiceError):
    """Input validation error."""


class ReferentialIntegrityError(ServiceError):
    """A relationship endpoint does not exist in the requesting project."""
