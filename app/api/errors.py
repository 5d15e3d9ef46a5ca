from fastapi import HTTPException, status

from app.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from app.services.rule_templates import RuleTemplateConfigurationError, RuleTemplateError

_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (RepositoryValidationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (RepositoryNotFoundError, status.HTTP_404_NOT_FOUND),
    (RepositoryConflictError, status.HTTP_409_CONFLICT),
    (RepositoryUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RuleTemplateConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RuleTemplateError, status.HTTP_502_BAD_GATEWAY),
)


def http_error(exc: RepositoryError | RuleTemplateError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
