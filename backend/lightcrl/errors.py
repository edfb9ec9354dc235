"""Exception hierarchy for the CRL engine."""

from typing import List, Optional


class CRLEngineError(Exception):
    """Base exception for all CRL engine errors."""

    code = "CRL_ERROR"


class ConfigurationError(CRLEngineError):
    """CRL feature disabled for the CA, or its configuration is malformed."""

    code = "CONFIGURATION_ERROR"


class SigningError(CRLEngineError):
    """Signing authority unavailable or rejected the payload."""

    code = "SIGNING_ERROR"


class DistributionError(CRLEngineError):
    """A CRL could not be published."""

    code = "DISTRIBUTION_ERROR"


class ValidationError(CRLEngineError):
    """Structural or temporal defects in a CRL.

    Carries the accumulated findings; the validator itself reports them as
    data and only raises this for input that cannot be parsed at all.
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class NotFoundError(CRLEngineError):
    """Unknown CRL, CA or distribution point identifier."""

    code = "NOT_FOUND"


class StorageError(CRLEngineError):
    """A CRL could not be stored, e.g. its number was already issued."""

    code = "STORAGE_ERROR"
