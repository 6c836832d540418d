"""This is descil, a connector for the DeSciL turker authentication service."""

import logging
from logging import NullHandler

from .exceptions import (
    ConfigurationError,
    DescilServiceException,
    InvalidStateError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from .registry import AccessCodeRecord, CodeRegistry
from .service import (
    DescilService,
    OfflineDescilService,
    ServiceResponse,
    descil_service_from_config,
)
from .version import __version__

logger = logging.getLogger(__name__)
logger.addHandler(NullHandler())

__all__ = (
    "AccessCodeRecord",
    "CodeRegistry",
    "ConfigurationError",
    "DescilService",
    "DescilServiceException",
    "InvalidStateError",
    "NotFoundError",
    "OfflineDescilService",
    "ServiceResponse",
    "TransportError",
    "ValidationError",
    "descil_service_from_config",
    "logger",
    "__version__",
)
