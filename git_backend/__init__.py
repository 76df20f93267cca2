"""Git Content Backend - Git hosting providers as a versioned content store.

This package lists, reads and commits content files through the REST APIs
of Git hosting providers, with cursor pagination, bounded concurrent
downloads, fork-based contribution and a branch-based review workflow.
"""

from .backend import Backend, create_backend
from .config import Config, CollectionConfig, load_config
from .cursor import Cursor
from .errors import (
    APIError,
    AuthError,
    BackendError,
    CursorValidationError,
    NetworkError,
    NotFoundError,
    ParseError,
    WorkflowConfigError,
)
from .models import Credentials, Entry, PersistOptions
from .result import OperationResult, ResultStatus

__version__ = "1.0.0"

__all__ = [
    "Backend",
    "create_backend",
    "Config",
    "CollectionConfig",
    "load_config",
    "Cursor",
    "APIError",
    "AuthError",
    "BackendError",
    "CursorValidationError",
    "NetworkError",
    "NotFoundError",
    "ParseError",
    "WorkflowConfigError",
    "Credentials",
    "Entry",
    "PersistOptions",
    "OperationResult",
    "ResultStatus",
]
