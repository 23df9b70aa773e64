"""Server clients for the task worker."""

from .base import TaskServerClient
from .http import HttpTaskClient

__all__ = ["TaskServerClient", "HttpTaskClient"]
