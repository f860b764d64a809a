"""Built-in workflow modules."""

from .builtin import http_request_handler, register_builtin_modules

__all__ = ["http_request_handler", "register_builtin_modules"]
