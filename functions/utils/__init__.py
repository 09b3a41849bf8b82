# utils/__init__.py

from .request_utils import (
    add_cors_headers,
    json_response,
    get_caller_uid,
    parse_evaluate_request,
)

__all__ = [
    'add_cors_headers',
    'json_response',
    'get_caller_uid',
    'parse_evaluate_request',
]
