"""JSON Schemas for OAuth payloads, and a Draft 7 validation helper."""

from typing import Any

from jsonschema import Draft7Validator

# Shape of a token response handed back to MCP clients
OAUTH_TOKENS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "access_token": {"type": "string", "minLength": 1},
        "token_type": {"type": "string"},
        "expires_in": {"type": "integer"},
        "scope": {"type": "string"},
        "refresh_token": {"type": "string"},
        "id_token": {"type": "string"},
    },
    "required": ["access_token", "token_type"],
}

# RFC 7591 client metadata, as stored for DCR or served for CIMD
CLIENT_METADATA_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "client_id": {"type": "string", "minLength": 1},
        "redirect_uris": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 1,
        },
        "client_name": {"type": "string"},
        "grant_types": {"type": "array", "items": {"type": "string"}},
        "response_types": {"type": "array", "items": {"type": "string"}},
        "token_endpoint_auth_method": {"type": "string"},
        "scope": {"type": "string"},
    },
    "required": ["client_id", "redirect_uris"],
}


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Check ``data`` against a Draft 7 schema.

    Returns ``(True, [])`` when valid, otherwise ``(False, messages)`` with
    one message per violation, prefixed by the JSON path of the offending
    value unless it is the document root.
    """
    violations = sorted(Draft7Validator(schema).iter_errors(data), key=lambda e: e.json_path)
    messages = [
        f"{error.json_path}: {error.message}" if error.path else error.message
        for error in violations
    ]
    return not messages, messages
