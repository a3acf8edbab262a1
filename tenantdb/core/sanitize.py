"""
Sensitive data sanitization for tenantdb.

Everything that leaves the data-access layer through a log line or an error
payload goes through this module first:

- SQL text: whitespace collapsed, secret-looking literals masked, truncated
- Statement parameters: values bound to secret-looking names, long strings and
  token-shaped strings replaced by a placeholder
- Dictionaries (error details, configuration dumps): sensitive keys redacted

Usage:
    from tenantdb.core.sanitize import sanitize_sql_for_logging, sanitize_params_for_logging

    logger.info("Query executed: %s params=%s",
                sanitize_sql_for_logging(sql),
                sanitize_params_for_logging(params, sql))
"""

import json
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

# Keys that indicate sensitive data (case-insensitive, substring match)
SENSITIVE_KEYS: Set[str] = {
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "bearer",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "auth_token",
    "authorization",
    "credential",
    "private_key",
    "privatekey",
    "secret_key",
    "client_secret",
    "connection_string",
    "conninfo",
    "dsn",
    "passphrase",
    "encryption_key",
    "master_key",
}

# Patterns for detecting sensitive values regardless of the name they are bound to
SENSITIVE_PATTERNS: List[re.Pattern] = [
    re.compile(r"^Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"^Basic\s+[A-Za-z0-9+/=]+", re.IGNORECASE),
    # JWT (header.payload.signature)
    re.compile(r"^eyJ[A-Za-z0-9\-_]+\.eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+$"),
    # long opaque alphanumeric strings (API keys)
    re.compile(r"^[A-Za-z0-9]{32,}$"),
    re.compile(r"-----BEGIN (RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"),
    # libpq URIs and key/value strings carrying a password
    re.compile(r"^postgres(ql)?://[^:/\s]+:[^@\s]+@", re.IGNORECASE),
    re.compile(r"\bpassword\s*=\s*\S+", re.IGNORECASE),
]

# `password = 'hunter2'`, `api_key='...'`, `auth_token = "..."`
_SQL_SECRET_ASSIGNMENT = re.compile(
    r"""\b(\w*(?:password|passwd|secret|token|api_?key|key))\s*=\s*(?:'(?:[^']|'')*'|"[^"]*")""",
    re.IGNORECASE,
)
# `CREATE ROLE app LOGIN PASSWORD 'hunter2'`
_SQL_PASSWORD_CLAUSE = re.compile(r"\b(PASSWORD)\s+'(?:[^']|'')*'", re.IGNORECASE)
# `Key (api_token)=(abc123) already exists.`
_DETAIL_KEY_VALUES = re.compile(r"\(([^()]*)\)=\((.*?)\)(?=\s|\.|$)")
_DETAIL_FAILING_ROW = re.compile(r"Failing row contains \((.*)\)")

_PLACEHOLDER = re.compile(r"%[sbt]\b")
_NAMED_PLACEHOLDER = re.compile(r"%\((\w+)\)[sbt]")
_COMPARISON_BEFORE = re.compile(r"(\w+)\s*(?:=|<>|!=|\bI?LIKE\b)\s*$", re.IGNORECASE)
_INSERT_COLUMNS = re.compile(
    r"insert\s+into\s+[\w.\"]+\s*\(([^)]*)\)\s*values\s*\(([^)]*)\)",
    re.IGNORECASE | re.DOTALL,
)

REDACTED = "[REDACTED]"
MASK = "*****"

# Strings longer than this are assumed to be tokens and never logged verbatim
MAX_PLAIN_PARAM_LENGTH = 20
MAX_PARAM_PREVIEW = 100


def _is_sensitive_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    key_lower = key.lower().replace("-", "_")
    if key_lower in SENSITIVE_KEYS:
        return True
    return any(sensitive in key_lower for sensitive in SENSITIVE_KEYS)


def _is_sensitive_value(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return any(pattern.search(value) for pattern in SENSITIVE_PATTERNS)


def sanitize_sensitive_data(
    data: Any,
    additional_keys: Optional[Set[str]] = None,
    redaction: str = REDACTED,
    max_depth: int = 20,
) -> Any:
    """
    Recursively sanitize sensitive data from a dictionary or list.

    Returns a new object; the input is not modified.

    Example:
        >>> sanitize_sensitive_data({"user": "app", "password": "secret123"})
        {'user': 'app', 'password': '[REDACTED]'}
    """
    extra = {k.lower() for k in (additional_keys or set())}
    return _sanitize_recursive(data, extra, redaction, max_depth, 0)


def _sanitize_recursive(data, additional_keys, redaction, max_depth, current_depth):
    if current_depth >= max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if _is_sensitive_key(key) or (isinstance(key, str) and key.lower() in additional_keys):
                result[key] = redaction
            else:
                result[key] = _sanitize_recursive(
                    value, additional_keys, redaction, max_depth, current_depth + 1
                )
        return result

    if isinstance(data, (list, tuple)):
        return [
            _sanitize_recursive(item, additional_keys, redaction, max_depth, current_depth + 1)
            for item in data
        ]

    if isinstance(data, str) and _is_sensitive_value(data):
        return redaction

    return data


def sanitize_sql_for_logging(sql: Optional[str], max_length: int = 1000) -> str:
    """
    Collapse whitespace, mask secret-looking literals and truncate a statement.

    >>> sanitize_sql_for_logging("UPDATE users SET password = 'hunter2' WHERE id = 1")
    'UPDATE users SET password=***** WHERE id = 1'
    """
    if not sql:
        return ""
    sanitized = re.sub(r"\s+", " ", sql).strip()
    sanitized = _SQL_SECRET_ASSIGNMENT.sub(lambda m: f"{m.group(1)}={MASK}", sanitized)
    sanitized = _SQL_PASSWORD_CLAUSE.sub(lambda m: f"{m.group(1)} {MASK}", sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    return sanitized


def _mask_key_values(match: "re.Match") -> str:
    columns = [c.strip() for c in match.group(1).split(",")]
    values = [v.strip() for v in match.group(2).split(",")]
    if len(columns) != len(values):
        if any(_is_sensitive_key(c) for c in columns):
            values = [MASK]
    else:
        values = [
            MASK if _is_sensitive_key(c) or _is_sensitive_value(v) else v
            for c, v in zip(columns, values)
        ]
    return f"({match.group(1)})=({', '.join(values)})"


def _mask_failing_row(match: "re.Match") -> str:
    values = [v.strip() for v in match.group(1).split(",")]
    return "Failing row contains (" + ", ".join(MASK if _is_sensitive_value(v) else v for v in values) + ")"


def sanitize_error_detail(detail: Optional[str]) -> Optional[str]:
    """
    Mask values the server echoes back in an error detail when their column
    is secret-named or the value itself looks like a credential.

    >>> sanitize_error_detail("Key (api_token)=(abc123) already exists.")
    'Key (api_token)=(*****) already exists.'
    """
    if not detail:
        return detail
    masked = _DETAIL_KEY_VALUES.sub(_mask_key_values, detail)
    return _DETAIL_FAILING_ROW.sub(_mask_failing_row, masked)


def placeholder_names(sql: Optional[str]) -> List[Optional[str]]:
    """
    Best-effort name for each positional placeholder in ``sql``.

    ``WHERE email = %s`` names the placeholder ``email``; an
    ``INSERT INTO t (a, b) VALUES (%s, %s)`` names them ``a`` and ``b``.
    Placeholders that cannot be attributed get ``None``.
    """
    if not sql:
        return []
    positions = [m.start() for m in _PLACEHOLDER.finditer(sql)]
    names: List[Optional[str]] = []
    for pos in positions:
        match = _COMPARISON_BEFORE.search(sql[:pos])
        names.append(match.group(1) if match else None)

    insert = _INSERT_COLUMNS.search(sql)
    if insert:
        columns = [c.strip().strip('"') for c in insert.group(1).split(",")]
        values = [v.strip() for v in insert.group(2).split(",")]
        values_start = insert.start(2)
        values_end = insert.end(2)
        in_values = [i for i, pos in enumerate(positions) if values_start <= pos < values_end]
        value_slots = [j for j, v in enumerate(values) if _PLACEHOLDER.fullmatch(v)]
        for placeholder_idx, slot in zip(in_values, value_slots):
            if slot < len(columns):
                names[placeholder_idx] = columns[slot]
    return names


def _preview_param(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"[bytes({len(value)})]"
    if isinstance(value, (list, tuple, set)):
        return f"[Array({len(value)})]"
    if isinstance(value, dict):
        try:
            text = json.dumps(sanitize_sensitive_data(value), default=str)
        except (TypeError, ValueError):
            return "[Object]"
    else:
        text = str(value)
    if len(text) > MAX_PARAM_PREVIEW:
        return text[:MAX_PARAM_PREVIEW - 3] + "..."
    return text


def _sanitize_param(value: Any, name: Optional[str]) -> str:
    if name and _is_sensitive_key(name):
        return MASK
    if isinstance(value, str) and (len(value) > MAX_PLAIN_PARAM_LENGTH or _is_sensitive_value(value)):
        return MASK
    return _preview_param(value)


def sanitize_params_for_logging(
    params: Union[Sequence[Any], Mapping[str, Any], None],
    sql: Optional[str] = None,
) -> Union[List[str], Dict[str, str]]:
    """
    Render statement parameters for a log line without leaking secrets.

    Named parameters are judged by their key; positional parameters by the
    column name inferred from ``sql`` (see ``placeholder_names``). Long
    strings and token-shaped values are masked whatever their name.
    """
    if params is None:
        return []
    if isinstance(params, Mapping):
        return {str(key): _sanitize_param(value, str(key)) for key, value in params.items()}
    if isinstance(params, (str, bytes)):
        return [_sanitize_param(params, None)]
    names = placeholder_names(sql)
    result = []
    for index, value in enumerate(params):
        name = names[index] if index < len(names) else None
        result.append(_sanitize_param(value, name))
    return result


def sanitize_for_logging(data: Any, max_length: int = 1000) -> str:
    """Sanitize data and convert to a (truncated) string for logging."""
    sanitized = sanitize_sensitive_data(data)
    try:
        result = json.dumps(sanitized, default=str)
    except (TypeError, ValueError):
        result = str(sanitized)
    if len(result) > max_length:
        return result[:max_length - 3] + "..."
    return result


def mask_value(value: Any, visible_start: int = 4, visible_end: int = 4) -> str:
    """
    Partially mask a value, showing only start and end characters.

    >>> mask_value("11111111-1111-1111-1111-111111111111")
    '1111...1111'
    """
    if not isinstance(value, str):
        return REDACTED
    if len(value) <= visible_start + visible_end + 3:
        return REDACTED
    return f"{value[:visible_start]}...{value[-visible_end:]}"
