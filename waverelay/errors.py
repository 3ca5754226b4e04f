"""Error taxonomy shared by the HTTP API and the channel relay.

Every error surfaced to a client carries the same body shape::

    {"timestamp": "2024-01-01 12:00:00", "error": 40, "message": "...", "details": "..."}
"""

from __future__ import annotations

import time
from dataclasses import dataclass

SUCCESS = 0

NULL_ATTRIBUTES = 10

EXCEEDING_MAX_LENGTH = 20
EXCEEDING_MIN_LENGTH = 21
INCORRECT_PARSING = 22
INCORRECT_PATTERN = 23
EXCEEDING_MAXIMUM = 24
EXCEEDING_MINIMUM = 25

INCORRECT_PAYLOAD = 30
INCORRECT_FILE_TYPE = 31
DECODING_FAILED = 32

UNAUTHORIZED = 40
TIMEOUT = 41
FORBIDDEN = 42
NOT_FOUND = 43
ALREADY_EXIST = 44

SELF_REQUEST = 50
BLOCKED_BY_USER = 51
WRONG_STATUS = 52
WRONG_DIRECTIVE = 53
DIRECTIVE_NOT_ALLOWED = 54
WRONG_STATE = 55

INCORRECT_PACKET_SCHEMA = 60

# Reasons reported by the session-authorization collaborator.
REASON_TOKEN_MALFORMED = "token-malformed"
REASON_TOKEN_NOT_FOUND = "token-not-found"
REASON_TOKEN_EXPIRED = "token-expired"


@dataclass(frozen=True)
class ErrorCase:
    code: int
    message: str
    details: str
    http_status: int = 400


_CASES: dict[int, ErrorCase] = {
    c.code: c
    for c in (
        ErrorCase(SUCCESS, "Success", "Action completed", 200),
        ErrorCase(
            NULL_ATTRIBUTES,
            "Attribute can't be null",
            "The attribute does not exist or is null",
        ),
        ErrorCase(
            EXCEEDING_MAX_LENGTH,
            "String exceed the maximum length",
            "The string-typed attribute exceeds the maximum permitted length",
        ),
        ErrorCase(
            EXCEEDING_MIN_LENGTH,
            "String exceed the minimum length",
            "The string-typed attribute exceeds the minimum permitted length",
        ),
        ErrorCase(
            INCORRECT_PARSING,
            "String isn't one of the predefined",
            "The string-typed attribute doesn't correspond to predefined schema",
        ),
        ErrorCase(
            INCORRECT_PATTERN,
            "String isn't following the regex pattern",
            "The string-typed attribute doesn't follow the regex pattern",
        ),
        ErrorCase(
            EXCEEDING_MAXIMUM,
            "Integer exceed the maximum value",
            "The int-typed attribute exceeds the maximum permitted value",
        ),
        ErrorCase(
            EXCEEDING_MINIMUM,
            "Integer exceed the minimum value",
            "The int-typed attribute exceeds the minimum permitted value",
        ),
        ErrorCase(
            INCORRECT_PAYLOAD,
            "Data isn't a supported MIME data",
            "Data didn't match URI with supported MIME data",
        ),
        ErrorCase(
            INCORRECT_FILE_TYPE,
            "MIME type is invalid",
            "The file's extension, or MIME type, isn't supported",
        ),
        ErrorCase(
            DECODING_FAILED,
            "The data decoding failed",
            "The data isn't correct, the decoding failed",
        ),
        ErrorCase(
            UNAUTHORIZED,
            "The session token does not exist",
            "The session token served doesn't exist, impossible to confirm authority",
            401,
        ),
        ErrorCase(
            TIMEOUT,
            "The session has expired",
            "The time to live of the session token ended",
            401,
        ),
        ErrorCase(
            FORBIDDEN,
            "The entity or action is forbidden",
            "The searched entity doesn't belong to the user or the specified "
            "directive isn't allow to the user",
            403,
        ),
        ErrorCase(
            NOT_FOUND,
            "The entity does not exist",
            "The elaboration parameters didn't produced any entity",
            404,
        ),
        ErrorCase(
            ALREADY_EXIST,
            "The entity already exist",
            "The entity attributes already have this values",
            409,
        ),
        ErrorCase(
            SELF_REQUEST,
            "Self request",
            "The target of the contact request is the origin of said request",
            406,
        ),
        ErrorCase(
            BLOCKED_BY_USER,
            "Blocked by user",
            "The elaboration failed because the targeted user blocked requests from you",
            406,
        ),
        ErrorCase(
            WRONG_STATUS,
            "Wrong contact status",
            "The status between this user and the targeted one can't allow this directive",
            406,
        ),
        ErrorCase(
            WRONG_DIRECTIVE,
            "Wrong directive",
            "The given directive isn't one of the predefined",
            406,
        ),
        ErrorCase(
            DIRECTIVE_NOT_ALLOWED,
            "Directive not allowed",
            "The given directive can't be performed for this user",
            406,
        ),
        ErrorCase(
            WRONG_STATE,
            "Wrong group state",
            "The state between of this group can't allow this directive",
            406,
        ),
        ErrorCase(
            INCORRECT_PACKET_SCHEMA,
            "Incorrect packet schema",
            "The web socket packet sent from this user doesn't have a correct schema",
        ),
    )
}


def get_case(code: int) -> ErrorCase:
    return _CASES[int(code)]


def http_status(code: int) -> int:
    case = _CASES.get(int(code))
    return case.http_status if case is not None else 400


def error_body(code: int, *, now: float | None = None) -> dict:
    """Build the client-facing error object for `code`.

    Raises KeyError for codes outside the taxonomy.
    """
    case = get_case(code)
    ts = time.strftime(
        "%Y-%m-%d %H:%M:%S", time.localtime(now if now is not None else time.time())
    )
    return {
        "timestamp": ts,
        "error": case.code,
        "message": case.message,
        "details": case.details,
    }


class AuthorizationError(Exception):
    """Raised when a session token cannot be turned into an identity."""

    def __init__(self, code: int, reason: str) -> None:
        super().__init__(f"{reason} (code {code})")
        self.code = int(code)
        self.reason = reason
