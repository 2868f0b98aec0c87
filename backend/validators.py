# validators.py — Field acceptance rules for MBEE records
# Every function raises errors.ValidationError(field, message) on bad input
# and returns the (possibly normalised) value otherwise.
#
# Id patterns can be overridden per deployment:
#   MBEE_VALIDATOR_ID, MBEE_VALIDATOR_ID_LENGTH
#   MBEE_VALIDATOR_{ORG,PROJECT,BRANCH,ELEMENT,ARTIFACT}_ID[_LENGTH]
#   MBEE_VALIDATOR_USER_USERNAME, MBEE_VALIDATOR_USER_EMAIL

import os
import re
from typing import Any, Dict, Optional

from errors import ValidationError
from identifiers import ID_DELIMITER, leaf_id

ID = os.getenv("MBEE_VALIDATOR_ID", r"([_a-z0-9])([-_a-z0-9.]){0,}")
ID_LENGTH = int(os.getenv("MBEE_VALIDATOR_ID_LENGTH", "36"))
MIN_LEAF_LENGTH = 2

RESERVED_KEYWORDS = [
    "css", "js", "img", "doc", "docs", "webfonts", "login", "about", "assets",
    "static", "public", "api", "organizations", "orgs", "projects", "users",
    "plugins", "ext", "extension", "search", "whoami", "profile", "edit",
    "proj", "elements", "branch", "anonymous", "blob", "artifact", "artifacts",
]

VISIBILITY_LEVELS = ["private", "internal"]
PERMISSION_LEVELS = ["remove_all", "read", "write", "admin"]
WEBHOOK_TYPES = ["Outgoing", "Incoming"]
WEBHOOK_METHODS = ["GET", "POST", "PATCH", "PUT", "DELETE"]
WEBHOOK_RESPONSE_KEYS = ["url", "method", "headers", "token", "ca", "data"]


def _segment(level: str) -> str:
    return os.getenv(f"MBEE_VALIDATOR_{level.upper()}_ID", ID)


def _segment_length(level: str) -> int:
    return int(os.getenv(f"MBEE_VALIDATOR_{level.upper()}_ID_LENGTH", str(ID_LENGTH)))


# Each level is anchored on its parent's pattern, lengths are cumulative
ORG_ID = f"^{_segment('org')}$"
ORG_ID_LENGTH = _segment_length("org")

PROJECT_ID = f"{ORG_ID[:-1]}{ID_DELIMITER}{_segment('project')}$"
PROJECT_ID_LENGTH = ORG_ID_LENGTH + len(ID_DELIMITER) + _segment_length("project")

BRANCH_ID = f"{PROJECT_ID[:-1]}{ID_DELIMITER}{_segment('branch')}$"
BRANCH_ID_LENGTH = PROJECT_ID_LENGTH + len(ID_DELIMITER) + _segment_length("branch")

ELEMENT_ID = f"{BRANCH_ID[:-1]}{ID_DELIMITER}{_segment('element')}$"
ELEMENT_ID_LENGTH = BRANCH_ID_LENGTH + len(ID_DELIMITER) + _segment_length("element")

ARTIFACT_ID = f"{BRANCH_ID[:-1]}{ID_DELIMITER}{_segment('artifact')}$"
ARTIFACT_ID_LENGTH = BRANCH_ID_LENGTH + len(ID_DELIMITER) + _segment_length("artifact")

USERNAME = os.getenv("MBEE_VALIDATOR_USER_USERNAME", r"^([a-z])([a-z0-9_]){0,}$")
USERNAME_LENGTH = int(os.getenv("MBEE_VALIDATOR_USER_USERNAME_LENGTH", str(ID_LENGTH)))
EMAIL = os.getenv(
    "MBEE_VALIDATOR_USER_EMAIL",
    r"^([a-zA-Z0-9_\-\.]+)@([a-zA-Z0-9_\-\.]+)\.([a-zA-Z]{2,5})$",
)
PERSON_NAME = r"^(([a-zA-Z])([-a-zA-Z ])*)?$"

ARTIFACT_FILENAME = r"^[^!\\/<>:\"'|?*]+$"
ARTIFACT_EXTENSION = r"^[^!\\/<>:\"'|?*]+[.][\w]+$"
ARTIFACT_LOCATION = r"^[^.]+$"

MIN_PASSWORD_LENGTH = 8


# ============================================================
# IDS
# ============================================================

def _validate_id(kind: str, uid: Any, pattern: str, max_length: int) -> str:
    if not isinstance(uid, str):
        raise ValidationError("id", f"{kind} ID must be a string.")

    leaf = leaf_id(uid)
    if leaf in RESERVED_KEYWORDS:
        raise ValidationError(
            "id", f"{kind} ID cannot include the following words: [{', '.join(RESERVED_KEYWORDS)}]."
        )
    if not re.fullmatch(pattern, uid):
        raise ValidationError("id", f"Invalid {kind.lower()} ID [{leaf}].")
    if len(uid) > max_length:
        raise ValidationError(
            "id", f"{kind} ID [{leaf}] is too long; the full ID must not be more than {max_length} characters."
        )
    if len(leaf) < MIN_LEAF_LENGTH:
        raise ValidationError(
            "id", f"{kind} ID length [{len(leaf)}] must not be less than {MIN_LEAF_LENGTH} characters."
        )
    return uid


def validate_org_id(uid: str) -> str:
    return _validate_id("Org", uid, ORG_ID, ORG_ID_LENGTH)


def validate_project_id(uid: str) -> str:
    return _validate_id("Project", uid, PROJECT_ID, PROJECT_ID_LENGTH)


def validate_branch_id(uid: str) -> str:
    return _validate_id("Branch", uid, BRANCH_ID, BRANCH_ID_LENGTH)


def validate_element_id(uid: str) -> str:
    return _validate_id("Element", uid, ELEMENT_ID, ELEMENT_ID_LENGTH)


def validate_artifact_id(uid: str) -> str:
    return _validate_id("Artifact", uid, ARTIFACT_ID, ARTIFACT_ID_LENGTH)


# ============================================================
# USERS
# ============================================================

def validate_username(username: Any) -> str:
    if not isinstance(username, str):
        raise ValidationError("username", "Username must be a string.")
    if username in RESERVED_KEYWORDS:
        raise ValidationError(
            "username", f"Username cannot include the following words: [{', '.join(RESERVED_KEYWORDS)}]."
        )
    if len(username) > USERNAME_LENGTH:
        raise ValidationError(
            "username",
            f"Username length [{len(username)}] must not be more than {USERNAME_LENGTH} characters.",
        )
    if len(username) < 3:
        raise ValidationError(
            "username", f"Username length [{len(username)}] must not be less than 3 characters."
        )
    if not re.fullmatch(USERNAME, username):
        raise ValidationError("username", f"Invalid username [{username}].")
    return username


def validate_email(email: Optional[str]) -> str:
    if email and not re.fullmatch(EMAIL, email):
        raise ValidationError("email", f"Invalid email [{email}].")
    return email or ""


def validate_person_name(field: str, value: Optional[str]) -> str:
    """Used for fname, lname and preferred_name; empty values are accepted."""
    if value and not re.fullmatch(PERSON_NAME, value):
        label = field.replace("_", " ").replace("fname", "first name").replace("lname", "last name")
        raise ValidationError(field, f"Invalid {label} [{value}].")
    return value or ""


def validate_password(password: Optional[str]) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError("password", "Password validation failed.")
    if not (any(c.isdigit() for c in password)
            and any(c.islower() for c in password)
            and any(c.isupper() for c in password)):
        raise ValidationError("password", "Password validation failed.")
    return password


# ============================================================
# GENERIC FIELDS
# ============================================================

def validate_custom(custom: Any) -> Dict[str, Any]:
    if not isinstance(custom, dict):
        raise ValidationError("custom", "Custom data must be an object.")
    return custom


def validate_permissions(permissions: Any) -> Dict[str, list]:
    if not isinstance(permissions, dict):
        raise ValidationError("permissions", "The permissions object is not properly formatted.")
    for roles in permissions.values():
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise ValidationError("permissions", "The permissions object is not properly formatted.")
    return permissions


def validate_permission_level(level: Any) -> str:
    if level not in PERMISSION_LEVELS:
        raise ValidationError(
            "permissions", f"The permission [{level}] is not a valid permission. "
            f"Valid permissions are: [{', '.join(PERMISSION_LEVELS)}]."
        )
    return level


def validate_visibility(visibility: Any) -> str:
    if visibility not in VISIBILITY_LEVELS:
        raise ValidationError(
            "visibility", f"Invalid visibility type [{visibility}]. "
            f"Must be one of: [{', '.join(VISIBILITY_LEVELS)}]."
        )
    return visibility


def ensure_unchanged(field: str, current: Any, new: Any) -> Any:
    """Reject a change to an immutable field once it has a value."""
    if current is not None and new != current:
        raise ValidationError(field, f"The field [{field}] is immutable and cannot be changed.")
    return new


# ============================================================
# ARTIFACTS
# ============================================================

def validate_artifact_filename(filename: Any) -> str:
    if not isinstance(filename, str) or ".." in filename or not (
        re.fullmatch(ARTIFACT_FILENAME, filename) and re.fullmatch(ARTIFACT_EXTENSION, filename)
    ):
        raise ValidationError("filename", f"Artifact filename [{filename}] is improperly formatted.")
    return filename


def validate_artifact_location(location: Any) -> str:
    if not isinstance(location, str) or not re.fullmatch(ARTIFACT_LOCATION, location):
        raise ValidationError("location", f"Artifact location [{location}] is improperly formatted.")
    return location


# ============================================================
# WEBHOOKS
# ============================================================

def validate_webhook_reference(reference: Any) -> str:
    if reference == "":
        return reference
    if isinstance(reference, str) and (
        re.fullmatch(ORG_ID, reference) or re.fullmatch(PROJECT_ID, reference) or re.fullmatch(BRANCH_ID, reference)
    ):
        return reference
    raise ValidationError(
        "reference",
        f"Invalid reference id {reference}: reference must either be an empty string "
        "or match an org, project, or branch id.",
    )


def validate_webhook_triggers(triggers: Any) -> list:
    if not isinstance(triggers, list) or not all(isinstance(t, str) for t in triggers):
        raise ValidationError("triggers", "The triggers field must be an array of strings.")
    return triggers


def validate_webhook_response(response: Any) -> Dict[str, Any]:
    """Validate an outgoing webhook's response block and fill in defaults."""
    if not isinstance(response, dict):
        raise ValidationError("response", "The response field must be an object.")
    for key in response:
        if key not in WEBHOOK_RESPONSE_KEYS:
            raise ValidationError("response", f"Invalid field in response object: [{key}].")
    if not isinstance(response.get("url"), str):
        raise ValidationError("response", "The response object must have a url field.")

    normalised = dict(response)
    normalised.setdefault("method", "POST")
    normalised.setdefault("headers", {"Content-Type": "application/json"})

    if normalised["method"] not in WEBHOOK_METHODS:
        raise ValidationError(
            "response", f"Invalid method [{normalised['method']}]. Must be one of: [{', '.join(WEBHOOK_METHODS)}]."
        )
    if not isinstance(normalised["headers"], dict):
        raise ValidationError("response", "The response headers must be an object.")
    for key in ("token", "ca"):
        if key in normalised and not isinstance(normalised[key], str):
            raise ValidationError("response", f"The response {key} must be a string.")
    if "data" in normalised and not isinstance(normalised["data"], (dict, list)):
        raise ValidationError("response", "The response data must be an object.")
    return normalised


def validate_webhook_type(
    webhook_type: Any,
    response: Optional[dict],
    token: Optional[str],
    token_location: Optional[str],
) -> str:
    if webhook_type not in WEBHOOK_TYPES:
        raise ValidationError(
            "type", f"Invalid webhook type [{webhook_type}]. Must be one of: [{', '.join(WEBHOOK_TYPES)}]."
        )
    if webhook_type == "Outgoing":
        if not isinstance(response, dict) or token or token_location:
            raise ValidationError(
                "type", "An outgoing webhook must have a response field and cannot have a token or tokenLocation."
            )
    else:
        if not (isinstance(token, str) and isinstance(token_location, str)) or response is not None:
            raise ValidationError(
                "type", "An incoming webhook must have a token and a tokenLocation and cannot have a response field."
            )
    return webhook_type
