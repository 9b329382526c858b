"""
Helper functions for Railway CLI output parsing and input validation.
"""

import json
import re
import logging
from typing import List, Optional
from uuid import uuid4

from ...exceptions import CommandValidationError

logger = logging.getLogger(__name__)


DEPLOYMENT_URL_PATTERN = re.compile(r"https?://[^\s]+\.up\.railway\.app[^\s]*")
RAILWAY_DOMAIN_PATTERN = re.compile(r"([a-zA-Z0-9-]+\.up\.railway\.app)")
GENERIC_DOMAIN_PATTERN = re.compile(r"([a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)+)")
SERVICE_ID_PAREN_PATTERN = re.compile(r"\(([a-zA-Z0-9-]+)\)")
UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
WHOAMI_PATTERN = re.compile(r"as\s+(\S+)")
# Build log links printed by `railway up`: .../service/<service>?id=<deployment>
DEPLOYMENT_ID_PATTERN = re.compile(
    r"(?:[?&]id=|deployment[ _-]?id:?\s*)([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})",
    re.IGNORECASE,
)

# RFC 1123 hostname with at least two labels and an alphabetic TLD
DOMAIN_PATTERN = re.compile(
    r"^(?=.{4,253}$)(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,63}$"
)
VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_VARIABLE_NAME_LENGTH = 255

SUPPORTED_DATABASE_TYPES = {"postgres", "postgresql", "mysql", "redis", "mongo", "mongodb"}

def parse_service_id_from_output(output: str) -> str:
    """
    Extract the provider service id printed by `railway add`.

    Tries a parenthesised id first, then a bare UUID. Falls back to a
    generated placeholder so the record can still be created.
    """
    output = output or ""
    match = SERVICE_ID_PAREN_PATTERN.search(output)
    if match:
        return match.group(1)

    match = UUID_PATTERN.search(output)
    if match:
        return match.group(0)

    placeholder = f"cli-provisioned-{uuid4().hex[:12]}"
    logger.warning(f"Could not parse service id from CLI output, using placeholder {placeholder}")
    return placeholder


def parse_domain_from_output(output: str, custom_domain: Optional[str] = None) -> str:
    """Extract the domain assigned by `railway domain`."""
    if custom_domain:
        return custom_domain

    output = output or ""
    match = RAILWAY_DOMAIN_PATTERN.search(output)
    if match:
        return match.group(1)

    match = GENERIC_DOMAIN_PATTERN.search(output)
    if match:
        return match.group(1)

    placeholder = f"service-{uuid4().hex[:12]}.up.railway.app"
    logger.warning(f"Could not parse domain from CLI output, using placeholder {placeholder}")
    return placeholder


def extract_deployment_url(output: str) -> Optional[str]:
    """First *.up.railway.app URL in the output, if any."""
    match = DEPLOYMENT_URL_PATTERN.search(output or "")
    return match.group(0) if match else None


def parse_deployment_id_from_output(output: str) -> Optional[str]:
    match = DEPLOYMENT_ID_PATTERN.search(output or "")
    return match.group(1) if match else None


def parse_variable_names(output: str) -> List[str]:
    """
    Names from `railway variable list --json` output. Values are discarded.

    Returns an empty list when the output is not a JSON object.
    """
    if not output:
        return []
    try:
        parsed = json.loads(output)
    except json.JSONDecodeError:
        logger.warning("Failed to parse variable list JSON output")
        return []
    if not isinstance(parsed, dict):
        return []
    return list(parsed.keys())


def parse_service_status(output: str) -> Optional[str]:
    """The `status` field of `railway status --json` output, lowercased."""
    if not output:
        return None
    try:
        parsed = json.loads(output)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("status"), str):
        return None
    return parsed["status"].lower()


def parse_whoami_username(output: str) -> str:
    """Username from whoami output such as "Logged in as alice (alice@example.com)"."""
    match = WHOAMI_PATTERN.search(output or "")
    return match.group(1) if match else (output or "").strip()


def validate_domain(domain: str) -> str:
    """
    Check a custom domain before it reaches the CLI.

    Raises:
        CommandValidationError: If the domain is not a valid hostname
    """
    if not isinstance(domain, str) or not DOMAIN_PATTERN.match(domain.strip()):
        raise CommandValidationError(f"Invalid domain: {domain!r}")
    return domain.strip().lower()


def validate_variable_name(name: str) -> str:
    if (
        not isinstance(name, str)
        or len(name) > MAX_VARIABLE_NAME_LENGTH
        or not VARIABLE_NAME_PATTERN.match(name)
    ):
        raise CommandValidationError(
            f"Invalid variable name: {name!r}. Names must start with a letter or underscore "
            f"and contain only letters, digits and underscores"
        )
    return name


def validate_database_type(database_type: str) -> str:
    normalized = (database_type or "").strip().lower()
    if normalized not in SUPPORTED_DATABASE_TYPES:
        supported = ", ".join(sorted(SUPPORTED_DATABASE_TYPES))
        raise CommandValidationError(
            f"Unsupported database type {database_type!r}. Supported types: {supported}"
        )
    return normalized


def redact_values(text: str, values: List[str]) -> str:
    """Replace every occurrence of the given secret values with ***."""
    if not text:
        return text
    # Longest first so a value containing another is masked whole
    for value in sorted((v for v in values if v), key=len, reverse=True):
        text = text.replace(value, "***")
    return text
