"""Identifier and key helpers shared by the API, store and renderers."""

import re
import secrets

_NON_KEY_CHARS = re.compile(r"[^a-z0-9]")


def new_id() -> str:
    """Generate a random 24-character hex identifier."""
    return secrets.token_hex(12)


def sanitize_key(value: str) -> str:
    """
    Lowercase a value and replace anything outside [a-z0-9] with dashes.

    Leading and trailing dashes are stripped, so the result is safe to use as
    a YAML key, container suffix or directory name.
    """
    return _NON_KEY_CHARS.sub("-", value.lower()).strip("-")


def slugify(value: str) -> str:
    value = value.strip().lower()
    return value.replace(" ", "-").replace("_", "-")


def repository_id(owner: str, name: str) -> str:
    return f"{sanitize_key(owner)}-{sanitize_key(name)}"


def installation_id(account: str, external_id: str) -> str:
    return f"{sanitize_key(account)}-{sanitize_key(external_id)}"


def split_repo_full_name(full_name: str) -> tuple[str, str]:
    """
    Split "owner/name" into its two parts.

    Raises:
        ValueError: If the value is not exactly two non-blank parts
    """
    parts = full_name.split("/")
    if len(parts) != 2:
        raise ValueError(f"invalid repository name: {full_name}")
    owner, name = parts[0].strip(), parts[1].strip()
    if not owner or not name:
        raise ValueError(f"invalid repository name: {full_name}")
    return owner, name
