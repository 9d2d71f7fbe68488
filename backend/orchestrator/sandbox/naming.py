"""Deterministic names derived from project and session identifiers."""

import re

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9_]")


def _normalize(value: str) -> str:
    return _NON_ALNUM.sub("", value.replace("-", "_"))


def container_name(project_id: str, session_id: str) -> str:
    """Container (and runtime resource) name for a session's sandbox.

    >>> container_name("0f8c2a1e-1111-2222-3333-444455556666", "s-42!")
    'sandbox_0f8c2a1e_1111_2222_3333_444455556666_s_42'
    """
    return f"sandbox_{_normalize(project_id)}_{_normalize(session_id)}"


def preview_host(project_id: str, session_id: str, domain: str) -> str:
    """Public preview hostname used for Traefik routing."""
    session = _normalize(session_id).replace("_", "-").lower()
    return f"project-{project_id[:8].lower()}-{session}.{domain}"


def preview_database_name(project_id: str, session_id: str) -> str:
    """Postgres database name; identifiers are capped at 63 bytes."""
    return f"preview_{_normalize(project_id)}_{_normalize(session_id)}".lower()[:63]
