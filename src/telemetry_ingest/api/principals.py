from __future__ import annotations
import hmac
from typing import Optional
from fastapi import Header
from telemetry_ingest.config import get_settings
from telemetry_ingest.security.access import Principal


def _matches(provided: str, expected: Optional[str]) -> bool:
    return bool(expected) and hmac.compare_digest(provided.encode(), expected.encode())


def request_principal(x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
    """Classify the caller by API key.

    No key, or the public anon key, is the anonymous principal. The service
    role key is privileged. Any other key is returned verbatim so the access
    policy rejects it (unrecognized principals fail closed).
    """
    settings = get_settings()
    if not x_api_key:
        return Principal.ANONYMOUS
    if _matches(x_api_key, settings.service_role_key):
        return Principal.PRIVILEGED
    if _matches(x_api_key, settings.anon_key):
        return Principal.ANONYMOUS
    return "unrecognized"
