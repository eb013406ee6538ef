from __future__ import annotations

import unicodedata
from typing import Optional

from sessionauth.logging import get_logger
from sessionauth.service.credentials import CredentialVerifier

logger = get_logger(__name__)


def ensure_admin(
    store,
    credentials: CredentialVerifier,
    *,
    username: str,
    password: str,
    email: str,
    full_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the admin principal, or bring an existing one up to date.

    Returns:
        dict with username and status ('created', 'updated' or 'dry_run')
    """
    # Registration stores emails lowercased and NFKC-normalized
    email = unicodedata.normalize("NFKC", email.strip().lower())
    existing = store.get_principal(username)
    if dry_run:
        logger.info("admin_bootstrap_dry_run", username=username, exists=existing is not None)
        return {"username": username, "status": "dry_run"}

    secret_hash = credentials.hash_secret(password)
    if existing is None:
        store.create_principal(username, email, secret_hash, full_name)
        logger.info("admin_bootstrap_created", username=username)
        return {"username": username, "status": "created"}

    store.update_principal(
        username, email=email, full_name=full_name, secret_hash=secret_hash
    )
    logger.info("admin_bootstrap_updated", username=username)
    return {"username": username, "status": "updated"}
