"""Ingestion helpers."""

from __future__ import annotations

import logging
import os
import pathlib

import yaml

from adcache.ingest.models import Account

logger = logging.getLogger(__name__)

ACCOUNTS_PATH = pathlib.Path(__file__).with_name("accounts.yml")

SECRET_FIELDS = {
    "meta_access_token_env": "meta_access_token",
    "google_refresh_token_env": "google_refresh_token",
}


def load_accounts(path: pathlib.Path | None = None, *, include_inactive: bool = False) -> list[Account]:
    """Load accounts from YAML; credentials are read from the named environment variables."""
    source = path or pathlib.Path(os.environ.get("ACCOUNTS_PATH", ACCOUNTS_PATH))
    data = yaml.safe_load(source.read_text()) or []
    accounts = []
    for item in data:
        item = dict(item)
        for env_key, field_name in SECRET_FIELDS.items():
            env_name = item.pop(env_key, None)
            if env_name:
                value = os.environ.get(env_name)
                if not value:
                    logger.warning("Account %s: %s is not set", item.get("account_id"), env_name)
                item[field_name] = value
        account = Account(**item)
        if account.active or include_inactive:
            accounts.append(account)
    return accounts
