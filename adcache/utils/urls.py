"""Signed URL utilities for job status links."""

from __future__ import annotations

import os

from itsdangerous import BadSignature, URLSafeTimedSerializer

DEFAULT_EXPIRY = int(os.environ.get("SIGNED_URL_EXPIRY", 60 * 60 * 24))


def _serializer() -> URLSafeTimedSerializer:
    secret = os.environ.get("SIGNING_SECRET", "change-me")
    return URLSafeTimedSerializer(secret_key=secret)


def sign_path(path: str) -> str:
    serializer = _serializer()
    token = serializer.dumps(path, salt="path")
    return f"{path}?token={token}"


def verify_path(token: str, path: str, max_age: int = DEFAULT_EXPIRY) -> bool:
    serializer = _serializer()
    try:
        signed = serializer.loads(token, max_age=max_age, salt="path")
    except BadSignature:
        return False
    return signed == path
