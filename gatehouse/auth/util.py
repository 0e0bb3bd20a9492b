from __future__ import annotations

import base64
import hashlib
import os
from typing import Mapping, Optional


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def fingerprint(value: Optional[str]) -> str:
    """Short, non-reversible handle for logging identifiers such as session ids."""
    if not value:
        return "-"
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> Optional[str]:
    """
    Extract the client IP address from proxy headers.

    Priority: cf-connecting-ip (Cloudflare), x-real-ip (nginx), the first entry of
    x-forwarded-for, x-vercel-forwarded-for, then the socket peer.

    These headers are only trustworthy behind a reverse proxy that overwrites them.
    """
    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip

    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip

    forwarded = headers.get("x-forwarded-for") or ""
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    vercel_ip = (headers.get("x-vercel-forwarded-for") or "").strip()
    if vercel_ip:
        return vercel_ip

    return peer or None
