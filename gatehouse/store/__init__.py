"""Persistence for users, OAuth account links and sessions.

The core depends only on the `AuthStore` protocol; `PostgresAuthStore` is the
production implementation.
"""

from __future__ import annotations
