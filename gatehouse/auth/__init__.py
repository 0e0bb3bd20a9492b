"""
Authentication core.

Design goals:
- Provider-agnostic federation (OIDC ID-token or user-info providers) with PKCE, state and nonce.
- Server-tracked sessions; the cookie only carries a signed session id.
- No account auto-provisioning through OAuth.
"""
