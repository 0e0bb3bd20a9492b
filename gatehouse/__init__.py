"""Gatehouse: server-side password + OAuth2/OIDC authentication with server-tracked sessions."""
