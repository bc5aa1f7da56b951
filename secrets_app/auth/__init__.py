"""
Authentication for the secrets app.

- Local username/password accounts (bcrypt).
- Federated login through Google (OpenID Connect) and Facebook (OAuth 2).
- Cookie-based session (HttpOnly, signed) carrying only the user id.
"""
