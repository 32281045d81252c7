"""Internal constants shared across the library."""

USER_AGENT = "fleetauth-python"

# ------------------------------------------------------------------
# Auth API (GoTrue) paths, relative to AuthConfig.auth_url
# ------------------------------------------------------------------

TOKEN_PATH = "/token"
LOGOUT_PATH = "/logout"
USER_PATH = "/user"
SIGNUP_PATH = "/signup"
RECOVER_PATH = "/recover"

GRANT_PASSWORD = "password"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_PKCE = "pkce"

#: PKCE challenge method accepted by the auth API (lowercase).
CODE_CHALLENGE_METHOD = "s256"

#: Error codes meaning the refresh token or session no longer exists.
SESSION_GONE_CODES: frozenset[str] = frozenset(
    {
        "session_not_found",
        "refresh_token_not_found",
        "refresh_token_already_used",
        "user_not_found",
        "bad_jwt",
    }
)
