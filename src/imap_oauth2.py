"""
IMAP OAuth2 Credentials

Acquires XOAUTH2 access tokens for mail stores that no longer accept
passwords (Microsoft 365, Gmail). The token is handed to mail_store.connect,
which then authenticates with XOAUTH2 instead of LOGIN.

Notes:
- Microsoft uses the MSAL device code flow (the user enters a code on
  another device); repeated calls refresh silently from the cached app.
- Google uses the google-auth-oauthlib installed-app flow (opens a browser
  and listens on a local redirect); repeated calls refresh the cached
  credentials without a browser.
- The provider is detected from the store host.
"""

from __future__ import annotations

import threading

import google.auth.transport.requests
import msal
from google.auth.exceptions import RefreshError
from google_auth_oauthlib.flow import InstalledAppFlow

import imap_common

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"

MICROSOFT_AUTHORITY = "https://login.microsoftonline.com/{tenant}"
MICROSOFT_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]

GOOGLE_SCOPES = ["https://mail.google.com/"]
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Module-level caches for silent token refresh
_msal_app_cache = {}  # (client_id, tenant) -> PublicClientApplication
_google_creds_cache = {}  # (client_id, client_secret) -> credentials
_cache_lock = threading.Lock()


class OAuth2Error(Exception):
    """Raised when no access token could be obtained."""


def detect_oauth2_provider(host):
    """
    Detects the OAuth2 provider from the store host.
    Returns "microsoft", "google", or None if unrecognized.
    """
    host_lower = (host or "").lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return PROVIDER_MICROSOFT
    if "gmail" in host_lower or "google" in host_lower:
        return PROVIDER_GOOGLE
    return None


def xoauth2_string(user, token):
    """SASL XOAUTH2 initial client response (before base64, which imaplib adds)."""
    return f"user={user}\x01auth=Bearer {token}\x01\x01"


def acquire_microsoft_token(client_id, tenant="common", log_fn=imap_common.safe_print):
    cache_key = (client_id, tenant)
    with _cache_lock:
        app = _msal_app_cache.get(cache_key)
        if app is None:
            app = msal.PublicClientApplication(client_id, authority=MICROSOFT_AUTHORITY.format(tenant=tenant))
            _msal_app_cache[cache_key] = app

    accounts = app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(MICROSOFT_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=MICROSOFT_SCOPES)
    if "user_code" not in flow:
        raise OAuth2Error(f"Could not initiate device flow: {flow.get('error_description', 'Unknown error')}")

    log_fn(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    raise OAuth2Error(f"Could not acquire token: {result.get('error_description', 'Unknown error')}")


def acquire_google_token(client_id, client_secret, log_fn=imap_common.safe_print):
    if not client_secret:
        raise OAuth2Error("A client secret is required for Google OAuth2.")

    cache_key = (client_id, client_secret)
    with _cache_lock:
        creds = _google_creds_cache.get(cache_key)

    if creds is not None and creds.refresh_token:
        try:
            creds.refresh(google.auth.transport.requests.Request())
            if creds.token:
                return creds.token
        except RefreshError as e:
            log_fn(f"Warning: Google token refresh failed, starting a new sign-in: {e}")

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": GOOGLE_AUTH_URI,
            "token_uri": GOOGLE_TOKEN_URI,
            "redirect_uris": ["http://localhost"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, scopes=GOOGLE_SCOPES)

    log_fn("Opening browser for Google authentication...")
    credentials = flow.run_local_server(port=0)
    if not credentials or not credentials.token:
        raise OAuth2Error("Could not acquire Google OAuth2 token.")

    with _cache_lock:
        _google_creds_cache[cache_key] = credentials
    return credentials.token


def acquire_token(host, user, client_id, client_secret=None, log_fn=imap_common.safe_print):
    """
    Acquires an access token for the store at host.

    Raises OAuth2Error when the provider is unknown or the flow fails.
    """
    provider = detect_oauth2_provider(host)
    if provider == PROVIDER_MICROSOFT:
        log_fn(f"Requesting Microsoft OAuth2 token for {user}")
        return acquire_microsoft_token(client_id, log_fn=log_fn)
    if provider == PROVIDER_GOOGLE:
        log_fn(f"Requesting Google OAuth2 token for {user}")
        return acquire_google_token(client_id, client_secret, log_fn=log_fn)
    raise OAuth2Error(f"Unknown OAuth2 provider for host: {host}")
