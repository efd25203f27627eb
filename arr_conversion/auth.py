import logging
from typing import Optional

import requests

from arr_conversion.config import AccountSettings
from arr_conversion.errors import AuthenticationError

logger = logging.getLogger("arr_conversion.auth")

REQUEST_TIMEOUT = 60


def get_access_token(account: AccountSettings, session: Optional[requests.Session] = None) -> str:
    """
    Exchange the ARR account id and key for a bearer token at the STS endpoint.

    GET {authenticationEndpoint}/accounts/{accountId}/token
    Authorization: Bearer {accountId}:{accountKey}
    """
    http = session or requests
    url = f"{account.authentication_endpoint}/accounts/{account.account_id}/token"
    headers = {"Authorization": f"Bearer {account.account_id}:{account.account_key}"}

    logger.debug(f"Requesting access token from {url}")
    try:
        response = http.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        body = response.json()
    except requests.exceptions.RequestException as exc:
        detail = getattr(exc.response, "text", "") if exc.response is not None else ""
        logger.error(f"Failed to obtain access token: {exc}")
        if detail:
            logger.error(f"Response body: {detail}")
        raise AuthenticationError(f"Failed to obtain access token: {exc}") from exc

    token = body.get("AccessToken") or body.get("accessToken") if isinstance(body, dict) else None
    if not token:
        raise AuthenticationError("Token endpoint response did not contain 'AccessToken'.")
    return token
