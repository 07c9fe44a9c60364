"""
cron_secret.py
--------------
Purpose:
    Shared-secret check for the crank trigger endpoint.

Notes:
    - The scheduler calls the endpoint with `Authorization: Bearer <CRON_SECRET>`.
    - When CRON_SECRET is not configured the check is disabled, which keeps
      local and dev setups usable without extra configuration.
"""

import hmac


def is_cron_request_authorized(authorization: str | None, secret: str | None) -> bool:
    if not secret:
        return True
    expected = f"Bearer {secret}"
    return hmac.compare_digest((authorization or "").encode(), expected.encode())
