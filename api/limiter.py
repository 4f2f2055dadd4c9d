"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit() or
@limiter.shared_limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Keys: a request carrying a verified Bearer token is counted against its
principal id ("principal:<id>"); anything else is counted against the client
IP. Two students behind one NAT therefore do not share a budget, and one
student cannot dodge the limit by changing networks.

Strategy: fixed window, in-memory. Valid for a single-instance deployment.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from auth.dependencies import bearer_token


def principal_or_ip(request: Request) -> str:
    token = bearer_token(request)
    issuer = getattr(request.app.state, "token_issuer", None)
    if token and issuer is not None:
        claims = issuer.decode_access_token(token)
        if claims:
            return f"principal:{claims['sub']}"
    return get_remote_address(request)


limiter = Limiter(key_func=principal_or_ip, storage_uri="memory://", strategy="fixed-window")
