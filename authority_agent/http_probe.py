from __future__ import annotations

from dataclasses import dataclass, field

import httpx

# Only headers that feed the security section are kept.
HEADER_ALLOW = frozenset({
    "strict-transport-security",
    "content-security-policy",
    "referrer-policy",
    "x-frame-options",
    "permissions-policy",
})

MAX_REDIRECTS = 6


@dataclass(frozen=True)
class ProbeResult:
    final_url: str
    status_code: int | None
    redirect_count: int = 0
    headers: dict[str, str] = field(default_factory=dict)


async def probe_http(
    url: str,
    *,
    user_agent: str,
    timeout_s: float = 15.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProbeResult:
    """Plain HTTP fetch of ``url``, following redirects by hand to count them.

    Network errors propagate; callers treat a failed probe as "no headers".
    """
    headers_out: dict[str, str] = {}
    current = url
    redirects = 0

    async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
        for _ in range(MAX_REDIRECTS):
            res = await client.get(
                current,
                headers={
                    "user-agent": user_agent,
                    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "accept-language": "en-US,en;q=0.6",
                },
            )
            for k, v in res.headers.items():
                if k.lower() in HEADER_ALLOW:
                    headers_out[k.lower()] = v

            if 300 <= res.status_code < 400 and res.headers.get("location"):
                redirects += 1
                current = str(httpx.URL(current).join(res.headers["location"]))
                continue

            return ProbeResult(final_url=current, status_code=res.status_code, redirect_count=redirects, headers=headers_out)

    return ProbeResult(final_url=current, status_code=None, redirect_count=redirects, headers=headers_out)
