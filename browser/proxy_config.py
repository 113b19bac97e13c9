"""
Proxy configuration for local browser sessions.

Launch arguments only ever carry the proxy server; credentials are handed to
the page-level auth hook separately.
"""

from typing import Optional

from core.models import ProxyEndpoint, ProxyCredentials


def rotating_username(username: str, session_counter: int, rotation_enabled: bool = True) -> str:
    """Append the rotating session token to a provider username."""
    if rotation_enabled and session_counter:
        return f"{username}-session{session_counter}"
    return username


def get_proxy_server(endpoint: ProxyEndpoint) -> str:
    """Scheme://host:port form accepted by Playwright."""
    return f"{endpoint.protocol}://{endpoint.address}:{endpoint.port}"


def get_proxy_credentials(endpoint: ProxyEndpoint) -> Optional[ProxyCredentials]:
    """Credentials with the rotation token applied, or None for open proxies."""
    if not endpoint.username:
        return None
    return ProxyCredentials(
        username=rotating_username(endpoint.username, endpoint.session_counter, endpoint.rotation_enabled),
        password=endpoint.password or "",
    )


def get_proxy_url(endpoint: ProxyEndpoint, mask_password: bool = True) -> str:
    """Full proxy URL for logs; the password is masked unless asked otherwise."""
    credentials = get_proxy_credentials(endpoint)
    if not credentials:
        return get_proxy_server(endpoint)
    password = "****" if mask_password else credentials.password
    return f"{endpoint.protocol}://{credentials.username}:{password}@{endpoint.address}:{endpoint.port}"
