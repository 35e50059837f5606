"""
Share URL helpers: <origin>/<path>?share=<share_id>
"""

from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit


def build_share_url(origin: str, path: str, share_id: str) -> str:
    return f"{origin.rstrip('/')}/{path.strip('/')}?{urlencode({'share': share_id})}"


def parse_share_id(url: str) -> Optional[str]:
    """The share id carried by a share URL, or None."""
    values = parse_qs(urlsplit(url).query).get('share')
    return values[0] if values else None
