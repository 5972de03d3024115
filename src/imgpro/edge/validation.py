"""Request path parsing and origin/content validation."""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from typing import Mapping

from .errors import InvalidDomain, MalformedRequest

_IPV4_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
_DOMAIN_PATTERN = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$",
    re.IGNORECASE,
)
_TRUE_FLAGS = frozenset({"true", "1"})

IMAGE_CONTENT_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/avif",
    "image/svg+xml",
    "image/bmp",
    "image/tiff",
    "image/x-icon",
    "image/heic",
    "image/heif",
    "image/jxl",
)


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """Everything the orchestrator needs to know about one image request."""

    domain: str
    path: str
    source_url: str
    cache_key: str
    force_reprocess: bool = False
    view_image: bool = False


def is_valid_domain(domain: str) -> bool:
    if domain == "localhost" or _IPV4_PATTERN.match(domain):
        return True
    return bool(_DOMAIN_PATTERN.match(domain))


def encode_path(path: str) -> str:
    """Percent-encode each segment of an already decoded path."""
    return "/".join(urllib.parse.quote(segment, safe="") for segment in path.split("/"))


def parse_request(raw_path: str, query: Mapping[str, str] | None = None) -> RequestDescriptor:
    """Build a descriptor from ``/{domain}/{path...}`` and the ``force``/``view`` flags.

    ``raw_path`` is the path as received on the wire; it is percent-decoded
    exactly once here.
    """
    decoded = urllib.parse.unquote(raw_path)
    parts = decoded.lstrip("/").split("/")
    if len(parts) < 2:
        raise MalformedRequest("Invalid URL format: /domain.com/path/to/image.jpg")

    domain = parts[0]
    path = "/" + "/".join(parts[1:])
    if not is_valid_domain(domain):
        raise InvalidDomain(f"Invalid domain: {domain}")

    query = query or {}
    return RequestDescriptor(
        domain=domain,
        path=path,
        source_url=f"https://{domain}{encode_path(path)}",
        cache_key=f"{domain}{path}",
        force_reprocess=query.get("force") in _TRUE_FLAGS,
        view_image=query.get("view") in _TRUE_FLAGS,
    )


def is_allowed_origin(source_url: str, allowed_origins: str) -> bool:
    """Check ``source_url``'s host against a comma-separated allow-list.

    ``*`` allows everything, ``*.example.com`` matches subdomains of
    ``example.com`` and any other entry must equal the hostname. Matching is
    case-insensitive.
    """
    if allowed_origins.strip() == "*":
        return True
    try:
        hostname = (urllib.parse.urlsplit(source_url).hostname or "").lower()
    except ValueError:
        return False
    if not hostname:
        return False

    for origin in (entry.strip().lower() for entry in allowed_origins.split(",")):
        if not origin:
            continue
        if origin == "*":
            return True
        if origin.startswith("*."):
            if hostname.endswith(origin[1:]):
                return True
        elif hostname == origin:
            return True
    return False


def is_image_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    lowered = content_type.lower()
    return any(image_type in lowered for image_type in IMAGE_CONTENT_TYPES)
