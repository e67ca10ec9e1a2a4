"""
Target URL validation guarding every outbound fetch against SSRF
"""
import ipaddress
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

ALLOWED_SCHEMES = {'http', 'https'}

LOCALHOST_NAMES = {'localhost', 'localhost.localdomain', 'ip6-localhost', 'ip6-loopback'}

BLOCKED_HOST_PATTERNS = [
    re.compile(r'\.local$'),
    re.compile(r'\.localhost$'),
    re.compile(r'\.internal$'),
    re.compile(r'\.corp$'),
    re.compile(r'\.lan$'),
    re.compile(r'^metadata\.google\.internal$'),
    re.compile(r'^instance-data$'),
]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None

    def to_dict(self):
        result = {'valid': self.valid}
        if self.reason:
            result['reason'] = self.reason
        return result


def _check_ip(host: str) -> Optional[str]:
    """Return a rejection reason if host is a non-public IP literal"""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    if ip.is_loopback:
        return "Loopback addresses are not allowed"
    if ip.is_link_local:
        return "Link-local addresses are not allowed"
    if ip.is_unspecified:
        return "Invalid IP address"
    if ip.is_private or ip.is_reserved or ip.is_multicast:
        return "Private IP addresses are not allowed"
    return None


def validate(url: str) -> ValidationResult:
    """
    Validate a user-supplied target URL before any fetch is attempted

    Rejects non-http(s) schemes, scheme-relative URLs, localhost, loopback,
    link-local, RFC1918 private ranges and internal hostnames.

    Args:
        url: Target URL

    Returns:
        ValidationResult with valid flag and rejection reason
    """
    if not url or not isinstance(url, str) or not url.strip():
        return ValidationResult(False, "URL is required")

    url = url.strip()
    if url.startswith('//'):
        return ValidationResult(False, "Scheme-relative URLs are not allowed")

    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        # Accessing port validates it
        parts.port
    except ValueError:
        return ValidationResult(False, "Invalid URL format")

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return ValidationResult(False, "Only HTTP and HTTPS protocols are allowed")

    if not hostname:
        return ValidationResult(False, "Invalid URL format")

    hostname = hostname.lower().rstrip('.')

    if hostname in LOCALHOST_NAMES:
        return ValidationResult(False, "Localhost URLs are not allowed")

    ip_reason = _check_ip(hostname)
    if ip_reason:
        return ValidationResult(False, ip_reason)

    # Shorthand IPv4 forms like 127.1 or 2130706433 resolve to loopback in most stacks
    if re.fullmatch(r'[0-9.]+', hostname) or re.fullmatch(r'0x[0-9a-f]+', hostname):
        try:
            ipaddress.ip_address(hostname)
        except ValueError:
            return ValidationResult(False, "Invalid IP address")

    for pattern in BLOCKED_HOST_PATTERNS:
        if pattern.search(hostname):
            return ValidationResult(False, "Internal hostnames are not allowed")

    return ValidationResult(True)


def is_valid_external_url(url: str) -> bool:
    """Convenience wrapper returning only the verdict"""
    return validate(url).valid
