"""
Access-condition matrix used to probe landing pages for cloaking
"""
import re
from dataclasses import dataclass
from itertools import product
from typing import Dict, List, Optional
from urllib.parse import urlsplit, parse_qsl

USER_AGENTS = {
    'bot': "Googlebot/2.1 (+http://www.google.com/bot.html)",
    'mobile': ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
               "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"),
    'desktop': ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"),
}

REFERERS = {
    'none': None,
    'facebook': "https://www.facebook.com/",
    'instagram': "https://www.instagram.com/",
    'google': "https://www.google.com/",
}

GEO_TARGETS = {
    'tier1': {'country': 'US', 'language': 'en-US'},
    'tier3': {'country': 'RU', 'language': 'ru-RU'},
    'target': {'country': 'BR', 'language': 'pt-BR'},
}

UA_LABELS = {'bot': "Bot UA", 'mobile': "Mobile UA", 'desktop': "Desktop UA"}
REFERER_LABELS = {'none': "Direct", 'facebook': "FB Referer", 'instagram': "IG Referer", 'google': "Google Referer"}
GEO_LABELS = {'tier1': "US IP", 'tier3': "RU IP", 'target': "BR IP"}

# Tracking parameters that are never cloaker tokens
STANDARD_TRACKING_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_content', 'utm_term',
    'fbclid', 'gclid', 'msclkid',
}


@dataclass(frozen=True)
class AccessCondition:
    """One combination of user agent, referer and geography"""
    user_agent: str
    referer: str
    geo: str
    include_token: bool = True

    @property
    def label(self) -> str:
        return " + ".join([
            GEO_LABELS[self.geo],
            UA_LABELS[self.user_agent],
            REFERER_LABELS[self.referer],
        ])

    @property
    def country(self) -> str:
        return GEO_TARGETS[self.geo]['country']

    def headers(self) -> Dict[str, str]:
        """HTTP headers that simulate this condition"""
        headers = {
            'User-Agent': USER_AGENTS[self.user_agent],
            'Accept': "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            'Accept-Language': f"{GEO_TARGETS[self.geo]['language']},en;q=0.5",
            'Upgrade-Insecure-Requests': '1',
        }
        referer = REFERERS[self.referer]
        if referer:
            headers['Referer'] = referer
        return headers


# Baseline "white page" request: what an ad reviewer's crawler sees
SAFE_CONDITION = AccessCondition(user_agent='bot', referer='none', geo='tier1', include_token=False)


def generate_test_matrix() -> List[AccessCondition]:
    """All 36 user agent x referer x geo combinations, token included"""
    return [
        AccessCondition(user_agent=ua, referer=ref, geo=geo, include_token=True)
        for ua, ref, geo in product(USER_AGENTS, REFERERS, GEO_TARGETS)
    ]


def priority_conditions(limit: int) -> List[AccessCondition]:
    """
    Conditions most likely to reveal a black page, best first

    Real-user agents with social referers in the target geo come first; bot
    conditions last since those usually receive the white page.
    """
    ua_rank = {'mobile': 0, 'desktop': 1, 'bot': 2}
    ref_rank = {'facebook': 0, 'instagram': 1, 'google': 2, 'none': 3}
    geo_rank = {'target': 0, 'tier1': 1, 'tier3': 2}
    ordered = sorted(
        generate_test_matrix(),
        key=lambda c: (ua_rank[c.user_agent], ref_rank[c.referer], geo_rank[c.geo])
    )
    return ordered[:limit]


def deduce_cloaker_token(url: str) -> Optional[str]:
    """
    Guess the cloaker pass-through token from a landing URL

    Cloakers usually gate the black page behind a short, non-standard query
    parameter. Returns "key=value", a bare token, or None.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return None

    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key.lower() in STANDARD_TRACKING_PARAMS:
            continue
        if len(key) <= 12 and '_' not in key and len(value) >= 4:
            return f"{key}={value}"

    # Tokens appended without a value, e.g. ?abc123xy
    match = re.search(r'[&?]([a-zA-Z0-9]{6,12})(?:&|$)', url)
    if match:
        return match.group(1)
    return None


def apply_token(url: str, token: Optional[str]) -> str:
    """Append the cloaker token to a URL unless its query already carries it"""
    if not token:
        return url
    query = urlsplit(url).query
    present = set(query.split('&'))
    present.update(f"{key}={value}" for key, value in parse_qsl(query, keep_blank_values=True))
    if token in present:
        return url
    separator = '&' if '?' in url else '?'
    return f"{url}{separator}{token}"
