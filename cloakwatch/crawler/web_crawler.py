"""
Condition-aware web crawler with rate limiting, SSRF-checked redirects and content extraction
"""
import os
import re
import time
import threading
import logging
import requests
from urllib.parse import urljoin, urlparse
from bs4 import BeautifulSoup
from typing import Optional, Dict, List, Tuple
from dotenv import load_dotenv

from cloakwatch.crawler.conditions import AccessCondition
from cloakwatch.crawler.url_validator import validate
from cloakwatch.diff.normalizer import NormalizationPolicy, normalized_hash, make_preview

load_dotenv()

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}

# Phrases typical of the "black page" (the real offer) behind a cloaker
SALES_INDICATORS = ['buy now', 'add to cart', 'checkout', 'limited time', 'order now']
_PRICE_RE = re.compile(r'\$\d+')


class WebCrawler:
    """Web crawler that fetches a URL as a given audience would see it"""

    def __init__(self, user_agent: str = None, rate_limit_delay: float = None, timeout: int = None,
                 max_redirects: int = 10, geo_proxies: Dict[str, str] = None,
                 policy: NormalizationPolicy = None):
        """
        Initialize web crawler

        Args:
            user_agent: Default user agent (defaults to env var or default)
            rate_limit_delay: Seconds to wait between requests to one domain (defaults to env var or 1.0)
            timeout: Request timeout in seconds (defaults to env var or 30)
            max_redirects: Redirect hops followed before giving up
            geo_proxies: Country code -> proxy URL used for geo conditions
            policy: Normalization policy used for content hashes
        """
        self.user_agent = user_agent or os.getenv('CRAWL_USER_AGENT', 'CloakWatch/1.0')
        self.rate_limit_delay = float(rate_limit_delay or os.getenv('CRAWL_RATE_LIMIT_DELAY', '1.0'))
        self.timeout = int(timeout or os.getenv('CRAWL_TIMEOUT', '30'))
        self.max_redirects = max_redirects
        self.geo_proxies = geo_proxies or {}
        self.policy = policy or NormalizationPolicy()

        self.session = requests.Session()
        self.session.headers.update({'User-Agent': self.user_agent})

        # Track last request time per domain for rate limiting
        self.last_request_time: Dict[str, float] = {}
        self._rate_lock = threading.Lock()

    def close(self):
        """Release pooled connections"""
        self.session.close()

    def _rate_limit(self, url: str):
        """
        Apply rate limiting based on domain

        Args:
            url: URL being requested
        """
        domain = urlparse(url).netloc
        with self._rate_lock:
            now = time.time()
            next_allowed = self.last_request_time.get(domain, 0.0) + self.rate_limit_delay
            sleep_time = max(0.0, next_allowed - now)
            self.last_request_time[domain] = now + sleep_time
        if sleep_time > 0:
            time.sleep(sleep_time)

    def _proxies_for(self, condition: Optional[AccessCondition]) -> Optional[Dict[str, str]]:
        if condition is None:
            return None
        proxy = self.geo_proxies.get(condition.country)
        if not proxy:
            return None
        return {'http': proxy, 'https': proxy}

    def fetch(self, url: str, condition: AccessCondition = None, timeout: float = None) -> Dict:
        """
        Fetch URL, following redirects manually so every hop is validated

        Args:
            url: URL to fetch
            condition: Access condition whose headers/proxy are used
            timeout: Overall seconds allowed for the whole redirect chain;
                each hop is still capped by the crawler timeout

        Returns:
            Dictionary with:
                - html: Response body (or None on error)
                - http_status: Final HTTP status code (or None on error)
                - final_url: Last URL in the redirect chain
                - redirect_chain: All URLs visited, starting with url
                - error: Error message (or None on success)
        """
        headers = condition.headers() if condition else {}
        proxies = self._proxies_for(condition)
        chain: List[str] = [url]
        current = url
        deadline = time.monotonic() + timeout if timeout is not None else None

        for _ in range(self.max_redirects + 1):
            verdict = validate(current)
            if not verdict.valid:
                return self._failure(chain, f"Blocked redirect target {current}: {verdict.reason}")

            self._rate_limit(current)
            hop_timeout = self.timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return self._failure(chain, f"Timeout fetching {current}")
                hop_timeout = min(self.timeout, remaining)
            try:
                response = self.session.get(
                    current, headers=headers, timeout=hop_timeout,
                    allow_redirects=False, proxies=proxies
                )
            except requests.exceptions.Timeout:
                return self._failure(chain, f"Timeout fetching {current}")
            except requests.exceptions.RequestException as e:
                return self._failure(chain, f"Error fetching {current}: {e}")

            location = response.headers.get('Location')
            if response.status_code in REDIRECT_STATUSES and location:
                current = urljoin(current, location)
                chain.append(current)
                continue

            html = response.text if response.ok else ''
            return {
                'html': html,
                'http_status': response.status_code,
                'final_url': current,
                'redirect_chain': chain,
                'error': None,
            }

        return self._failure(chain, f"Too many redirects fetching {url}")

    def _failure(self, chain: List[str], error: str) -> Dict:
        return {
            'html': None,
            'http_status': None,
            'final_url': chain[-1],
            'redirect_chain': chain,
            'error': error,
        }

    def extract_content(self, html: str) -> Tuple[str, str]:
        """
        Extract clean text and a short preview from raw HTML

        Args:
            html: Raw HTML content

        Returns:
            Tuple of (clean_text, preview)
        """
        if not html:
            return '', ''
        soup = BeautifulSoup(html, 'lxml')

        # Remove script and style elements
        for script in soup(["script", "style", "noscript"]):
            script.decompose()

        # Remove embedded frames (tracking pixels, chat widgets)
        for element in soup.find_all(['iframe', 'embed', 'object']):
            element.decompose()

        text = soup.get_text(separator='\n', strip=True)
        lines = [line.strip() for line in text.split('\n') if line.strip()]
        clean_text = '\n'.join(lines)
        return clean_text, make_preview(clean_text)

    @staticmethod
    def looks_like_black_page(html: str, target_url: str, final_url: str, redirect_chain: List[str]) -> bool:
        """
        Heuristic: the request landed somewhere else and the page sells something
        """
        if final_url == target_url:
            return False
        lowered = (html or '').lower()
        return (
            any(indicator in lowered for indicator in SALES_INDICATORS)
            or bool(_PRICE_RE.search(html or ''))
            or len(redirect_chain) > 2
        )

    def crawl(self, url: str, condition: AccessCondition = None, target_url: str = None,
              timeout: float = None) -> Dict:
        """
        Complete crawl operation: fetch, extract, hash

        The raw body is kept as content_text so the hash can be recomputed
        under any normalization policy later.

        Args:
            url: URL to request (may carry a cloaker token)
            condition: Access condition to simulate
            target_url: Advertised landing URL, used for black-page detection
            timeout: Overall seconds allowed for the request, None for no limit

        Returns:
            Dictionary with content_html, content_text, content_preview,
            content_hash, http_status, final_url, redirect_chain,
            is_black_page and error
        """
        result = self.fetch(url, condition, timeout=timeout)
        if result['error']:
            logger.warning(result['error'])
            return {
                'content_html': None,
                'content_text': None,
                'content_preview': None,
                'content_hash': None,
                'http_status': result['http_status'],
                'final_url': result['final_url'],
                'redirect_chain': result['redirect_chain'],
                'is_black_page': False,
                'error': result['error'],
            }

        html = result['html']
        _, preview = self.extract_content(html)
        return {
            'content_html': html,
            'content_text': html,
            'content_preview': preview,
            'content_hash': normalized_hash(html, self.policy),
            'http_status': result['http_status'],
            'final_url': result['final_url'],
            'redirect_chain': result['redirect_chain'],
            'is_black_page': self.looks_like_black_page(
                html, target_url or url, result['final_url'], result['redirect_chain']
            ),
            'error': None,
        }

    def head(self, url: str, condition: AccessCondition = None) -> Tuple[Optional[int], Optional[str]]:
        """
        Lightweight liveness probe

        Returns:
            Tuple of (http_status, error_message)
        """
        verdict = validate(url)
        if not verdict.valid:
            return None, f"Invalid URL {url}: {verdict.reason}"
        headers = condition.headers() if condition else {}
        self._rate_limit(url)
        try:
            response = self.session.head(url, headers=headers, timeout=self.timeout, allow_redirects=False)
            return response.status_code, None
        except requests.exceptions.RequestException as e:
            return None, f"Error probing {url}: {e}"
