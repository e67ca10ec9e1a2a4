"""
Content normalization and hashing for snapshot comparison
"""
import hashlib
import re
from dataclasses import dataclass
from typing import Any, Dict

from bs4 import BeautifulSoup
from bs4.element import NavigableString, CData, Script, Stylesheet, TemplateString

NON_CONTENT_TAGS = ['script', 'style', 'noscript', 'template']

# String types get_text yields when script and style bodies count as content
ALL_TEXT_TYPES = (NavigableString, CData, Script, Stylesheet, TemplateString)

PREVIEW_LENGTH = 200

_MARKUP_RE = re.compile(r'<[a-zA-Z!/][^>]*>')


@dataclass(frozen=True)
class NormalizationPolicy:
    """What counts as "content" when hashing a landing page"""
    strip_whitespace: bool = True
    strip_scripts: bool = True
    case_fold: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'NormalizationPolicy':
        section = config.get('normalization', {})
        return cls(
            strip_whitespace=section.get('strip_whitespace', True),
            strip_scripts=section.get('strip_scripts', True),
            case_fold=section.get('case_fold', False),
        )


def normalize_content(content: str, policy: NormalizationPolicy = None) -> str:
    """
    Reduce raw HTML or extracted text to its comparable content

    Markup is always dropped; script/style bodies, whitespace runs and letter
    case are dropped according to the policy.
    """
    policy = policy or NormalizationPolicy()
    if not content:
        return ''

    text = content
    if _MARKUP_RE.search(content):
        soup = BeautifulSoup(content, 'lxml')
        if policy.strip_scripts:
            for element in soup(NON_CONTENT_TAGS):
                element.decompose()
            text = soup.get_text(separator=' ')
        else:
            text = soup.get_text(separator=' ', types=ALL_TEXT_TYPES)

    if policy.strip_whitespace:
        text = ' '.join(text.split())
    if policy.case_fold:
        text = text.casefold()
    return text


def compute_content_hash(content: str) -> str:
    """
    Compute SHA256 hash of content

    Args:
        content: Content string to hash

    Returns:
        Hexadecimal hash string
    """
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def normalized_hash(content: str, policy: NormalizationPolicy = None) -> str:
    """Hash of the normalized form of content"""
    return compute_content_hash(normalize_content(content, policy))


def make_preview(content: str, length: int = PREVIEW_LENGTH) -> str:
    """First visible characters of a page, whitespace collapsed"""
    text = normalize_content(content, NormalizationPolicy(strip_whitespace=True, strip_scripts=True))
    return text[:length]
