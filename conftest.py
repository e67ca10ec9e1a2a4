"""
Shared fixtures: temporary SQLite database, seeded tenants/ads and a scripted crawler
"""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from cloakwatch.config.loader import default_config
from cloakwatch.crawler.conditions import SAFE_CONDITION
from cloakwatch.diff.normalizer import normalized_hash, make_preview
from cloakwatch.storage.database import create_engine_instance, init_database
from cloakwatch.storage.models import Tenant, Advertiser, Domain, Ad, LandingPageSnapshot


@pytest.fixture()
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cloakwatch_test.db'}"


@pytest.fixture()
def session_factory(db_url):
    engine = create_engine_instance(db_url)
    init_database(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def config():
    cfg = default_config()
    cfg['worker']['max_workers'] = 2
    cfg['worker']['fetch_retries'] = 2
    return cfg


@pytest.fixture()
def tenant(session_factory):
    session = session_factory()
    tenant = Tenant(name="Acme Media")
    session.add(tenant)
    session.commit()
    session.close()
    return tenant


@pytest.fixture()
def advertiser_factory(session_factory, tenant):
    def make(name="Shady Supplements", **fields):
        session = session_factory()
        advertiser = Advertiser(tenant_id=tenant.id, name=name, **fields)
        session.add(advertiser)
        session.commit()
        session.close()
        return advertiser
    return make


@pytest.fixture()
def domain_factory(session_factory, tenant):
    def make(domain="offer.example.com", **fields):
        session = session_factory()
        record = Domain(tenant_id=tenant.id, domain=domain, **fields)
        session.add(record)
        session.commit()
        session.close()
        return record
    return make


@pytest.fixture()
def ad_factory(session_factory, tenant):
    def make(**fields):
        fields.setdefault('tenant_id', tenant.id)
        fields.setdefault('page_name', "Shady Supplements")
        fields.setdefault('headline', "Lose weight fast")
        fields.setdefault('final_lp_url', "https://offer.example.com/lp")
        fields.setdefault('start_date', date.today() - timedelta(days=10))
        session = session_factory()
        ad = Ad(**fields)
        session.add(ad)
        session.commit()
        session.close()
        return ad
    return make


@pytest.fixture()
def snapshot_factory(session_factory):
    def make(ad, condition, text, captured_at=None, **fields):
        session = session_factory()
        snapshot = LandingPageSnapshot(
            tenant_id=ad.tenant_id,
            ad_id=ad.id,
            snapshot_condition=condition,
            content_text=text,
            content_hash=normalized_hash(text),
            content_preview=make_preview(text),
            redirect_chain=fields.pop('redirect_chain', [ad.final_lp_url]),
            captured_at=captured_at or datetime.utcnow(),
            **fields
        )
        session.add(snapshot)
        session.commit()
        session.close()
        return snapshot
    return make


def crawl_result(text, final_url="https://offer.example.com/lp", chain=None, is_black_page=False, error=None):
    """Crawl result in the shape WebCrawler.crawl returns"""
    if error:
        return {
            'content_html': None, 'content_text': None, 'content_preview': None,
            'content_hash': None, 'http_status': None, 'final_url': final_url,
            'redirect_chain': chain or [final_url], 'is_black_page': False, 'error': error,
        }
    return {
        'content_html': f"<html><body><p>{text}</p></body></html>",
        'content_text': text,
        'content_preview': make_preview(text),
        'content_hash': normalized_hash(text),
        'http_status': 200,
        'final_url': final_url,
        'redirect_chain': chain or [final_url],
        'is_black_page': is_black_page,
        'error': None,
    }


class ScriptedCrawler:
    """
    Crawler double serving a white page to the safe condition and a
    configurable page to everyone else
    """

    def __init__(self, white="Healthy recipes blog", black=None, head_status=200,
                 fail_baseline=False, black_url="https://offer.example.com/lp"):
        self.white = white
        self.black = black if black is not None else white
        self.head_status = head_status
        self.fail_baseline = fail_baseline
        self.black_url = black_url
        self.crawled = []
        self.timeouts = []
        self.heads = []
        self.closed = False

    def crawl(self, url, condition=None, target_url=None, timeout=None):
        self.crawled.append((url, condition))
        self.timeouts.append(timeout)
        if condition == SAFE_CONDITION:
            if self.fail_baseline:
                return crawl_result(None, error=f"Timeout fetching {url}")
            return crawl_result(self.white)
        if self.black != self.white:
            return crawl_result(self.black, final_url=self.black_url,
                                chain=[target_url or url, self.black_url], is_black_page=True)
        return crawl_result(self.white)

    def head(self, url, condition=None):
        self.heads.append(url)
        if isinstance(self.head_status, dict):
            return self.head_status.get(url, 200), None
        return self.head_status, None

    def close(self):
        self.closed = True


@pytest.fixture()
def scripted_crawler():
    return ScriptedCrawler
