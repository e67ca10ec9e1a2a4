"""
Database models for CloakWatch
"""
import uuid
from sqlalchemy import Column, Integer, String, Text, Boolean, Float, Date, TIMESTAMP, ForeignKey, JSON, Index
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, date

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class Tenant(Base):
    """Workspace that owns ads, advertisers and alerts"""
    __tablename__ = 'tenants'

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

    def __repr__(self):
        return f"<Tenant(id='{self.id}', name='{self.name}')>"


class Advertiser(Base):
    """Advertiser page; rolls up suspicion of its ads"""
    __tablename__ = 'advertisers'

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey('tenants.id'), nullable=False)
    name = Column(String(255), nullable=False)
    page_id = Column(String(255))
    total_ads = Column(Integer, default=0)
    active_ads = Column(Integer, default=0)
    domains_count = Column(Integer, default=0)
    avg_suspicion_score = Column(Float, default=0.0)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    ads = relationship("Ad", back_populates="advertiser")
    domains = relationship("Domain", back_populates="advertiser")

    def __repr__(self):
        return f"<Advertiser(name='{self.name}', avg_suspicion_score={self.avg_suspicion_score})>"


class Domain(Base):
    """Landing domain; suspicion_score is the mean of its ads"""
    __tablename__ = 'domains'

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey('tenants.id'), nullable=False)
    advertiser_id = Column(String(36), ForeignKey('advertisers.id'))
    domain = Column(String(512), nullable=False)
    suspicion_score = Column(Float, default=0.0)
    reputation_risk = Column(Integer)  # 0-100, supplied by an external reputation feed
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    advertiser = relationship("Advertiser", back_populates="domains")
    ads = relationship("Ad", back_populates="domain")

    def __repr__(self):
        return f"<Domain(domain='{self.domain}', suspicion_score={self.suspicion_score})>"


class Ad(Base):
    """Ad creative imported from the ad library"""
    __tablename__ = 'ads'

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey('tenants.id'), nullable=False)
    advertiser_id = Column(String(36), ForeignKey('advertisers.id'))
    domain_id = Column(String(36), ForeignKey('domains.id'))
    ad_library_id = Column(String(255))
    page_name = Column(String(255))
    headline = Column(Text)
    primary_text = Column(Text)
    media_type = Column(String(50))  # image, video, carousel
    status = Column(String(20), nullable=False, default='active')  # active, inactive
    countries = Column(JSON)
    start_date = Column(Date)
    end_date = Column(Date)
    longevity_days = Column(Integer, default=0)
    engagement_score = Column(Integer)  # 0-100, supplied by the ad library import
    suspicion_score = Column(Integer, nullable=False, default=0)
    is_cloaked_flag = Column(Boolean, nullable=False, default=False)
    white_url = Column(String(2048))
    detected_black_url = Column(String(2048))
    final_lp_url = Column(String(2048))
    cloaker_token = Column(String(255))
    last_snapshot_at = Column(TIMESTAMP)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    advertiser = relationship("Advertiser", back_populates="ads")
    domain = relationship("Domain", back_populates="ads")
    snapshots = relationship("LandingPageSnapshot", back_populates="ad",
                             order_by="LandingPageSnapshot.captured_at.desc()")

    __table_args__ = (
        Index('idx_ads_tenant_status', 'tenant_id', 'status'),
        Index('idx_ads_suspicion', 'suspicion_score'),
    )

    def compute_longevity_days(self, now: datetime = None) -> int:
        """Days between start_date and end_date (or now when still running)"""
        if not self.start_date:
            return 0
        end = self.end_date or (now or datetime.utcnow()).date()
        start = self.start_date
        if isinstance(start, datetime):
            start = start.date()
        if isinstance(end, datetime):
            end = end.date()
        return max(0, (end - start).days)

    def __repr__(self):
        return f"<Ad(id='{self.id}', status='{self.status}', suspicion_score={self.suspicion_score})>"


class LandingPageSnapshot(Base):
    """Capture of a landing page under one access condition"""
    __tablename__ = 'landing_page_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), ForeignKey('tenants.id'), nullable=False)
    ad_id = Column(String(36), ForeignKey('ads.id'), nullable=False)
    snapshot_condition = Column(String(255), nullable=False)  # e.g. "US IP + Mobile UA + FB Referer"
    user_agent = Column(String(512))
    ip_geo = Column(String(8))
    referer = Column(String(512))
    content_hash = Column(String(64))  # SHA256 of normalized text
    content_preview = Column(Text)
    content_text = Column(Text)  # Raw page body, re-normalized under the active policy when compared
    check_id = Column(String(36))  # Collection pass that produced this capture
    redirect_chain = Column(JSON)
    final_redirect_url = Column(String(2048))
    response_code = Column(Integer)
    is_black_page = Column(Boolean, default=False)
    detected_token = Column(String(255))
    captured_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    # Relationships
    ad = relationship("Ad", back_populates="snapshots")

    __table_args__ = (
        Index('idx_snapshot_ad_captured', 'ad_id', 'captured_at'),
        Index('idx_snapshot_hash', 'content_hash'),
        Index('idx_snapshot_check', 'ad_id', 'check_id'),
    )

    def __repr__(self):
        return f"<LandingPageSnapshot(ad_id='{self.ad_id}', condition='{self.snapshot_condition}', captured_at={self.captured_at})>"


class Alert(Base):
    """Notification raised from engine outputs"""
    __tablename__ = 'alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), ForeignKey('tenants.id'), nullable=False)
    alert_type = Column(String(50), nullable=False)  # new_ad, high_suspicion, api_status
    title = Column(String(512), nullable=False)
    message = Column(Text)
    severity = Column(String(20), nullable=False, default='info')  # info, warning, error
    is_read = Column(Boolean, nullable=False, default=False)
    related_ad_id = Column(String(36), ForeignKey('ads.id'))
    related_advertiser_id = Column(String(36), ForeignKey('advertisers.id'))
    metadata_json = Column('metadata', JSON)  # metadata is reserved on declarative classes
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_alert_dedup', 'tenant_id', 'related_ad_id', 'alert_type', 'created_at'),
    )

    def __repr__(self):
        return f"<Alert(type='{self.alert_type}', severity='{self.severity}', ad='{self.related_ad_id}')>"


class JobRun(Base):
    """One execution of a scheduled or manual job"""
    __tablename__ = 'job_runs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), ForeignKey('tenants.id'))
    job_name = Column(String(255), nullable=False)
    task_type = Column(String(50), nullable=False)  # divergence_test, status_check, health_check
    schedule_type = Column(String(20), nullable=False)  # daily, intraday, manual
    status = Column(String(20), nullable=False, default='running')  # running, completed, partial, failed
    started_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    completed_at = Column(TIMESTAMP)
    ads_processed = Column(Integer, default=0)
    divergences_found = Column(Integer, default=0)
    errors_count = Column(Integer, default=0)
    duration_ms = Column(Integer)
    error_message = Column(Text)
    metadata_json = Column('metadata', JSON)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<JobRun(job='{self.job_name}', status='{self.status}', processed={self.ads_processed})>"


class DailyReport(Base):
    """Per-tenant summary written after a daily divergence run"""
    __tablename__ = 'daily_reports'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), ForeignKey('tenants.id'), nullable=False)
    report_date = Column(Date, nullable=False, default=date.today)
    total_ads_analyzed = Column(Integer, default=0)
    new_cloakers_detected = Column(Integer, default=0)
    top_aggressive_ads = Column(JSON)
    top_longevity_ads = Column(JSON)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

    def __repr__(self):
        return f"<DailyReport(tenant_id='{self.tenant_id}', date={self.report_date})>"
