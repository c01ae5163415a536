"""
Database models for the subscription pipeline.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, ForeignKey,
    Boolean, create_engine, Index
)
from sqlalchemy.orm import relationship, sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


# Subscription statuses
SUBSCRIPTION_ACTIVE = 'ACTIVE'
SUBSCRIPTION_UNSUBSCRIBED = 'UNSUBSCRIBED'
SUBSCRIPTION_FAILED = 'FAILED'

# Run statuses shared by ScanRun and UnsubscribeAttempt
RUN_RUNNING = 'RUNNING'
RUN_SUCCEEDED = 'SUCCEEDED'
RUN_FAILED = 'FAILED'

# Unsubscribe methods
METHOD_HTTP_ONECLICK = 'HTTP_ONECLICK'
METHOD_HTTP = 'HTTP'
METHOD_MAILTO = 'MAILTO'

# Job states
JOB_QUEUED = 'queued'
JOB_IN_FLIGHT = 'in_flight'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Subscription(Base):
    """A mailing list discovered from message headers."""
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    fingerprint = Column(String(512), nullable=False)
    list_id = Column(String(512))
    from_address = Column(String(255))
    from_domain = Column(String(255))
    display_name = Column(String(255))
    unsubscribe_http_url = Column(Text)
    unsubscribe_mailto = Column(Text)
    one_click_supported = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default=SUBSCRIPTION_ACTIVE, nullable=False)
    last_seen_at = Column(DateTime)
    message_count = Column(Integer, default=1, nullable=False)
    last_unsubscribe_attempt_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    email_messages = relationship("EmailMessage", back_populates="subscription")
    unsubscribe_attempts = relationship("UnsubscribeAttempt", back_populates="subscription")

    __table_args__ = (
        Index('uq_user_fingerprint', 'user_id', 'fingerprint', unique=True),
        Index('idx_subscription_status', 'user_id', 'status'),
        Index('idx_subscription_domain', 'from_domain'),
    )

    def is_active(self) -> bool:
        return self.status == SUBSCRIPTION_ACTIVE

    def __repr__(self):
        return f"<Subscription(fingerprint='{self.fingerprint}', status='{self.status}')>"


class EmailMessage(Base):
    """A message seen by a scan, optionally linked to its subscription."""
    __tablename__ = 'email_messages'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    provider_message_id = Column(String(255), nullable=False)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id'), nullable=True)
    from_raw = Column(Text)
    subject = Column(Text)
    internal_date_ms = Column(BigInteger)
    received_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    subscription = relationship("Subscription", back_populates="email_messages")

    __table_args__ = (
        Index('uq_user_provider_message', 'user_id', 'provider_message_id', unique=True),
        Index('idx_message_subscription', 'subscription_id'),
    )

    def __repr__(self):
        return f"<EmailMessage(provider_message_id='{self.provider_message_id}')>"


class ScanRun(Base):
    """One bounded execution of the mailbox scan for a user."""
    __tablename__ = 'scan_runs'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    job_id = Column(String(255), index=True)  # scan job that owns this run
    status = Column(String(20), default=RUN_RUNNING, nullable=False)
    messages_scanned = Column(Integer, default=0, nullable=False)
    error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime)

    __table_args__ = (
        Index('idx_scan_run_user_status', 'user_id', 'status'),
    )

    def __repr__(self):
        return f"<ScanRun(user_id='{self.user_id}', status='{self.status}')>"


class UnsubscribeAttempt(Base):
    """One bounded execution of the unsubscribe action for a subscription."""
    __tablename__ = 'unsubscribe_attempts'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id'), nullable=False)
    status = Column(String(20), default=RUN_RUNNING, nullable=False)
    method = Column(String(20))  # HTTP_ONECLICK, HTTP, MAILTO
    error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime)

    subscription = relationship("Subscription", back_populates="unsubscribe_attempts")

    __table_args__ = (
        Index('idx_attempt_subscription_status', 'subscription_id', 'status'),
    )

    def __repr__(self):
        return f"<UnsubscribeAttempt(subscription_id={self.subscription_id}, status='{self.status}')>"


class Job(Base):
    """Durable job-state row backing the scan and unsubscribe queues."""
    __tablename__ = 'jobs'

    id = Column(String(255), primary_key=True)
    queue = Column(String(50), nullable=False)
    payload = Column(Text, nullable=False)  # JSON
    state = Column(String(20), default=JOB_QUEUED, nullable=False)
    attempts_made = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=1, nullable=False)
    backoff_seconds = Column(Integer, default=0, nullable=False)
    timeout_seconds = Column(Integer, nullable=False)
    next_eligible_at = Column(DateTime, default=utcnow, nullable=False)
    lease_token = Column(String(64))
    deadline_at = Column(DateTime)
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    finished_at = Column(DateTime)

    __table_args__ = (
        Index('idx_job_claim', 'queue', 'state', 'next_eligible_at'),
        Index('idx_job_deadline', 'state', 'deadline_at'),
        Index('idx_job_finished', 'state', 'finished_at'),
    )

    def __repr__(self):
        return f"<Job(id='{self.id}', queue='{self.queue}', state='{self.state}')>"


def create_database_engine(database_url: str = "sqlite:///email_subscriptions.db"):
    """Create and return a database engine."""
    kwargs = {
        'echo': False,  # Set to True for SQL debugging
        'pool_pre_ping': True,
    }
    if database_url.startswith("sqlite"):
        kwargs['connect_args'] = {"check_same_thread": False}
        if ':memory:' in database_url or database_url == 'sqlite://':
            # One shared connection so every thread sees the same in-memory db
            kwargs['poolclass'] = StaticPool
    return create_engine(database_url, **kwargs)


def create_tables(engine):
    """Create all tables in the database."""
    Base.metadata.create_all(engine)


def get_session_maker(engine):
    """Get a session maker for the database."""
    return sessionmaker(bind=engine)
