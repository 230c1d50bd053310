"""
Database models for the inbox rules engine
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RuleType:
    AI = 'AI'
    STATIC = 'STATIC'
    GROUP = 'GROUP'


class LogicalOperator:
    AND = 'AND'
    OR = 'OR'


class CategoryFilterType:
    INCLUDE = 'INCLUDE'
    EXCLUDE = 'EXCLUDE'


class ActionType:
    ARCHIVE = 'ARCHIVE'
    LABEL = 'LABEL'
    DRAFT_EMAIL = 'DRAFT_EMAIL'
    REPLY = 'REPLY'
    SEND_EMAIL = 'SEND_EMAIL'
    FORWARD = 'FORWARD'
    MARK_SPAM = 'MARK_SPAM'
    MARK_READ = 'MARK_READ'
    CALL_WEBHOOK = 'CALL_WEBHOOK'

    ALL = (ARCHIVE, LABEL, DRAFT_EMAIL, REPLY, SEND_EMAIL, FORWARD, MARK_SPAM, MARK_READ, CALL_WEBHOOK)


class ExecutedRuleStatus:
    PENDING = 'PENDING'
    APPLIED = 'APPLIED'
    SKIPPED = 'SKIPPED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'


class ExecutedActionStatus:
    PENDING = 'PENDING'
    APPLIED = 'APPLIED'
    SKIPPED = 'SKIPPED'
    FAILED = 'FAILED'


class ScheduledActionStatus:
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'


class GroupItemType:
    FROM = 'FROM'
    SUBJECT = 'SUBJECT'


# Fields of an action that may hold a literal or a {{template}}
ACTION_TEXT_FIELDS = ('label', 'subject', 'content', 'to', 'cc', 'bcc', 'url')

NO_RULE_KEY = 'none'


class EmailAccount(Base):
    """A connected mailbox"""
    __tablename__ = 'email_accounts'

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    provider = Column(String(50), nullable=False, default='google')  # google or microsoft
    about = Column(Text)
    multi_rule_selection_enabled = Column(Boolean, default=False, nullable=False)
    webhook_url = Column(String(1024))
    webhook_secret = Column(String(255))
    created_at = Column(DateTime, default=utcnow)

    rules = relationship('Rule', back_populates='email_account', order_by='Rule.position')


rule_categories = Table(
    'rule_categories',
    Base.metadata,
    Column('rule_id', Integer, ForeignKey('rules.id'), primary_key=True),
    Column('category_id', Integer, ForeignKey('categories.id'), primary_key=True),
)


class Rule(Base):
    """A user-defined email handling rule"""
    __tablename__ = 'rules'

    id = Column(Integer, primary_key=True)
    email_account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    identifier = Column(String(255), nullable=False)  # Stable id from the rules file
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default=RuleType.AI)
    position = Column(Integer, nullable=False, default=0)
    instructions = Column(Text)
    from_pattern = Column(String(1024))
    to_pattern = Column(String(1024))
    subject_pattern = Column(String(1024))
    body_pattern = Column(Text)
    conditional_operator = Column(String(10), nullable=False, default=LogicalOperator.AND)
    group_id = Column(Integer, ForeignKey('groups.id'))
    category_filter_type = Column(String(20))
    automate = Column(Boolean, default=True, nullable=False)
    run_on_threads = Column(Boolean, default=False, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    email_account = relationship('EmailAccount', back_populates='rules')
    actions = relationship('Action', back_populates='rule', cascade='all, delete-orphan', order_by='Action.id')
    group = relationship('Group')
    category_filters = relationship('Category', secondary=rule_categories)

    __table_args__ = (
        UniqueConstraint('email_account_id', 'identifier', name='uix_account_rule_identifier'),
    )


class Action(Base):
    """An action belonging to a rule; text fields may be templates resolved at execution time"""
    __tablename__ = 'actions'

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey('rules.id'), nullable=False)
    type = Column(String(50), nullable=False)
    label = Column(String(255))
    label_id = Column(String(255))
    subject = Column(Text)
    content = Column(Text)
    to = Column(String(1024))
    cc = Column(String(1024))
    bcc = Column(String(1024))
    url = Column(String(1024))
    delay_in_minutes = Column(Integer)
    # Names of the text fields holding {{...}} templates, computed when the rule is saved
    templated_fields = Column(JSON, default=list)

    rule = relationship('Rule', back_populates='actions')


class Category(Base):
    """A named bucket a sender can belong to"""
    __tablename__ = 'categories'

    id = Column(Integer, primary_key=True)
    email_account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)

    __table_args__ = (
        UniqueConstraint('email_account_id', 'name', name='uix_account_category'),
    )


class Sender(Base):
    """Sender address to category assignment, written by categorization jobs"""
    __tablename__ = 'senders'

    id = Column(Integer, primary_key=True)
    email_account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    email = Column(String(255), nullable=False)
    category_id = Column(Integer, ForeignKey('categories.id'))

    category = relationship('Category')

    __table_args__ = (
        UniqueConstraint('email_account_id', 'email', name='uix_account_sender'),
    )


class Group(Base):
    """A set of learned sender/subject patterns feeding a GROUP rule"""
    __tablename__ = 'groups'

    id = Column(Integer, primary_key=True)
    email_account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    name = Column(String(255), nullable=False)

    items = relationship('GroupItem', back_populates='group', cascade='all, delete-orphan')


class GroupItem(Base):
    __tablename__ = 'group_items'

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey('groups.id'), nullable=False)
    type = Column(String(20), nullable=False)  # FROM or SUBJECT
    value = Column(String(1024), nullable=False)
    exclude = Column(Boolean, default=False, nullable=False)

    group = relationship('Group', back_populates='items')


class ExecutedRule(Base):
    """Audit record of one rule decision for one message"""
    __tablename__ = 'executed_rules'

    id = Column(Integer, primary_key=True)
    email_account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    message_id = Column(String(255), nullable=False)
    thread_id = Column(String(255), nullable=False)
    rule_id = Column(Integer, ForeignKey('rules.id'))
    rule_key = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=ExecutedRuleStatus.PENDING)
    reason = Column(Text)
    automated = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    rule = relationship('Rule')
    action_items = relationship(
        'ExecutedAction', back_populates='executed_rule', cascade='all, delete-orphan', order_by='ExecutedAction.id'
    )
    scheduled_actions = relationship('ScheduledAction', back_populates='executed_rule')

    __table_args__ = (
        Index(
            'uix_executed_rule_natural_key',
            'email_account_id', 'message_id', 'rule_key',
            unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
    )


class ExecutedAction(Base):
    """Resolved, ready-to-execute snapshot of one action"""
    __tablename__ = 'executed_actions'

    id = Column(Integer, primary_key=True)
    executed_rule_id = Column(Integer, ForeignKey('executed_rules.id'), nullable=False)
    action_id = Column(Integer)  # Source Action; may since have been removed from the rule
    type = Column(String(50), nullable=False)
    label = Column(String(255))
    label_id = Column(String(255))
    subject = Column(Text)
    content = Column(Text)
    to = Column(String(1024))
    cc = Column(String(1024))
    bcc = Column(String(1024))
    url = Column(String(1024))
    delay_in_minutes = Column(Integer)
    status = Column(String(20), nullable=False, default=ExecutedActionStatus.PENDING)
    error = Column(Text)
    draft_id = Column(String(255))
    executed_at = Column(DateTime)

    executed_rule = relationship('ExecutedRule', back_populates='action_items')


class ScheduledAction(Base):
    """A deferred action awaiting its execution time"""
    __tablename__ = 'scheduled_actions'

    id = Column(Integer, primary_key=True)
    email_account_id = Column(Integer, ForeignKey('email_accounts.id'), nullable=False)
    executed_rule_id = Column(Integer, ForeignKey('executed_rules.id'), nullable=False)
    executed_action_id = Column(Integer, ForeignKey('executed_actions.id'), nullable=False)
    message_id = Column(String(255), nullable=False)
    thread_id = Column(String(255), nullable=False)
    action_type = Column(String(50), nullable=False)
    execute_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=ScheduledActionStatus.PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    claimed_at = Column(DateTime)
    executed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    executed_rule = relationship('ExecutedRule', back_populates='scheduled_actions')
    executed_action = relationship('ExecutedAction')

    __table_args__ = (
        Index('ix_scheduled_actions_due', 'status', 'execute_at'),
    )


class ProviderRateLimit(Base):
    """Advisory per-account provider rate-limit gate"""
    __tablename__ = 'provider_rate_limits'

    email_account_id = Column(Integer, ForeignKey('email_accounts.id'), primary_key=True)
    provider = Column(String(50), nullable=False)
    retry_at = Column(DateTime, nullable=False)
    source = Column(String(255))
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
